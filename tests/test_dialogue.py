"""
Tests for the dialogue webhook client and reply extraction.
"""

import json

import httpx
import pytest

from src.gateway.dialogue import contains_template_marker, extract_reply_text
from src.gateway.errors import (
    BackendFailure,
    BackendTimeout,
    MalformedBackendResponse,
    UnevaluatedTemplateError,
)
from src.gateway.models import SessionMetadata
from tests.fakes import json_reply, make_dispatcher

METADATA = SessionMetadata(session_id="CA789012", caller_number="+4915112345678")


class TestExtractReplyText:
    """Reply extraction precedence: response > text > output > raw."""

    def test_response_wins(self):
        assert extract_reply_text({"response": "a", "text": "b", "output": "c"}) == "a"

    def test_text_before_output(self):
        assert extract_reply_text({"text": "b", "output": "c"}) == "b"

    def test_output(self):
        assert extract_reply_text({"output": "c"}) == "c"

    def test_empty_response_falls_through(self):
        assert extract_reply_text({"response": "", "text": "b"}) == "b"

    def test_bare_string(self):
        assert extract_reply_text("Guten Tag") == "Guten Tag"

    def test_list_takes_first_element(self):
        assert extract_reply_text([{"output": "first"}, {"output": "second"}]) == "first"

    def test_nested_object_probed_once_more(self):
        assert extract_reply_text({"response": {"text": "inner"}}) == "inner"

    def test_list_wrapping_nested_object(self):
        assert extract_reply_text([{"output": {"response": "deep"}}]) == "deep"

    def test_number_is_stringified(self):
        assert extract_reply_text({"response": 42}) == "42"

    def test_empty_list(self):
        assert extract_reply_text([]) is None

    def test_none(self):
        assert extract_reply_text(None) is None

    @pytest.mark.parametrize(
        "body",
        [{"response": ""}, [{"output": ""}], {"response": "", "text": "", "output": ""}],
    )
    def test_empty_reply_field_is_empty_reply(self, body):
        assert extract_reply_text(body) == ""

    def test_object_without_reply_is_malformed(self):
        with pytest.raises(MalformedBackendResponse):
            extract_reply_text({"foo": "bar"})

    def test_too_deep_is_malformed(self):
        with pytest.raises(MalformedBackendResponse):
            extract_reply_text({"response": {"text": {"output": "too deep"}}})

    def test_boolean_is_malformed(self):
        with pytest.raises(MalformedBackendResponse):
            extract_reply_text({"response": True})


class TestTemplateMarkers:
    @pytest.mark.parametrize("text", ["{{ $json.output }}", "Hallo {{name", "name}} ok"])
    def test_detects_markers(self, text):
        assert contains_template_marker(text)

    @pytest.mark.parametrize("text", ["", None, "Hallo {name}", "plain"])
    def test_clean_text(self, text):
        assert not contains_template_marker(text)


class TestTranscriptDispatcher:
    """Tests for TranscriptDispatcher against a mocked webhook."""

    @pytest.mark.asyncio
    async def test_payload_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": "Hallo zurück"})

        reply = await make_dispatcher(handler).dispatch("Hallo", METADATA)

        assert reply is not None
        assert reply.text == "Hallo zurück"
        assert seen["url"] == "http://n8n.test/webhook/voice-chat"
        body = seen["body"]
        assert body["transcript"] == "Hallo"
        assert body["sessionId"] == "CA789012"
        assert body["callerNumber"] == "+4915112345678"
        assert body["timestamp"].endswith("+00:00")

    @pytest.mark.asyncio
    async def test_missing_caller_number_is_null(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": "ok"})

        await make_dispatcher(handler).dispatch("Hallo", SessionMetadata(session_id="CA1"))
        assert seen["body"]["callerNumber"] is None

    @pytest.mark.asyncio
    async def test_empty_transcript_is_not_sent(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"response": "ok"})

        assert await make_dispatcher(handler).dispatch("   ", METADATA) is None
        assert calls == []

    @pytest.mark.asyncio
    async def test_plain_text_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="Einfach Text")

        reply = await make_dispatcher(handler).dispatch("Hallo", METADATA)
        assert reply.text == "Einfach Text"

    @pytest.mark.asyncio
    async def test_reply_is_stripped(self):
        reply = await make_dispatcher(json_reply({"text": "  Hallo  \n"})).dispatch("Hi", METADATA)
        assert reply.text == "Hallo"

    @pytest.mark.asyncio
    async def test_whitespace_reply_means_nothing_to_say(self):
        assert await make_dispatcher(json_reply({"response": "   "})).dispatch("Hi", METADATA) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [{"response": ""}, [{"output": ""}], {"response": "", "text": "", "output": ""}],
    )
    async def test_empty_reply_field_means_nothing_to_say(self, body):
        assert await make_dispatcher(json_reply(body)).dispatch("hallo", METADATA) is None

    @pytest.mark.asyncio
    async def test_empty_body_means_nothing_to_say(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="")

        assert await make_dispatcher(handler).dispatch("Hi", METADATA) is None

    @pytest.mark.asyncio
    async def test_template_in_reply_raises(self):
        dispatcher = make_dispatcher(json_reply({"response": "{{ $json.output }}"}))
        with pytest.raises(UnevaluatedTemplateError):
            await dispatcher.dispatch("Hallo", METADATA)

    @pytest.mark.asyncio
    async def test_template_anywhere_in_body_raises(self):
        dispatcher = make_dispatcher(json_reply({"response": "ok", "debug": "{{ $node }}"}))
        with pytest.raises(UnevaluatedTemplateError):
            await dispatcher.dispatch("Hallo", METADATA)

    @pytest.mark.asyncio
    async def test_timeout_maps_to_backend_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(BackendTimeout) as exc_info:
            await make_dispatcher(handler).dispatch("Hallo", METADATA)
        assert exc_info.value.backend == "dialogue"

    @pytest.mark.asyncio
    async def test_error_status_maps_to_backend_failure(self):
        with pytest.raises(BackendFailure, match="HTTP 500"):
            await make_dispatcher(json_reply({"error": "boom"}, status_code=500)).dispatch("Hallo", METADATA)

    @pytest.mark.asyncio
    async def test_connection_error_maps_to_backend_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(BackendFailure):
            await make_dispatcher(handler).dispatch("Hallo", METADATA)
