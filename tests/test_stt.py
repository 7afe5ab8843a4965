"""
Tests for the speech-to-text backends.
"""

from typing import List

import httpx
import pytest

from src.gateway.config import Config
from src.gateway.errors import BackendFailure, BackendTimeout
from src.gateway.models import TranscriptEvent
from src.gateway.stt import DeepgramSTT, WhisperSTT, create_speech_backend


def _whisper(handler) -> WhisperSTT:
    config = Config(whisper_url="http://stt.test:8000/", whisper_language="de")
    return WhisperSTT(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestWhisperSTT:
    @pytest.mark.asyncio
    async def test_posts_wav_to_asr(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = request.content
            return httpx.Response(200, json={"text": " Guten Tag "})

        event = await _whisper(handler).transcribe(b"\xff" * 1600)

        assert event == TranscriptEvent(text=" Guten Tag ", is_final=True)
        assert seen["method"] == "POST"
        assert seen["url"] == "http://stt.test:8000/asr"
        assert b'name="audio_file"' in seen["body"]
        assert b"RIFF" in seen["body"]
        assert b'name="language"' in seen["body"]

    @pytest.mark.asyncio
    async def test_empty_audio_skips_request(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"text": "x"})

        event = await _whisper(handler).transcribe(b"")
        assert event.is_empty
        assert calls == []

    @pytest.mark.asyncio
    async def test_plain_text_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="hallo")

        assert (await _whisper(handler).transcribe(b"\xff" * 160)).text == "hallo"

    @pytest.mark.asyncio
    async def test_alternate_keys(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"transcription": "hallo"})

        assert (await _whisper(handler).transcribe(b"\xff" * 160)).text == "hallo"

    @pytest.mark.asyncio
    async def test_unexpected_shape(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[1, 2])

        with pytest.raises(BackendFailure):
            await _whisper(handler).transcribe(b"\xff" * 160)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(BackendTimeout) as exc_info:
            await _whisper(handler).transcribe(b"\xff" * 160)
        assert exc_info.value.backend == "stt"

    @pytest.mark.asyncio
    async def test_error_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        with pytest.raises(BackendFailure, match="HTTP 503"):
            await _whisper(handler).transcribe(b"\xff" * 160)


class TestDeepgramMessages:
    """Deepgram result handling, without a network connection."""

    def _stt(self):
        events: List[TranscriptEvent] = []
        stt = DeepgramSTT(Config(stt_mode="streaming", deepgram_api_key="key"))

        async def on_event(event: TranscriptEvent) -> None:
            events.append(event)

        stt._on_event = on_event
        return stt, events

    @staticmethod
    def _result(transcript: str, is_final: bool = False, speech_final: bool = False) -> dict:
        return {
            "type": "Results",
            "is_final": is_final,
            "speech_final": speech_final,
            "channel": {"alternatives": [{"transcript": transcript}]},
        }

    @pytest.mark.asyncio
    async def test_interim_is_partial(self):
        stt, events = self._stt()
        await stt._handle_message(self._result("hal"))
        assert events == [TranscriptEvent(text="hal", is_final=False)]

    @pytest.mark.asyncio
    async def test_final_segments_joined_on_speech_final(self):
        stt, events = self._stt()
        await stt._handle_message(self._result("guten tag", is_final=True))
        await stt._handle_message(self._result("wie geht's", is_final=True, speech_final=True))

        finals = [e for e in events if e.is_final]
        assert finals == [TranscriptEvent(text="guten tag wie geht's", is_final=True)]

    @pytest.mark.asyncio
    async def test_utterance_end_flushes(self):
        stt, events = self._stt()
        await stt._handle_message(self._result("hallo", is_final=True))
        await stt._handle_message({"type": "UtteranceEnd"})
        assert events[-1] == TranscriptEvent(text="hallo", is_final=True)

    @pytest.mark.asyncio
    async def test_utterance_end_without_speech_is_silent(self):
        stt, events = self._stt()
        await stt._handle_message({"type": "UtteranceEnd"})
        assert events == []

    def test_url_requests_mulaw_8k(self):
        stt = DeepgramSTT(Config(stt_mode="streaming", deepgram_api_key="key", deepgram_model="nova-2"))
        url = stt._build_url()
        assert url.startswith("wss://api.deepgram.com/v1/listen?")
        assert "encoding=mulaw" in url
        assert "sample_rate=8000" in url
        assert "model=nova-2" in url


class TestFactory:
    def test_batch(self):
        assert isinstance(create_speech_backend(Config(stt_mode="batch")), WhisperSTT)

    def test_streaming(self):
        backend = create_speech_backend(Config(stt_mode="streaming", deepgram_api_key="k"))
        assert isinstance(backend, DeepgramSTT)
        assert backend.streaming
