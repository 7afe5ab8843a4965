"""
Tests for the HTTP endpoints and the media stream WebSocket.
"""

import xml.etree.ElementTree as ET
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from server.app import WebSocketTransport, app, metrics, websocket_endpoint
from src.gateway.errors import TransportClosed
from tests.fakes import start_message, stop_message


def _client() -> TestClient:
    return TestClient(app, raise_server_exceptions=False)


class TestTwimlGeneration:
    """Tests for TwiML endpoint."""

    def test_twiml_contains_stream_element(self):
        response = _client().post("/twiml")

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")

        content = response.text
        assert "<Response>" in content
        assert "<Connect>" in content
        assert "<Stream" in content
        assert "wss://test.ngrok.io/ws" in content

    def test_twiml_is_valid_xml(self):
        root = ET.fromstring(_client().post("/twiml").text)
        assert root.tag == "Response"
        stream = root.find("./Connect/Stream")
        assert stream is not None
        assert stream.get("url") == "wss://test.ngrok.io/ws"

    def test_twiml_passes_caller_number_from_form(self):
        response = _client().post("/twiml", data={"From": "+4915112345678", "CallSid": "CA1"})

        root = ET.fromstring(response.text)
        parameter = root.find("./Connect/Stream/Parameter")
        assert parameter is not None
        assert parameter.get("name") == "callerNumber"
        assert parameter.get("value") == "+4915112345678"

    def test_twiml_passes_caller_number_from_query(self):
        response = _client().get("/twiml", params={"From": "+4930123"})
        parameter = ET.fromstring(response.text).find("./Connect/Stream/Parameter")
        assert parameter.get("value") == "+4930123"

    def test_twiml_escapes_caller_number(self):
        response = _client().get("/twiml", params={"From": '"><evil/>'})
        parameter = ET.fromstring(response.text).find("./Connect/Stream/Parameter")
        assert parameter.get("value") == '"><evil/>'

    def test_twiml_without_caller_has_no_parameter(self):
        root = ET.fromstring(_client().get("/twiml").text)
        assert root.find("./Connect/Stream/Parameter") is None


class TestHealthEndpoint:
    def test_health_returns_ok(self):
        response = _client().get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert "active_calls" in data


class TestMetricsEndpoint:
    def test_metrics_returns_json(self):
        response = _client().get("/metrics")

        assert response.status_code == 200
        data = response.json()
        for key in (
            "uptime_seconds",
            "total_connections",
            "active_connections",
            "total_calls",
            "active_calls",
            "malformed_messages",
            "errors",
        ):
            assert key in data


class FakeWebSocket:
    """Just enough of starlette's WebSocket for the endpoint loop."""

    def __init__(self, messages):
        self._messages = list(messages)
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.app = SimpleNamespace(state=SimpleNamespace())
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def receive(self):
        if not self._messages:
            self.client_state = WebSocketState.DISCONNECTED
            return {"type": "websocket.disconnect", "code": 1000}
        message = self._messages.pop(0)
        key = "bytes" if isinstance(message, bytes) else "text"
        return {"type": "websocket.receive", key: message}

    async def send_text(self, message):
        if self.client_state != WebSocketState.CONNECTED:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(message)


class TestMediaStreamWebSocket:
    @pytest.mark.asyncio
    async def test_malformed_message_does_not_end_call(self):
        before_calls = metrics.total_calls
        before_malformed = metrics.malformed_messages
        websocket = FakeWebSocket([
            '{"event": "connected", "protocol": "Call"}',
            start_message(),
            "this is not json",
            b'{"event": "mark", "streamSid": "MZ123456", "mark": {"name": "end-of-audio"}}',
            stop_message(),
        ])

        await websocket_endpoint(websocket)

        assert websocket.accepted
        assert websocket.sent == []
        assert metrics.total_calls == before_calls + 1
        assert metrics.malformed_messages == before_malformed + 1
        assert metrics.active_calls == 0


class TestWebSocketTransport:
    @pytest.mark.asyncio
    async def test_send_while_open(self):
        websocket = FakeWebSocket([])
        transport = WebSocketTransport(websocket)

        assert transport.is_open
        await transport.send('{"event": "clear"}')
        assert websocket.sent == ['{"event": "clear"}']

    @pytest.mark.asyncio
    async def test_send_after_disconnect_raises(self):
        websocket = FakeWebSocket([])
        websocket.client_state = WebSocketState.DISCONNECTED
        transport = WebSocketTransport(websocket)

        assert not transport.is_open
        with pytest.raises(TransportClosed):
            await transport.send('{"event": "clear"}')

    @pytest.mark.asyncio
    async def test_failed_send_marks_closed(self):
        websocket = FakeWebSocket([])
        transport = WebSocketTransport(websocket)
        websocket.application_state = WebSocketState.CONNECTED
        websocket.client_state = WebSocketState.CONNECTED

        async def broken_send(message):
            raise RuntimeError("socket gone")

        websocket.send_text = broken_send
        with pytest.raises(TransportClosed):
            await transport.send("{}")
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_mark_closed(self):
        transport = WebSocketTransport(FakeWebSocket([]))
        transport.mark_closed()
        assert not transport.is_open
