"""
FastAPI server for the voice gateway.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /twiml: TwiML that points the call's media stream at /ws
- WS /ws: Media stream WebSocket, one CallSession per connection
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from xml.sax.saxutils import quoteattr

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState
import structlog
import uvicorn

from src.gateway.config import ConfigError, get_config, init_config
from src.gateway.errors import TransportClosed
from src.gateway.http_backend import create_shared_client


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    active_calls: int = 0
    malformed_messages: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "malformed_messages": self.malformed_messages,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


class WebSocketTransport:
    """Outbound half of a media stream WebSocket, as seen by CallSession."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send(self, message: str) -> None:
        if not self.is_open:
            raise TransportClosed()
        try:
            await self._websocket.send_text(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._closed = True
            raise TransportClosed(f"send failed: {type(e).__name__}: {e}") from e


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice gateway server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        app.state.http = create_shared_client(
            timeout_s=max(config.whisper_timeout_ms, config.dialogue_timeout_ms, config.tts_timeout_ms) / 1000.0
        )

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            stt_mode=config.stt_mode,
            tts_provider=config.tts_provider,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await app.state.http.aclose()


app = FastAPI(
    title="Voice Gateway",
    description="Phone call media stream to speech-to-text, dialogue webhook and text-to-speech",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for the incoming-call webhook.

    The caller number is passed through as a custom stream parameter so the
    session can forward it to the dialogue backend.
    """
    config = get_config()

    caller: Optional[str] = request.query_params.get("From")
    if caller is None and request.method == "POST":
        form = await request.form()
        value = form.get("From")
        caller = value if isinstance(value, str) else None

    parameter = ""
    if caller:
        parameter = f"\n            <Parameter name=\"callerNumber\" value={quoteattr(caller)} />"

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url="{config.ws_url}">{parameter}
        </Stream>
    </Connect>
</Response>"""

    logger.info("Generated TwiML", ws_url=config.ws_url, caller_number=caller)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Media stream WebSocket endpoint.

    Inbound messages feed the call session; a single bad message never ends
    the call. Disconnect tears the session down.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    call_id = f"call_{int(time.time() * 1000)}"

    logger.info(
        "WebSocket connected",
        call_id=call_id,
        active_calls=metrics.active_calls,
    )

    # Import here to avoid circular imports and speed up startup
    from src.gateway.session import create_session

    transport = WebSocketTransport(websocket)
    session = None

    try:
        session = create_session(transport, http=getattr(websocket.app.state, "http", None))

        while True:
            try:
                message = await websocket.receive()
            except (WebSocketDisconnect, RuntimeError):
                logger.info("WebSocket disconnected", call_id=call_id)
                break

            if message["type"] == "websocket.disconnect":
                logger.info("WebSocket disconnected", call_id=call_id, code=message.get("code"))
                break

            data = message.get("text")
            if data is None:
                data = message.get("bytes")
            if data is None:
                continue

            try:
                protocol_errors = session.metrics.protocol_errors
                await session.handle_message(data)
                metrics.malformed_messages += session.metrics.protocol_errors - protocol_errors
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_id=call_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        transport.mark_closed()
        if session:
            try:
                await session.close(reason="websocket disconnected")
            except Exception as e:
                logger.error("Error closing call session", call_id=call_id, error=str(e))

        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Call ended",
            call_id=call_id,
            active_calls=metrics.active_calls,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    # loop="auto" picks uvloop where it is installed
    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        loop="auto",
        reload=False,
    )


if __name__ == "__main__":
    main()
