"""
Speech-to-text backends.

One capability, two variants:
- `BatchSTT`: takes one complete utterance, returns one final transcript.
  Implemented by `WhisperSTT` (faster-whisper / whisper-asr-webservice `/asr`).
- `StreamingSTT`: takes the live frame stream, emits partial/final
  `TranscriptEvent`s asynchronously. Implemented by `DeepgramSTT`, which accepts
  mu-law 8kHz straight from the media stream (no conversion needed).

The call session is written once against `SpeechBackend` and picks its
segmentation strategy from `SpeechBackend.streaming`.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional
from urllib.parse import urlencode

import httpx
import structlog
import websockets

from src.gateway.audio import twilio_ulaw_to_stt_wav
from src.gateway.config import Config, get_config
from src.gateway.errors import BackendFailure
from src.gateway.http_backend import http_client, map_httpx_error
from src.gateway.models import TranscriptEvent

logger = structlog.get_logger(__name__)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"

TranscriptCallback = Callable[[TranscriptEvent], Awaitable[None]]


class SpeechBackend(ABC):
    """Common base for both STT variants."""

    streaming: bool = False

    async def close(self) -> None:
        return None


class BatchSTT(SpeechBackend):
    @abstractmethod
    async def transcribe(self, audio_ulaw: bytes) -> TranscriptEvent:
        """Transcribe one complete utterance (mu-law 8kHz)."""
        raise NotImplementedError


class StreamingSTT(SpeechBackend):
    streaming = True

    @abstractmethod
    async def start(self, on_event: TranscriptCallback) -> bool:
        """Open the live stream; events are delivered through `on_event`."""
        raise NotImplementedError

    @abstractmethod
    async def send_audio(self, audio_ulaw: bytes) -> None:
        raise NotImplementedError

    async def finalize(self) -> None:
        """Ask the provider to flush any pending final transcript."""
        return None


class WhisperSTT(BatchSTT):
    """
    Whisper ASR webservice client.

    POSTs a 16kHz WAV to `{WHISPER_URL}/asr` as multipart form data.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._client = client

    @property
    def url(self) -> str:
        return self.config.whisper_url.rstrip("/") + "/asr"

    async def transcribe(self, audio_ulaw: bytes) -> TranscriptEvent:
        if not audio_ulaw:
            return TranscriptEvent(text="", is_final=True)

        wav_bytes = twilio_ulaw_to_stt_wav(audio_ulaw)
        timeout_s = self.config.whisper_timeout_ms / 1000.0

        files = {"audio_file": ("audio.wav", wav_bytes, "audio/wav")}
        data = {
            "task": "transcribe",
            "language": self.config.whisper_language,
            "output": "json",
        }

        logger.debug("Sending audio to Whisper", bytes=len(audio_ulaw), wav_bytes=len(wav_bytes))
        started = time.monotonic()
        try:
            async with http_client(self._client, timeout_s) as client:
                resp = await client.post(
                    self.url,
                    files=files,
                    data=data,
                    timeout=httpx.Timeout(timeout_s),
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise map_httpx_error("stt", e) from e

        try:
            payload: Any = resp.json()
        except ValueError:
            payload = resp.text

        text = self._extract_text(payload)
        logger.debug(
            "Whisper transcription received",
            elapsed_ms=round((time.monotonic() - started) * 1000, 2),
            chars=len(text),
        )
        return TranscriptEvent(text=text, is_final=True)

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if isinstance(payload, str):
            return payload
        if not isinstance(payload, dict):
            raise BackendFailure("stt", f"unexpected response type {type(payload).__name__}")
        for key in ("text", "transcription", "result"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
        return ""


class DeepgramSTT(StreamingSTT):
    """
    Deepgram streaming STT client using raw WebSocket.

    Deepgram finalizes a long utterance in several `is_final` segments; they are
    joined and emitted as one final event on `speech_final` or `UtteranceEnd`.
    Everything before that is emitted as a partial.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self._on_event: Optional[TranscriptCallback] = None
        self._ws = None
        self._is_connected = False
        self._receive_task: Optional[asyncio.Task] = None
        self._final_parts: List[str] = []

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def _build_url(self) -> str:
        params = {
            "model": self.config.deepgram_model,
            "language": self.config.deepgram_language,
            "encoding": "mulaw",
            "sample_rate": 8000,
            "channels": 1,
            "punctuate": "true",
            "smart_format": "true",
            "interim_results": "true",
            "vad_events": "true",
            "endpointing": 300,
            "utterance_end_ms": 1000,
        }
        return f"{DEEPGRAM_URL}?{urlencode(params)}"

    async def start(self, on_event: TranscriptCallback) -> bool:
        """Connect to Deepgram streaming API."""
        self._on_event = on_event
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            self._ws = await websockets.connect(
                self._build_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected", model=self.config.deepgram_model)
        return True

    async def send_audio(self, audio_ulaw: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws or not audio_ulaw:
            return

        try:
            await self._ws.send(audio_ulaw)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def finalize(self) -> None:
        if not self._is_connected or not self._ws:
            return
        try:
            await self._ws.send(json.dumps({"type": "Finalize"}))
        except Exception as e:
            logger.warning("Failed to finalize Deepgram stream", error=str(e))

    async def close(self) -> None:
        """Disconnect from Deepgram."""
        self._is_connected = False

        if self._ws:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("Deepgram CloseStream not sent", error=str(e))

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected")

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break

                try:
                    data = json.loads(message)
                    await self._handle_message(data)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

    async def _emit(self, text: str, *, is_final: bool) -> None:
        if self._on_event and text:
            await self._on_event(TranscriptEvent(text=text, is_final=is_final))

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            channel = data.get("channel", {})
            alternatives = channel.get("alternatives", []) if isinstance(channel, dict) else []
            transcript = ""
            if alternatives:
                transcript = (alternatives[0].get("transcript", "") or "").strip()

            is_final = bool(data.get("is_final", False))
            speech_final = bool(data.get("speech_final", False))

            if is_final and transcript:
                self._final_parts.append(transcript)

            if speech_final and self._final_parts:
                text = " ".join(self._final_parts)
                self._final_parts = []
                logger.debug("STT final transcript", text=text[:50])
                await self._emit(text, is_final=True)
                return

            if transcript:
                pending = self._final_parts if is_final else self._final_parts + [transcript]
                await self._emit(" ".join(pending), is_final=False)

        elif msg_type_norm in ("utteranceend", "utterance_end"):
            logger.debug("Utterance end detected")
            if self._final_parts:
                text = " ".join(self._final_parts)
                self._final_parts = []
                await self._emit(text, is_final=True)

        elif msg_type_norm == "error":
            logger.error(
                "Deepgram error",
                error=data.get("message", "Unknown"),
                details=data,
            )


def create_speech_backend(
    config: Optional[Config] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> SpeechBackend:
    """Build the STT backend for one call session."""
    config = config or get_config()
    if config.stt_mode == "streaming":
        return DeepgramSTT(config)
    return WhisperSTT(config, client=client)
