"""
Reply playback: synthesize, convert, frame and pace audio back to the caller.

Frames are 160 bytes of mu-law (20ms at 8kHz) and are sent on a fixed 20ms
cadence so the caller hears real-time audio instead of a burst. The wait
between two frames is a wait on the session's cancel signal, so barge-in is
observed at every frame boundary and no frame is sent after it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import structlog

from src.gateway.audio import (
    FRAME_DURATION_MS,
    chunk_audio_list,
    frame_count,
    frame_size_for,
    wav_bytes_to_twilio_ulaw,
)
from src.gateway.errors import (
    BackendError,
    BackendFailure,
    BackendTimeout,
    MissingRoutingToken,
    TransportClosed,
)
from src.gateway.models import CallContext
from src.gateway.transport import MediaTransport
from src.gateway.tts_providers.base import TTSProvider
from src.gateway.twilio_protocol import (
    END_OF_AUDIO_MARK,
    create_clear_message,
    create_mark_message,
    create_media_message,
)

logger = structlog.get_logger(__name__)


class PlaybackOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class PlaybackResult:
    """What one `speak` call actually put on the wire."""
    outcome: PlaybackOutcome
    frames_sent: int = 0
    frames_total: int = 0
    bytes_sent: int = 0
    tts_ms: float = 0.0
    playback_ms: float = 0.0

    @property
    def cancelled(self) -> bool:
        return self.outcome == PlaybackOutcome.CANCELLED


class PlaybackController:
    """
    Per-session reply player.

    Only one reply plays at a time; a second `speak` waits until the first has
    completed, been cancelled, or failed.
    """

    def __init__(
        self,
        transport: MediaTransport,
        tts: TTSProvider,
        *,
        frame_ms: int = FRAME_DURATION_MS,
        tts_timeout_s: float = 15.0,
        encode: Callable[[bytes], bytes] = wav_bytes_to_twilio_ulaw,
    ):
        self._transport = transport
        self._tts = tts
        self._frame_size = frame_size_for(frame_ms)
        self._frame_interval_s = frame_ms / 1000.0
        self._tts_timeout_s = tts_timeout_s
        self._encode = encode
        self._lock = asyncio.Lock()

    async def speak(self, ctx: CallContext, text: str) -> PlaybackResult:
        """
        Speak `text` to the caller.

        Raises:
            TransportClosed: Connection not open (before or during playback)
            MissingRoutingToken: No streamSid (before or during playback)
            BackendTimeout, BackendFailure: Synthesis failed
        """
        async with self._lock:
            return await self._speak(ctx, text)

    def cancel(self, ctx: CallContext) -> bool:
        """
        Arm the cancel signal for the reply in progress.

        Returns:
            True if a reply was playing
        """
        was_speaking = ctx.speaking
        ctx.playback_cancel.set()
        ctx.speaking = False
        return was_speaking

    async def send_clear(self, ctx: CallContext) -> None:
        """Tell the transport to drop audio it buffered but has not played."""
        if not self._transport.is_open or not ctx.stream_id:
            return
        await self._transport.send(create_clear_message(ctx.stream_id))

    async def _speak(self, ctx: CallContext, text: str) -> PlaybackResult:
        if ctx.closed or not self._transport.is_open:
            raise TransportClosed("Cannot speak: media stream is not open")
        if not ctx.stream_id:
            logger.error("Cannot speak: streamSid is missing", session_id=ctx.session_id)
            raise MissingRoutingToken()

        cancel = ctx.new_playback_signal()
        ctx.speaking = True
        try:
            tts_started = time.monotonic()
            wav_bytes = await self._synthesize(text)
            audio = self._convert(wav_bytes)
            tts_ms = (time.monotonic() - tts_started) * 1000
            logger.debug(
                "TTS converted to mulaw",
                session_id=ctx.session_id,
                bytes=len(audio),
                frames=frame_count(len(audio), self._frame_size),
                tts_ms=round(tts_ms, 2),
            )

            frames = chunk_audio_list(audio, self._frame_size)
            send_started = time.monotonic()
            result = await self._send_frames(ctx, frames, cancel)
            result.tts_ms = tts_ms
            result.playback_ms = (time.monotonic() - send_started) * 1000

            await self._send_end_mark(ctx)

            logger.info(
                "Reply audio sent",
                session_id=ctx.session_id,
                outcome=result.outcome.value,
                frames_sent=result.frames_sent,
                frames_total=result.frames_total,
                bytes_sent=result.bytes_sent,
                playback_ms=round(result.playback_ms, 2),
            )
            return result
        finally:
            ctx.speaking = False

    async def _synthesize(self, text: str) -> bytes:
        logger.debug("Generating TTS", text=text[:100])
        try:
            return await asyncio.wait_for(self._tts.synthesize(text), timeout=self._tts_timeout_s)
        except asyncio.TimeoutError as e:
            raise BackendTimeout("tts", f"no audio after {self._tts_timeout_s:.1f}s") from e
        except BackendError:
            raise
        except Exception as e:
            raise BackendFailure("tts", f"{type(e).__name__}: {e}") from e

    def _convert(self, wav_bytes: bytes) -> bytes:
        try:
            return self._encode(wav_bytes)
        except ValueError as e:
            raise BackendFailure("tts", f"undecodable audio: {e}") from e

    async def _send_frames(
        self,
        ctx: CallContext,
        frames: List[bytes],
        cancel: asyncio.Event,
    ) -> PlaybackResult:
        result = PlaybackResult(outcome=PlaybackOutcome.COMPLETED, frames_total=len(frames))
        loop = asyncio.get_running_loop()
        next_send_time = loop.time()

        for index, frame in enumerate(frames):
            if index:
                delay = next_send_time - loop.time()
                if delay > 0:
                    try:
                        await asyncio.wait_for(cancel.wait(), timeout=delay)
                    except asyncio.TimeoutError:
                        pass  # interval elapsed, not cancelled
                elif delay < -self._frame_interval_s:
                    # Fell behind by more than a frame; re-anchor instead of bursting.
                    next_send_time = loop.time()

            if cancel.is_set():
                result.outcome = PlaybackOutcome.CANCELLED
                logger.info(
                    "Playback cancelled",
                    session_id=ctx.session_id,
                    frames_sent=result.frames_sent,
                    frames_total=result.frames_total,
                )
                break
            if not self._transport.is_open:
                raise TransportClosed(
                    f"Connection closed after {result.frames_sent}/{result.frames_total} frames"
                )
            if not ctx.stream_id:
                logger.error(
                    "streamSid lost during playback",
                    session_id=ctx.session_id,
                    frames_sent=result.frames_sent,
                )
                raise MissingRoutingToken()

            await self._transport.send(create_media_message(ctx.stream_id, frame))
            result.frames_sent += 1
            result.bytes_sent += len(frame)
            next_send_time += self._frame_interval_s

        return result

    async def _send_end_mark(self, ctx: CallContext) -> None:
        if not self._transport.is_open or not ctx.stream_id:
            return
        try:
            await self._transport.send(create_mark_message(ctx.stream_id, END_OF_AUDIO_MARK))
        except TransportClosed as e:
            logger.warning("Error sending end-of-audio mark", error=str(e))


def create_playback_controller(
    transport: MediaTransport,
    tts: TTSProvider,
    *,
    frame_ms: int = FRAME_DURATION_MS,
    tts_timeout_ms: int = 15000,
    encode: Optional[Callable[[bytes], bytes]] = None,
) -> PlaybackController:
    return PlaybackController(
        transport,
        tts,
        frame_ms=frame_ms,
        tts_timeout_s=tts_timeout_ms / 1000.0,
        encode=encode or wav_bytes_to_twilio_ulaw,
    )
