"""
Voice activity segmentation.

Two interchangeable strategies, picked from the STT backend at session start:

- `BatchSegmenter`: local silence detection. Every inbound frame is buffered
  and re-arms a silence deadline; when the deadline fires and enough audio is
  buffered, the buffer is swapped out and handed to batch transcription.
  Only one transcription may be outstanding; frames that arrive meanwhile seed
  the next utterance.
- `StreamingSegmenter`: provider-side segmentation. Frames go straight to the
  streaming STT; finals are dispatched, and any speech heard while a reply is
  playing is reported as barge-in.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from src.gateway.models import AudioFrame, CallContext, TranscriptEvent
from src.gateway.stt import StreamingSTT

logger = structlog.get_logger(__name__)

DEFAULT_SILENCE_MS = 500
DEFAULT_MIN_UTTERANCE_MS = 1000


class SilenceDeadline:
    """
    A cancellable one-shot timer, re-armed on every frame.

    Each arm bumps a generation counter; a callback from an older arm is
    ignored, so the deadline fires at most once per continuous silence.
    """

    def __init__(self, delay_s: float, on_fire: Callable[[], None]):
        self.delay_s = delay_s
        self._on_fire = on_fire
        self._handle: Optional[asyncio.TimerHandle] = None
        self._generation = 0
        self.deadline: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> float:
        """(Re)start the countdown. Returns the loop time at which it fires."""
        self.cancel()
        self._generation += 1
        loop = asyncio.get_running_loop()
        self.deadline = loop.time() + self.delay_s
        self._handle = loop.call_later(self.delay_s, self._fire, self._generation)
        return self.deadline

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self.deadline = None

    def _fire(self, generation: int) -> None:
        if generation != self._generation or self._handle is None:
            return
        self._handle = None
        self.deadline = None
        self._on_fire()


class BatchSegmenter:
    """Silence-based utterance detection feeding a batch STT."""

    streaming = False

    def __init__(
        self,
        ctx: CallContext,
        on_utterance: Callable[[bytes], None],
        *,
        silence_ms: int = DEFAULT_SILENCE_MS,
        min_utterance_ms: int = DEFAULT_MIN_UTTERANCE_MS,
    ):
        self._ctx = ctx
        self._on_utterance = on_utterance
        self._min_utterance_ms = min_utterance_ms
        self._deadline = SilenceDeadline(silence_ms / 1000.0, self._on_silence)
        # `stop` arrived while a transcription was outstanding.
        self._flush_pending = False

    @property
    def deadline(self) -> SilenceDeadline:
        return self._deadline

    async def start(self) -> bool:
        return True

    async def push(self, frame: AudioFrame) -> None:
        ctx = self._ctx
        ctx.inbound_buffer.append(frame)
        ctx.last_frame_timestamp = frame.timestamp
        ctx.boundary_deferred = False
        ctx.silence_deadline = self._deadline.arm()

    def _on_silence(self) -> None:
        ctx = self._ctx
        ctx.silence_deadline = None
        if ctx.closed or not ctx.inbound_buffer:
            return

        if ctx.transcribing:
            ctx.boundary_deferred = True
            logger.debug(
                "VAD: silence while transcription outstanding, deferring",
                session_id=ctx.session_id,
                buffered_ms=ctx.buffered_ms,
            )
            return

        if ctx.buffered_ms < self._min_utterance_ms:
            logger.debug(
                "VAD: audio too short, retained and re-armed",
                session_id=ctx.session_id,
                buffered_ms=ctx.buffered_ms,
                min_utterance_ms=self._min_utterance_ms,
            )
            ctx.silence_deadline = self._deadline.arm()
            return

        logger.info(
            "VAD: silence detected, transcribing buffered audio",
            session_id=ctx.session_id,
            buffered_ms=ctx.buffered_ms,
        )
        self._hand_off()

    def _hand_off(self) -> None:
        ctx = self._ctx
        ctx.transcribing = True
        audio = ctx.take_buffer()
        self._on_utterance(audio)

    def on_transcription_done(self) -> None:
        """Re-evaluate a boundary that was held back by the outstanding transcription."""
        ctx = self._ctx
        if ctx.transcribing:
            return
        if self._flush_pending:
            self._flush_pending = False
            if ctx.inbound_buffer:
                self._hand_off()
            return
        if ctx.boundary_deferred and not self._deadline.armed:
            ctx.boundary_deferred = False
            self._on_silence()

    async def flush(self) -> bool:
        """
        End of inbound audio: hand off whatever is buffered, however short.

        Returns:
            True if a transcription was started
        """
        ctx = self._ctx
        self._deadline.cancel()
        ctx.silence_deadline = None
        if not ctx.inbound_buffer:
            return False
        if ctx.transcribing:
            self._flush_pending = True
            return False
        self._hand_off()
        return True

    def cancel_timers(self) -> None:
        self._deadline.cancel()
        self._ctx.silence_deadline = None

    async def close(self) -> None:
        self.cancel_timers()
        self._flush_pending = False
        self._ctx.inbound_buffer.clear()


class StreamingSegmenter:
    """Forwards frames to a streaming STT and interprets its events."""

    streaming = True

    def __init__(
        self,
        ctx: CallContext,
        stt: StreamingSTT,
        *,
        on_final: Callable[[str], Awaitable[None]],
        on_barge_in: Callable[[TranscriptEvent], Awaitable[None]],
    ):
        self._ctx = ctx
        self._stt = stt
        self._on_final = on_final
        self._on_barge_in = on_barge_in

    async def start(self) -> bool:
        return await self._stt.start(self.handle_event)

    async def push(self, frame: AudioFrame) -> None:
        self._ctx.last_frame_timestamp = frame.timestamp
        await self._stt.send_audio(frame.payload)

    async def handle_event(self, event: TranscriptEvent) -> None:
        ctx = self._ctx
        if event.is_empty:
            return

        if ctx.speaking and not ctx.closed:
            await self._on_barge_in(event)

        if event.is_final:
            await self._on_final(event.text.strip())

    async def flush(self) -> bool:
        await self._stt.finalize()
        return False

    def cancel_timers(self) -> None:
        return None

    async def close(self) -> None:
        await self._stt.close()
