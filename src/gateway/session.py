"""
Per-call session engine.

One `CallSession` per media stream connection. It owns the `CallContext` and
drives the conversational loop:

    Idle -(start)-> Listening -(utterance)-> AwaitingTranscript
        -(transcript)-> Dispatching -(reply)-> Speaking -(done)-> Listening

Everything runs on the event loop: media handling, the silence deadline
callback, transcription completion and the turn worker never run in parallel,
so `CallContext` needs no locks. Turns are processed one at a time from a
queue. A failed turn (backend timeout, bad reply, closed transport) is logged
and abandoned; the session keeps listening.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union, cast

import httpx
import structlog

from src.gateway.audio import get_audio_duration_ms
from src.gateway.config import Config, get_config
from src.gateway.dialogue import DialogueClient, TranscriptDispatcher
from src.gateway.errors import (
    BackendError,
    BackendTimeout,
    MalformedBackendResponse,
    MissingRoutingToken,
    ProtocolError,
    TransportClosed,
    UnevaluatedTemplateError,
)
from src.gateway.models import AudioFrame, CallContext, SessionPhase, TranscriptEvent
from src.gateway.playback import PlaybackController, create_playback_controller
from src.gateway.segmenter import BatchSegmenter, StreamingSegmenter
from src.gateway.stt import BatchSTT, SpeechBackend, StreamingSTT, create_speech_backend
from src.gateway.transport import MediaTransport
from src.gateway.tts import create_tts_provider
from src.gateway.tts_providers.base import TTSProvider
from src.gateway.twilio_protocol import (
    TwilioDTMFEvent,
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


@dataclass
class TurnMetrics:
    """Metrics for a single conversation turn."""
    turn_id: int = 0
    start_time: float = 0.0
    stt_ms: float = 0.0
    dialogue_ms: float = 0.0
    tts_ms: float = 0.0
    playback_ms: float = 0.0
    total_turn_ms: float = 0.0
    frames_sent: int = 0
    was_interrupted: bool = False
    error: Optional[str] = None

    def finalize(self) -> None:
        """Calculate total turn time."""
        if self.start_time > 0:
            self.total_turn_ms = (time.time() - self.start_time) * 1000


@dataclass
class CallMetrics:
    """Metrics for an entire call."""
    session_id: str = ""
    stream_id: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: List[TurnMetrics] = field(default_factory=list)
    transcriptions: int = 0
    total_interruptions: int = 0
    backend_errors: int = 0
    protocol_errors: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "stream_id": self.stream_id,
            "duration_seconds": round(self.duration_seconds, 2),
            "total_turns": len(self.turns),
            "transcriptions": self.transcriptions,
            "total_interruptions": self.total_interruptions,
            "backend_errors": self.backend_errors,
            "protocol_errors": self.protocol_errors,
            "avg_turn_ms": round(
                sum(t.total_turn_ms for t in self.turns) / len(self.turns), 2
            ) if self.turns else 0,
        }


@dataclass
class QueuedTranscript:
    """A final transcript queued for turn processing."""
    text: str
    stt_latency_ms: float = 0.0


Segmenter = Union[BatchSegmenter, StreamingSegmenter]


class CallSession:
    """
    Conversational loop for one call.

    Collaborators are injected so tests can swap any of them; anything not
    given is built from config.
    """

    def __init__(
        self,
        transport: MediaTransport,
        *,
        config: Optional[Config] = None,
        speech: Optional[SpeechBackend] = None,
        dispatcher: Optional[TranscriptDispatcher] = None,
        tts: Optional[TTSProvider] = None,
        http: Optional[httpx.AsyncClient] = None,
        encode: Optional[Callable[[bytes], bytes]] = None,
    ):
        self.config = config or get_config()
        self.ctx = CallContext()
        self._transport = transport

        self._speech = speech or create_speech_backend(self.config, http)
        self._dispatcher = dispatcher or TranscriptDispatcher(DialogueClient(self.config, http))
        self._tts = tts or create_tts_provider(self.config, http)
        self._playback: PlaybackController = create_playback_controller(
            transport,
            self._tts,
            frame_ms=self.config.playback_frame_ms,
            tts_timeout_ms=self.config.tts_timeout_ms,
            encode=encode,
        )
        self._segmenter: Segmenter = self._build_segmenter()

        self._turn_queue: asyncio.Queue[QueuedTranscript] = asyncio.Queue()
        self._turn_worker_task: Optional[asyncio.Task] = None
        self._transcription_task: Optional[asyncio.Task] = None
        self._turn_stage: Optional[SessionPhase] = None
        self._turn_counter = 0
        self._stopped = False
        self._logged_first_media = False

        self._call_metrics = CallMetrics()

    @property
    def phase(self) -> SessionPhase:
        return self.ctx.phase

    @property
    def streaming(self) -> bool:
        return self._segmenter.streaming

    @property
    def metrics(self) -> CallMetrics:
        return self._call_metrics

    def _build_segmenter(self) -> Segmenter:
        if self._speech.streaming:
            if not isinstance(self._speech, StreamingSTT):
                raise TypeError(f"{type(self._speech).__name__} claims streaming but is not a StreamingSTT")
            return StreamingSegmenter(
                self.ctx,
                self._speech,
                on_final=self._on_streaming_final,
                on_barge_in=self._on_barge_in,
            )
        if not isinstance(self._speech, BatchSTT):
            raise TypeError(f"{type(self._speech).__name__} is neither batch nor streaming STT")
        return BatchSegmenter(
            self.ctx,
            self._begin_transcription,
            silence_ms=self.config.silence_threshold_ms,
            min_utterance_ms=self.config.min_utterance_ms,
        )

    def _update_phase(self) -> None:
        ctx = self.ctx
        if ctx.closed:
            return
        if self._turn_stage is not None:
            ctx.phase = self._turn_stage
        elif ctx.transcribing:
            ctx.phase = SessionPhase.AWAITING_TRANSCRIPT
        elif self._stopped or not ctx.started:
            ctx.phase = SessionPhase.IDLE
        else:
            ctx.phase = SessionPhase.LISTENING

    # ------------------------------------------------------------------ #
    # Inbound messages
    # ------------------------------------------------------------------ #

    async def handle_message(self, raw_message: Union[str, bytes]) -> None:
        """
        Handle one inbound media stream message.

        Malformed messages are logged and dropped; they never end the session.
        """
        if self.ctx.closed:
            return

        try:
            event_type, event = parse_twilio_message(raw_message)
        except ProtocolError as e:
            self._call_metrics.protocol_errors += 1
            logger.warning("Failed to parse media stream message", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Media stream connected")

        elif event_type == TwilioEventType.START:
            await self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)

        elif event_type == TwilioEventType.MARK:
            self._handle_mark(event)

        elif event_type == TwilioEventType.DTMF:
            self._handle_dtmf(event)

        elif event_type == TwilioEventType.STOP:
            await self._handle_stop()

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        ctx = self.ctx
        if ctx.started:
            logger.warning(
                "Duplicate start event, replacing call metadata",
                session_id=ctx.session_id,
                old_stream_id=ctx.stream_id,
                new_stream_id=event.stream_sid,
            )

        ctx.stream_id = event.stream_sid
        ctx.session_id = event.call_sid or event.stream_sid
        ctx.caller_number = event.caller_number
        self._stopped = False

        self._call_metrics.session_id = ctx.session_id
        self._call_metrics.stream_id = ctx.stream_id

        logger.info(
            "Call started",
            session_id=ctx.session_id,
            stream_id=ctx.stream_id,
            caller_number=ctx.caller_number,
            stt_mode="streaming" if self.streaming else "batch",
        )

        if self._turn_worker_task is None or self._turn_worker_task.done():
            self._turn_worker_task = asyncio.create_task(self._turn_worker())

        if not await self._segmenter.start():
            logger.error("STT failed to start; caller audio will not be transcribed", session_id=ctx.session_id)

        self._update_phase()

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        ctx = self.ctx
        if not ctx.started:
            logger.debug("Media before start event ignored")
            return
        if self._stopped:
            return
        if event.track and event.track != "inbound":
            return
        if not event.payload:
            return

        if not self._logged_first_media:
            self._logged_first_media = True
            logger.info("First inbound audio frame", session_id=ctx.session_id, bytes=len(event.payload))

        frame = AudioFrame(payload=event.payload, timestamp=asyncio.get_running_loop().time())
        await self._segmenter.push(frame)

    def _handle_mark(self, event: TwilioMarkEvent) -> None:
        logger.debug("Playback mark acknowledged", session_id=self.ctx.session_id, mark_name=event.name)

    def _handle_dtmf(self, event: TwilioDTMFEvent) -> None:
        logger.info("DTMF received", session_id=self.ctx.session_id, digit=event.digit)

    async def _handle_stop(self) -> None:
        ctx = self.ctx
        logger.info("Call stop received", session_id=ctx.session_id, buffered_ms=ctx.buffered_ms)
        self._stopped = True
        await self._segmenter.flush()
        self._update_phase()

    # ------------------------------------------------------------------ #
    # Transcription
    # ------------------------------------------------------------------ #

    def _begin_transcription(self, audio: bytes) -> None:
        """Called by the batch segmenter with `transcribing` already set."""
        logger.debug(
            "Utterance handed to STT",
            session_id=self.ctx.session_id,
            audio_ms=get_audio_duration_ms(audio),
        )
        self._transcription_task = asyncio.create_task(self._transcribe(audio))
        self._update_phase()

    async def _transcribe(self, audio: bytes) -> None:
        ctx = self.ctx
        stt = cast(BatchSTT, self._speech)

        started = time.monotonic()
        event: Optional[TranscriptEvent] = None
        try:
            event = await stt.transcribe(audio)
        except BackendError as e:
            self._call_metrics.backend_errors += 1
            logger.error(
                "Transcription failed",
                session_id=ctx.session_id,
                backend=e.backend,
                timeout=isinstance(e, BackendTimeout),
                error=e.detail,
            )
        except Exception as e:
            self._call_metrics.backend_errors += 1
            logger.error(
                "Transcription failed",
                session_id=ctx.session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
        finally:
            ctx.transcribing = False

        self._call_metrics.transcriptions += 1
        stt_ms = (time.monotonic() - started) * 1000

        if event is not None and not event.is_empty:
            logger.info(
                "Transcript received",
                session_id=ctx.session_id,
                text=event.text[:100],
                stt_ms=round(stt_ms, 2),
            )
            self._enqueue(QueuedTranscript(text=event.text.strip(), stt_latency_ms=stt_ms))
        elif event is not None:
            logger.debug("Empty transcript, nothing to dispatch", session_id=ctx.session_id)

        self._update_phase()
        if isinstance(self._segmenter, BatchSegmenter):
            self._segmenter.on_transcription_done()

    async def _on_streaming_final(self, text: str) -> None:
        if not text:
            return
        logger.info("Final transcript", session_id=self.ctx.session_id, text=text[:100])
        self._call_metrics.transcriptions += 1
        self._enqueue(QueuedTranscript(text=text))

    def _enqueue(self, queued: QueuedTranscript) -> None:
        self._turn_queue.put_nowait(queued)

    # ------------------------------------------------------------------ #
    # Barge-in
    # ------------------------------------------------------------------ #

    async def _on_barge_in(self, event: TranscriptEvent) -> None:
        """Caller spoke over the reply: stop sending and drop queued audio."""
        ctx = self.ctx
        if not self._playback.cancel(ctx):
            return

        self._call_metrics.total_interruptions += 1
        logger.info(
            "Barge-in: caller spoke during playback",
            session_id=ctx.session_id,
            text=event.text[:50],
            is_final=event.is_final,
        )
        try:
            await self._playback.send_clear(ctx)
        except TransportClosed as e:
            logger.warning("Could not send clear", session_id=ctx.session_id, error=str(e))

    # ------------------------------------------------------------------ #
    # Turns
    # ------------------------------------------------------------------ #

    async def _turn_worker(self) -> None:
        """Background worker that processes queued final transcripts sequentially."""
        while True:
            queued = await self._turn_queue.get()
            try:
                await self._run_turn(queued)
            finally:
                self._turn_queue.task_done()

    async def _run_turn(self, queued: QueuedTranscript) -> None:
        ctx = self.ctx
        self._turn_counter += 1
        metrics = TurnMetrics(
            turn_id=self._turn_counter,
            start_time=time.time(),
            stt_ms=queued.stt_latency_ms,
        )

        self._turn_stage = SessionPhase.DISPATCHING
        self._update_phase()
        try:
            started = time.monotonic()
            reply = await self._dispatcher.dispatch(queued.text, ctx.metadata())
            metrics.dialogue_ms = (time.monotonic() - started) * 1000
            if reply is None:
                return

            self._turn_stage = SessionPhase.SPEAKING
            self._update_phase()
            result = await self._playback.speak(ctx, reply.text)
            metrics.tts_ms = result.tts_ms
            metrics.playback_ms = result.playback_ms
            metrics.frames_sent = result.frames_sent
            metrics.was_interrupted = result.cancelled

        except UnevaluatedTemplateError as e:
            metrics.error = "template"
            logger.error(
                "Dialogue reply contains an unevaluated template, not speaking it",
                session_id=ctx.session_id,
                error=e.detail,
            )
        except MalformedBackendResponse as e:
            metrics.error = "malformed"
            logger.error("Dialogue reply has an unusable shape", session_id=ctx.session_id, error=e.detail)
        except BackendError as e:
            metrics.error = "timeout" if isinstance(e, BackendTimeout) else "backend"
            self._call_metrics.backend_errors += 1
            logger.error(
                "Backend failed, turn abandoned",
                session_id=ctx.session_id,
                backend=e.backend,
                timeout=isinstance(e, BackendTimeout),
                error=e.detail,
            )
        except TransportClosed as e:
            metrics.error = "transport_closed"
            logger.warning("Transport closed during turn", session_id=ctx.session_id, error=e.detail)
        except MissingRoutingToken as e:
            metrics.error = "missing_stream_id"
            logger.error("Turn abandoned without streamSid", session_id=ctx.session_id, error=e.detail)
        except Exception as e:
            metrics.error = type(e).__name__
            logger.error(
                "Turn failed",
                session_id=ctx.session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
        finally:
            self._turn_stage = None
            self._update_phase()
            metrics.finalize()
            self._call_metrics.turns.append(metrics)
            logger.info(
                "Turn complete",
                session_id=ctx.session_id,
                turn_id=metrics.turn_id,
                stt_ms=round(metrics.stt_ms, 2),
                dialogue_ms=round(metrics.dialogue_ms, 2),
                tts_ms=round(metrics.tts_ms, 2),
                playback_ms=round(metrics.playback_ms, 2),
                total_turn_ms=round(metrics.total_turn_ms, 2),
                interrupted=metrics.was_interrupted,
                error=metrics.error,
            )

    # ------------------------------------------------------------------ #
    # Teardown
    # ------------------------------------------------------------------ #

    async def _drain(self) -> None:
        while True:
            task = self._transcription_task
            if task is not None and not task.done():
                await asyncio.wait({task})
                continue
            await self._turn_queue.join()
            task = self._transcription_task
            if task is None or task.done():
                return

    async def close(self, reason: str = "transport closed") -> None:
        """
        Tear the session down. Safe to call more than once.

        Playback and the silence deadline stop immediately; an outstanding
        transcription and queued turns get a grace period to finish, then
        whatever remains is cancelled.
        """
        ctx = self.ctx
        if ctx.closed:
            return

        logger.info("Closing call session", session_id=ctx.session_id, reason=reason)
        ctx.phase = SessionPhase.CLOSED
        self._segmenter.cancel_timers()
        self._playback.cancel(ctx)

        pending_work = (
            (self._transcription_task is not None and not self._transcription_task.done())
            or not self._turn_queue.empty()
            or self._turn_stage is not None
        )
        worker_alive = self._turn_worker_task is not None and not self._turn_worker_task.done()
        if pending_work and worker_alive:
            drain_s = self.config.session_drain_timeout_ms / 1000.0
            try:
                await asyncio.wait_for(self._drain(), timeout=drain_s)
            except asyncio.TimeoutError:
                logger.warning(
                    "Pending work did not finish before teardown",
                    session_id=ctx.session_id,
                    drain_timeout_s=drain_s,
                    queued_turns=self._turn_queue.qsize(),
                )

        tasks_to_cancel: List[asyncio.Task] = []
        for task in (self._transcription_task, self._turn_worker_task):
            if task and not task.done():
                task.cancel()
                tasks_to_cancel.append(task)
        if tasks_to_cancel:
            await asyncio.gather(*tasks_to_cancel, return_exceptions=True)

        try:
            await self._segmenter.close()
        except Exception as e:
            logger.warning("Error closing segmenter", session_id=ctx.session_id, error=str(e))

        if not self.streaming:
            try:
                await self._speech.close()
            except Exception as e:
                logger.warning("Error closing STT", session_id=ctx.session_id, error=str(e))

        try:
            await self._tts.close()
        except Exception as e:
            logger.warning("Error closing TTS", session_id=ctx.session_id, error=str(e))

        ctx.speaking = False
        ctx.transcribing = False
        self._call_metrics.end_time = time.time()
        logger.info("Call session closed", metrics=self._call_metrics.to_dict())


def create_session(
    transport: MediaTransport,
    config: Optional[Config] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> CallSession:
    """Build a session for a freshly accepted media stream connection."""
    return CallSession(transport, config=config, http=http)
