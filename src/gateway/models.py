"""
Per-call data model.

All mutable per-call state lives on one `CallContext` record that `CallSession`
owns and passes explicitly to the segmenters and the playback controller.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from src.gateway.audio import ULAW_BYTES_PER_MS


class SessionPhase(str, Enum):
    """Where the call is in the conversational loop."""
    IDLE = "idle"
    LISTENING = "listening"
    AWAITING_TRANSCRIPT = "awaiting_transcript"
    DISPATCHING = "dispatching"
    SPEAKING = "speaking"
    CLOSED = "closed"


@dataclass(frozen=True)
class AudioFrame:
    """One inbound mu-law frame and its arrival time (event loop clock)."""
    payload: bytes
    timestamp: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class TranscriptEvent:
    """Recognition result. Batch STT only ever produces finals."""
    text: str
    is_final: bool = True

    @property
    def is_empty(self) -> bool:
        return not self.text or not self.text.strip()


@dataclass(frozen=True)
class DialogueReply:
    text: str


@dataclass(frozen=True)
class SessionMetadata:
    """Call metadata sent along with every transcript."""
    session_id: str
    caller_number: Optional[str] = None


@dataclass
class CallContext:
    """State for one media stream connection."""
    session_id: str = ""
    stream_id: str = ""
    caller_number: Optional[str] = None
    phase: SessionPhase = SessionPhase.IDLE

    inbound_buffer: List[AudioFrame] = field(default_factory=list)
    speaking: bool = False
    transcribing: bool = False
    last_frame_timestamp: float = 0.0
    silence_deadline: Optional[float] = None
    # Silence deadline fired while a transcription was outstanding.
    boundary_deferred: bool = False

    # Armed by barge-in; replaced at the start of each reply.
    playback_cancel: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def started(self) -> bool:
        return bool(self.stream_id)

    @property
    def closed(self) -> bool:
        return self.phase == SessionPhase.CLOSED

    @property
    def buffered_bytes(self) -> int:
        return sum(len(frame.payload) for frame in self.inbound_buffer)

    @property
    def buffered_ms(self) -> float:
        return self.buffered_bytes / ULAW_BYTES_PER_MS

    def take_buffer(self) -> bytes:
        """Swap out the inbound buffer and return its audio."""
        frames, self.inbound_buffer = self.inbound_buffer, []
        return b"".join(frame.payload for frame in frames)

    def metadata(self) -> SessionMetadata:
        return SessionMetadata(session_id=self.session_id, caller_number=self.caller_number)

    def new_playback_signal(self) -> asyncio.Event:
        self.playback_cancel = asyncio.Event()
        return self.playback_cancel
