"""
Twilio Media Streams WebSocket protocol.

Inbound JSON messages carry an `event` field:
- connected: Initial connection
- start: Stream started, contains streamSid, callSid and custom parameters
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment ("end-of-audio" after each reply)
- clear: Clear buffered audio (for barge-in)
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

import msgspec

from src.gateway.errors import ProtocolError


# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

END_OF_AUDIO_MARK = "end-of-audio"


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_str(*candidates: Any) -> Optional[str]:
    for value in candidates:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    caller_number: Optional[str] = None
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """
        Parse from Twilio message.

        Call metadata is best effort: the caller number has no single
        authoritative field, so several optional places are probed and a
        missing value becomes None.
        """
        start = _as_dict(message.get("start"))
        call = _as_dict(start.get("call"))
        custom = _as_dict(start.get("customParameters"))

        return cls(
            stream_sid=_first_str(start.get("streamSid"), message.get("streamSid")) or "",
            call_sid=_first_str(start.get("callSid"), call.get("callSid")) or "",
            caller_number=_first_str(
                custom.get("callerNumber"),
                custom.get("from"),
                start.get("from"),
                call.get("from"),
            ),
            custom_parameters=custom,
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = _as_dict(message.get("media"))
        payload_b64 = media.get("payload") or ""

        if not isinstance(payload_b64, str):
            raise ProtocolError("media payload is not a string")
        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProtocolError(f"media payload is not valid base64: {e}") from e

        try:
            chunk = int(media.get("chunk", 0))
        except (TypeError, ValueError):
            chunk = 0

        return cls(
            stream_sid=message.get("streamSid", "") or "",
            track=media.get("track", "inbound") or "inbound",
            chunk=chunk,
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        """Parse from Twilio message."""
        mark = _as_dict(message.get("mark"))
        return cls(
            stream_sid=message.get("streamSid", "") or "",
            name=mark.get("name", "") or "",
        )


@dataclass
class TwilioDTMFEvent:
    """Parsed Twilio DTMF event."""
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        """Parse from Twilio message."""
        dtmf = _as_dict(message.get("dtmf"))
        return cls(
            stream_sid=message.get("streamSid", "") or "",
            digit=dtmf.get("digit", "") or "",
        )


def parse_twilio_message(raw_message: Union[str, bytes]) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON from Twilio (text or binary frame)

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ProtocolError: If the message is malformed or of an unknown type
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise ProtocolError("Message is not a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ProtocolError(f"Unknown event type: {event_type_str!r}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    elif event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    elif event_type == TwilioEventType.DTMF:
        return event_type, TwilioDTMFEvent.from_message(message)
    else:
        return event_type, message


def create_media_message(
    stream_sid: str,
    audio_payload: bytes,
) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (160 bytes for 20ms)

    Returns:
        JSON string to send to Twilio
    """
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")

    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str = END_OF_AUDIO_MARK) -> str:
    """
    Create a Twilio mark message.

    Marks are used to get acknowledgment when audio has been played.

    Args:
        stream_sid: The stream SID
        name: Name for this mark

    Returns:
        JSON string to send to Twilio
    """
    message = {
        "event": "mark",
        "streamSid": stream_sid,
        "mark": {
            "name": name
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """
    Create a Twilio clear message.

    This clears any buffered audio on Twilio's side, used for interruption.

    Args:
        stream_sid: The stream SID

    Returns:
        JSON string to send to Twilio
    """
    message = {
        "event": "clear",
        "streamSid": stream_sid
    }

    return encoder.encode(message).decode("utf-8")
