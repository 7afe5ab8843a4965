"""
Audio conversion utilities for the voice gateway.

The telephony side speaks mu-law 8kHz mono. The backends want something else:
- Whisper ASR: 16kHz mono PCM16 WAV (upsampling helps recognition)
- Coqui/OpenAI TTS: WAV at whatever rate the voice model produces

All conversions use audioop (the `audioop-lts` backport on Python 3.13+).
"""

import audioop
import io
import math
import wave
from typing import Generator, List

TWILIO_SAMPLE_RATE = 8000
STT_SAMPLE_RATE = 16000  # Whisper typically works better with 16kHz
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_BYTES_PER_MS = TWILIO_SAMPLE_RATE // 1000  # 1 byte per sample


def frame_size_for(duration_ms: int) -> int:
    """Bytes of mu-law 8kHz audio covering `duration_ms`."""
    return int(TWILIO_SAMPLE_RATE * duration_ms / 1000)


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law 8kHz audio to linear PCM 16-bit.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes at 8kHz

    Returns:
        Linear PCM 16-bit bytes at 8kHz
    """
    if not ulaw_bytes:
        return b""

    return audioop.ulaw2lin(ulaw_bytes, 2)


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit bytes

    Returns:
        Mu-law encoded bytes
    """
    if not pcm_bytes:
        return b""

    return audioop.lin2ulaw(pcm_bytes, 2)


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM from `source_rate` to `target_rate` using `audioop.ratecv`.
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes
    converted, _ = audioop.ratecv(pcm_bytes, 2, 1, int(source_rate), int(target_rate), None)
    return converted


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - 8-bit (unsigned) and 32-bit integer samples are converted to 16-bit.
    - Stereo input is downmixed to mono.
    - Anything else raises ValueError.
    """
    if not wav_bytes:
        raise ValueError("Empty WAV")

    try:
        with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise ValueError(f"Invalid WAV: {e}") from e

    if sample_width == 1:
        # WAV stores 8-bit samples unsigned
        frames = audioop.lin2lin(audioop.bias(frames, 1, -128), 1, 2)
    elif sample_width == 4:
        frames = audioop.lin2lin(frames, 4, 2)
    elif sample_width != 2:
        raise ValueError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels == 1:
        return int(sample_rate), frames

    if channels == 2:
        mono = audioop.tomono(frames, 2, 0.5, 0.5)
        return int(sample_rate), mono

    raise ValueError(f"Unsupported WAV channel count: {channels}")


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def twilio_ulaw_to_stt_wav(ulaw_bytes: bytes, *, sample_rate: int = STT_SAMPLE_RATE) -> bytes:
    """
    Convert telephony mu-law 8kHz bytes into a mono PCM16 WAV for batch STT.

    Args:
        ulaw_bytes: Concatenated inbound frames (mu-law 8kHz)
        sample_rate: Output rate expected by the STT backend

    Returns:
        WAV file bytes
    """
    pcm_8k = ulaw_to_linear16(ulaw_bytes)
    pcm = resample_pcm16(pcm_8k, TWILIO_SAMPLE_RATE, sample_rate)
    return write_wav_mono_pcm16(pcm, sample_rate)


def wav_bytes_to_twilio_ulaw(wav_bytes: bytes) -> bytes:
    """
    Convert a synthesized WAV byte string into telephony 8kHz mu-law bytes.

    Raises:
        ValueError: If the WAV cannot be decoded
    """
    sr, pcm = read_wav_mono_pcm16(wav_bytes)
    pcm_8k = resample_pcm16(pcm, sr, TWILIO_SAMPLE_RATE)
    return linear16_to_ulaw(pcm_8k)


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For the media stream we want 20ms frames = 160 bytes of mu-law at 8kHz.
    The last frame is shorter when the input is not an exact multiple; it is
    never padded, so the total byte count is preserved.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)

    Yields:
        Audio chunks of at most `chunk_size` bytes
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for i in range(0, len(audio_bytes), chunk_size):
        yield audio_bytes[i:i + chunk_size]


def chunk_audio_list(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> List[bytes]:
    """Chunk audio into fixed-size frames and return as a list."""
    return list(chunk_audio(audio_bytes, chunk_size))


def frame_count(total_bytes: int, chunk_size: int = TWILIO_FRAME_SIZE) -> int:
    """Number of frames `chunk_audio` produces for `total_bytes`."""
    return math.ceil(total_bytes / chunk_size) if total_bytes > 0 else 0


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE, is_ulaw: bool = True) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        is_ulaw: Whether the audio is mu-law (1 byte per sample) or PCM (2 bytes per sample)

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    bytes_per_sample = 1 if is_ulaw else 2
    num_samples = len(audio_bytes) // bytes_per_sample
    duration_seconds = num_samples / sample_rate

    return duration_seconds * 1000
