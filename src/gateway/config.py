"""
Configuration management for the voice gateway.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

STT_MODES = ("batch", "streaming")
TTS_PROVIDERS = ("coqui", "openai")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    port: int = 8080
    log_level: str = "INFO"

    # Speech-to-text
    # - batch: local silence segmentation + Whisper ASR webservice
    # - streaming: Deepgram live transcription (provider-side segmentation)
    stt_mode: str = "batch"
    whisper_url: str = "http://stt:8000"
    whisper_language: str = "de"
    whisper_timeout_ms: int = 10000
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_language: str = "de"

    # Dialogue webhook (n8n)
    dialogue_url: str = "http://n8n:5678/webhook/voice-chat"
    dialogue_timeout_ms: int = 7000

    # Text-to-speech
    tts_provider: str = "coqui"
    tts_url: str = "http://tts:5002"
    tts_timeout_ms: int = 15000
    openai_api_key: str = ""
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"

    # Session timing
    silence_threshold_ms: int = 500
    min_utterance_ms: int = 1000
    playback_frame_ms: int = 20
    session_drain_timeout_ms: int = 10000

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for the media stream."""
        return f"wss://{self.public_host}/ws"

    @property
    def streaming(self) -> bool:
        return self.stt_mode == "streaming"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if self.stt_mode not in STT_MODES:
            raise ConfigError(
                f"Invalid STT_MODE '{self.stt_mode}'. Expected 'batch' or 'streaming'."
            )
        if self.tts_provider not in TTS_PROVIDERS:
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'coqui' or 'openai'."
            )

        if self.stt_mode == "batch" and not self.whisper_url:
            missing.append("WHISPER_URL")
        if self.stt_mode == "streaming" and not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.dialogue_url:
            missing.append("N8N_URL")
        if self.tts_provider == "coqui" and not self.tts_url:
            missing.append("TTS_URL")
        if self.tts_provider == "openai" and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.playback_frame_ms <= 0:
            raise ConfigError("PLAYBACK_FRAME_MS must be positive")
        if self.silence_threshold_ms <= 0:
            raise ConfigError("SILENCE_THRESHOLD_MS must be positive")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            stt_mode=self.stt_mode,
            whisper_url=self.whisper_url if self.stt_mode == "batch" else None,
            deepgram_model=self.deepgram_model if self.stt_mode == "streaming" else None,
            dialogue_url=self.dialogue_url,
            dialogue_timeout_ms=self.dialogue_timeout_ms,
            tts_provider=self.tts_provider,
            tts_timeout_ms=self.tts_timeout_ms,
            silence_threshold_ms=self.silence_threshold_ms,
            min_utterance_ms=self.min_utterance_ms,
            playback_frame_ms=self.playback_frame_ms,
            deepgram_key_set=bool(self.deepgram_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # STT
        stt_mode=os.getenv("STT_MODE", "batch").strip().lower(),
        whisper_url=os.getenv("WHISPER_URL", "http://stt:8000"),
        whisper_language=os.getenv("WHISPER_LANGUAGE", "de"),
        whisper_timeout_ms=_get_int("WHISPER_TIMEOUT_MS", 10000),
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "de"),

        # Dialogue
        dialogue_url=os.getenv("N8N_URL", "http://n8n:5678/webhook/voice-chat"),
        dialogue_timeout_ms=_get_int("DIALOGUE_TIMEOUT_MS", 7000),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "coqui").strip().lower(),
        tts_url=os.getenv("TTS_URL", "http://tts:5002"),
        tts_timeout_ms=_get_int("TTS_TIMEOUT_MS", 15000),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),

        # Session timing
        silence_threshold_ms=_get_int("SILENCE_THRESHOLD_MS", 500),
        min_utterance_ms=_get_int("MIN_UTTERANCE_MS", 1000),
        playback_frame_ms=_get_int("PLAYBACK_FRAME_MS", 20),
        session_drain_timeout_ms=_get_int("SESSION_DRAIN_TIMEOUT_MS", 10000),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
