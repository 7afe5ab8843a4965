"""
Pytest configuration and fixtures.
"""

import os
from unittest.mock import patch

import pytest

from src.gateway.config import Config
from tests.fakes import media_message, start_message, stop_message


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "8080",
        "LOG_LEVEL": "DEBUG",
        "STT_MODE": "batch",
        "WHISPER_URL": "http://stt.test:8000",
        "N8N_URL": "http://n8n.test:5678/webhook/voice-chat",
        "TTS_PROVIDER": "coqui",
        "TTS_URL": "http://tts.test:5002",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "OPENAI_API_KEY": "test_openai_key",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.gateway.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def sample_pcm_audio():
    """Generate sample PCM audio (silence)."""
    return b"\x00\x00" * 160  # 20ms of silence at 8kHz


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return start_message(custom_parameters={"callerNumber": "+4915112345678"})


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return media_message(sample_ulaw_audio)


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return stop_message()


@pytest.fixture
def session_config() -> Config:
    """Short timings so session tests run quickly."""
    return Config(
        dialogue_url="http://n8n.test/webhook/voice-chat",
        silence_threshold_ms=100,
        min_utterance_ms=1000,
        playback_frame_ms=20,
        tts_timeout_ms=2000,
        session_drain_timeout_ms=500,
    )
