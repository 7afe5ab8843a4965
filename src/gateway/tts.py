"""
Text-to-speech backend selection.

- `coqui`: Coqui TTS server over HTTP (default)
- `openai`: OpenAI Audio Speech API
"""

from __future__ import annotations

from typing import Optional

import httpx

from src.gateway.config import Config, get_config
from src.gateway.tts_providers.base import TTSProvider
from src.gateway.tts_providers.coqui import CoquiTTS
from src.gateway.tts_providers.openai_tts import OpenAITTS


def create_tts_provider(
    config: Optional[Config] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> TTSProvider:
    config = config or get_config()
    tts = (config.tts_provider or "coqui").strip().lower()

    if tts == "coqui":
        return CoquiTTS(config, client=client)

    if tts == "openai":
        return OpenAITTS(config)

    raise ValueError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")
