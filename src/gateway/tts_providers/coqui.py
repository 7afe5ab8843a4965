from __future__ import annotations

import time
from typing import Optional

import httpx
import structlog

from src.gateway.config import Config, get_config
from src.gateway.errors import BackendFailure
from src.gateway.http_backend import http_client, map_httpx_error
from src.gateway.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)


class CoquiTTS(TTSProvider):
    """
    Coqui TTS server provider (`GET /api/tts?text=...`).

    Returns the WAV exactly as the server produced it; conversion to
    telephony mu-law happens in the playback controller.
    """

    name = "coqui"

    def __init__(
        self,
        config: Optional[Config] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._client = client

    @property
    def url(self) -> str:
        return self.config.tts_url.rstrip("/") + "/api/tts"

    async def synthesize(self, text: str) -> bytes:
        timeout_s = self.config.tts_timeout_ms / 1000.0
        started = time.monotonic()
        try:
            async with http_client(self._client, timeout_s) as client:
                resp = await client.get(
                    self.url,
                    params={"text": text},
                    timeout=httpx.Timeout(timeout_s),
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise map_httpx_error("tts", e) from e

        if not resp.content:
            raise BackendFailure("tts", "empty audio response")

        logger.debug(
            "Coqui TTS generated",
            wav_bytes=len(resp.content),
            elapsed_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return resp.content
