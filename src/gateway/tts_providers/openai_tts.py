from __future__ import annotations

from typing import Any, Optional

import structlog

from src.gateway.config import Config, get_config
from src.gateway.errors import BackendFailure, BackendTimeout
from src.gateway.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    This provider synthesizes a full WAV per reply.
    """

    name = "openai"

    def __init__(self, config: Optional[Config] = None, client: Optional[Any] = None):
        self.config = config or get_config()
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI  # Local import to keep module import light

            self._client = AsyncOpenAI(
                api_key=self.config.openai_api_key,
                timeout=self.config.tts_timeout_ms / 1000.0,
                max_retries=0,
            )
        return self._client

    async def synthesize(self, text: str) -> bytes:
        import openai

        client = self._get_client()
        try:
            resp = await client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
                response_format="wav",
            )
        except openai.APITimeoutError as e:
            raise BackendTimeout("tts", "OpenAI speech request timed out") from e
        except openai.OpenAIError as e:
            raise BackendFailure("tts", f"{type(e).__name__}: {e}") from e

        # SDKs have varied over time; handle several shapes.
        data = getattr(resp, "content", None)
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        read = getattr(resp, "aread", None) or getattr(resp, "read", None)
        if callable(read):
            result = read()
            if hasattr(result, "__await__"):
                result = await result
            return bytes(result)
        return bytes(resp)

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            try:
                await self._client.close()
            except Exception as e:
                logger.warning("Error closing OpenAI client", error=str(e))
