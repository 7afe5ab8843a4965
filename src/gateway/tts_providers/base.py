from __future__ import annotations

from abc import ABC, abstractmethod


class TTSProvider(ABC):
    """Text in, synthesized WAV bytes out."""

    name: str = "tts"

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        return None
