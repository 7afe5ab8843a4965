"""
Outbound side of the media stream connection, as the session engine sees it.

`server/app.py` adapts a FastAPI WebSocket to this; tests use an in-memory fake.
"""

from __future__ import annotations

from typing import Protocol


class MediaTransport(Protocol):
    @property
    def is_open(self) -> bool:
        """True while outbound messages can still be delivered."""
        ...

    async def send(self, message: str) -> None:
        """Send one JSON message. Raises TransportClosed if the connection is gone."""
        ...
