"""
Shared httpx plumbing for the HTTP backends (Whisper STT, dialogue webhook, Coqui TTS).

One `httpx.AsyncClient` may be shared by every call session; it carries no
session affinity. When none is given, a short-lived client is opened per request.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from src.gateway.errors import BackendError, BackendFailure, BackendTimeout


@asynccontextmanager
async def http_client(
    shared: Optional[httpx.AsyncClient],
    timeout_s: float,
) -> AsyncIterator[httpx.AsyncClient]:
    if shared is not None:
        yield shared
        return
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s)) as client:
        yield client


def map_httpx_error(backend: str, exc: httpx.HTTPError) -> BackendError:
    """Translate an httpx failure into the gateway's backend error taxonomy."""
    if isinstance(exc, httpx.TimeoutException):
        return BackendTimeout(backend, f"request timed out ({type(exc).__name__})")
    if isinstance(exc, httpx.HTTPStatusError):
        return BackendFailure(backend, f"HTTP {exc.response.status_code}")
    return BackendFailure(backend, f"{type(exc).__name__}: {exc}")


def create_shared_client(timeout_s: float = 15.0) -> httpx.AsyncClient:
    """Pooled client for the process; per-request timeouts override `timeout_s`."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_s),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
    )
