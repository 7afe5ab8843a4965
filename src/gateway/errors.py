"""Error taxonomy for the voice gateway.

Every error here is contained at the turn level by `CallSession`; only transport
teardown ends a session. Safe to import without pulling in backend SDKs.
"""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    default_detail: str = "Gateway error"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class TransportClosed(GatewayError):
    default_detail = "Media stream connection is closed"


class MissingRoutingToken(GatewayError):
    default_detail = "No streamSid known for outbound send"


class ProtocolError(GatewayError):
    default_detail = "Malformed media stream message"


class BackendError(GatewayError):
    """A speech or dialogue backend could not serve the request."""

    def __init__(self, backend: str, detail: Optional[str] = None) -> None:
        super().__init__(detail)
        self.backend = backend

    def __str__(self) -> str:
        return f"{self.backend}: {self.detail}"


class BackendTimeout(BackendError):
    default_detail = "Backend request timed out"


class BackendFailure(BackendError):
    default_detail = "Backend request failed"


class MalformedBackendResponse(GatewayError):
    default_detail = "Backend response has an unusable shape"


class UnevaluatedTemplateError(MalformedBackendResponse):
    """The dialogue workflow returned a template it never rendered (``{{ ... }}``)."""

    default_detail = "Dialogue reply contains an unevaluated template expression"
