"""
Dialogue webhook client and transcript dispatcher.

The dialogue backend (an n8n workflow by default) receives
`{transcript, timestamp, sessionId, callerNumber}` and answers with free-form
JSON. Reply extraction follows one fixed algorithm:

1. A list yields its first element.
2. An object is probed for `response`, then `text`, then `output`.
3. If the probed value is still an object, step 1-2 run once more on it.
4. A bare string (or a non-JSON body) is the reply itself.

A body or reply that still contains `{{` / `}}` means the workflow returned an
expression it never rendered. That is a misconfiguration, never spoken.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog

from src.gateway.config import Config, get_config
from src.gateway.errors import MalformedBackendResponse, UnevaluatedTemplateError
from src.gateway.http_backend import http_client, map_httpx_error
from src.gateway.models import DialogueReply, SessionMetadata

logger = structlog.get_logger(__name__)

REPLY_KEYS = ("response", "text", "output")
TEMPLATE_MARKERS = ("{{", "}}")


def contains_template_marker(text: Optional[str]) -> bool:
    return bool(text) and any(marker in text for marker in TEMPLATE_MARKERS)


def _probe(value: Any) -> Any:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        present = [value[key] for key in REPLY_KEYS if key in value]
        for candidate in present:
            if candidate:
                return candidate
        # Reply keys present but all empty: an empty reply, not a bad shape.
        for candidate in present:
            if isinstance(candidate, str):
                return candidate
    return value


def extract_reply_text(body: Any) -> Optional[str]:
    """
    Pull the reply text out of a dialogue response body.

    Returns:
        The reply string (possibly empty), or None when the body is empty

    Raises:
        MalformedBackendResponse: If no string can be found within two levels
    """
    value = _probe(body)
    if isinstance(value, (dict, list)):
        value = _probe(value)

    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise MalformedBackendResponse(
        f"no reply text in response of shape {type(value).__name__}"
    )


class DialogueClient:
    """HTTP client for the dialogue webhook."""

    def __init__(
        self,
        config: Optional[Config] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._client = client

    async def post(self, payload: dict[str, Any]) -> tuple[Any, str]:
        """
        POST the transcript payload.

        Returns:
            (parsed body, raw body text). A non-JSON body is returned as text.
        """
        timeout_s = self.config.dialogue_timeout_ms / 1000.0
        try:
            async with http_client(self._client, timeout_s) as client:
                resp = await client.post(
                    self.config.dialogue_url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=httpx.Timeout(timeout_s),
                )
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Dialogue webhook returned an error status",
                status=e.response.status_code,
                body=e.response.text[:200],
            )
            raise map_httpx_error("dialogue", e) from e
        except httpx.HTTPError as e:
            raise map_httpx_error("dialogue", e) from e

        raw = resp.text
        try:
            body: Any = resp.json()
        except ValueError:
            body = raw
        return body, raw


class TranscriptDispatcher:
    """Turns a final transcript into a dialogue request and validates the reply."""

    def __init__(self, client: DialogueClient):
        self._client = client

    async def dispatch(
        self,
        transcript: str,
        metadata: SessionMetadata,
    ) -> Optional[DialogueReply]:
        """
        Send one transcript to the dialogue backend.

        Returns:
            The reply to speak, or None when there is nothing to say

        Raises:
            BackendTimeout, BackendFailure: Network/HTTP failure (not retried)
            UnevaluatedTemplateError: The reply contains `{{`/`}}`
            MalformedBackendResponse: The reply has an unusable shape
        """
        if not transcript or not transcript.strip():
            return None

        payload = {
            "transcript": transcript,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sessionId": metadata.session_id,
            "callerNumber": metadata.caller_number,
        }

        started = time.monotonic()
        body, raw = await self._client.post(payload)
        elapsed_ms = round((time.monotonic() - started) * 1000, 2)

        if contains_template_marker(raw):
            raise UnevaluatedTemplateError(f"raw body: {raw[:200]}")

        text = extract_reply_text(body)
        if contains_template_marker(text):
            raise UnevaluatedTemplateError(f"reply: {text[:200]}")

        if not text or not text.strip():
            logger.warning(
                "Dialogue backend returned no reply",
                session_id=metadata.session_id,
                elapsed_ms=elapsed_ms,
                body=raw[:200],
            )
            return None

        logger.info(
            "Dialogue reply received",
            session_id=metadata.session_id,
            elapsed_ms=elapsed_ms,
            chars=len(text),
        )
        return DialogueReply(text=text.strip())
