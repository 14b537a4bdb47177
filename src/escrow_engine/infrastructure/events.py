"""Outbound event emitters.

WebhookEventEmitter POSTs each event to a single configured URL, signed with
HMAC-SHA256 over the raw body. DeferredEventEmitter buffers events raised
inside a unit of work and hands them to the real emitter only after the
transaction commits; a rollback discards them.

Emission is fire-and-forget: failures are logged and never propagate.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import httpx

from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    from escrow_engine.domain.collaborators import EventEmitter

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Escrow-Signature"


class NullEventEmitter:
    """Drops every event. Used when no webhook URL is configured."""

    async def emit(self, event_type: str, challenge_id: str, payload: dict) -> None:
        logger.debug("events.dropped", event_type=event_type, challenge_id=challenge_id)


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class WebhookEventEmitter:
    """Deliver events to a webhook endpoint over HTTP."""

    def __init__(
        self,
        url: str,
        secret: str = "",
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._secret = secret
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def emit(self, event_type: str, challenge_id: str, payload: dict) -> None:
        envelope = {
            "type": event_type,
            "challenge_id": challenge_id,
            "payload": payload,
            "emitted_at": datetime.now(UTC).isoformat(),
        }
        body = json.dumps(envelope, default=str, separators=(",", ":")).encode()
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers[SIGNATURE_HEADER] = sign_body(self._secret, body)

        try:
            response = await self._client.post(self._url, content=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "events.webhook_failed",
                event_type=event_type,
                challenge_id=challenge_id,
                error=str(exc),
            )
            return
        logger.debug("events.webhook_delivered", event_type=event_type, challenge_id=challenge_id)

    async def aclose(self) -> None:
        await self._client.aclose()


@dataclass
class _PendingEvent:
    event_type: str
    challenge_id: str
    payload: dict


@dataclass
class DeferredEventEmitter:
    """Buffer events until the surrounding transaction has committed."""

    target: EventEmitter
    _pending: list[_PendingEvent] = field(default_factory=list)

    async def emit(self, event_type: str, challenge_id: str, payload: dict) -> None:
        self._pending.append(_PendingEvent(event_type, challenge_id, payload))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        pending, self._pending = self._pending, []
        for evt in pending:
            await self.target.emit(evt.event_type, evt.challenge_id, evt.payload)

    def discard(self) -> None:
        if self._pending:
            logger.debug("events.discarded", count=len(self._pending))
        self._pending = []


def build_event_emitter(url: str, secret: str = "", timeout_seconds: float = 5.0):  # noqa: ANN201
    """Webhook emitter when a URL is configured, otherwise a no-op emitter."""
    if not url:
        return NullEventEmitter()
    return WebhookEventEmitter(url, secret=secret, timeout_seconds=timeout_seconds)
