from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Protocol, Sequence

import httpx

from runnernotify.core.config import get_settings
from runnernotify.core.errors import TransportError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundNotification:
    notification_id: str
    title: str
    body: str
    target_url: str
    token: str

    def to_payload(self) -> dict[str, str]:
        return {
            "notificationId": self.notification_id,
            "title": self.title,
            "body": self.body,
            "targetUrl": self.target_url,
            "token": self.token,
        }


@dataclass(frozen=True)
class BatchResult:
    # Per-notification outcomes reported by the endpoint, keyed by notificationId.
    successes: frozenset[str] = frozenset()
    failures: dict[str, str] = field(default_factory=dict)


class NotificationTransport(Protocol):
    async def send(self, url: str, notifications: Sequence[OutboundNotification]) -> BatchResult: ...


def build_batch_payload(notifications: Sequence[OutboundNotification]) -> dict[str, Any]:
    return {"notifications": [item.to_payload() for item in notifications]}


def _notification_id(item: Any) -> str | None:
    if not isinstance(item, dict):
        return None
    value = item.get("notificationId")
    if isinstance(value, str) and value:
        return value
    return None


def parse_batch_response(payload: Any) -> BatchResult:
    """Parse ``{successes: [...], failures: [...]}``; anything else is a transport failure."""
    if not isinstance(payload, dict) or not ({"successes", "failures"} & payload.keys()):
        raise TransportError("Malformed notification response body")
    raw_successes = payload.get("successes") or []
    raw_failures = payload.get("failures") or []
    if not isinstance(raw_successes, list) or not isinstance(raw_failures, list):
        raise TransportError("Malformed notification response body")
    successes: set[str] = set()
    for item in raw_successes:
        notification_id = _notification_id(item)
        if notification_id is None:
            logger.warning("notification_response_item_ignored item=%r", item)
            continue
        successes.add(notification_id)
    failures: dict[str, str] = {}
    for item in raw_failures:
        notification_id = _notification_id(item)
        if notification_id is None:
            logger.warning("notification_response_item_ignored item=%r", item)
            continue
        error = item.get("error")
        failures[notification_id] = str(error) if error else "unknown error"
    return BatchResult(successes=frozenset(successes), failures=failures)


class HttpNotificationTransport:
    """POST notification batches to a destination URL with a bounded timeout."""

    def __init__(
        self,
        *,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        # Tests hand in an httpx.MockTransport; production uses the default network transport.
        settings = get_settings()
        self._timeout_s = max(0.1, float(timeout_s if timeout_s is not None else settings.notify_transport_timeout_s))
        self._transport = transport

    async def _post(self, url: str, body: bytes) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
            response = await client.post(
                url,
                content=body,
                headers={"Content-Type": "application/json"},
            )
            return response

    async def send(self, url: str, notifications: Sequence[OutboundNotification]) -> BatchResult:
        body = json.dumps(build_batch_payload(notifications), ensure_ascii=False).encode("utf-8")
        try:
            # httpx timeouts apply per phase and per chunk; the whole round trip gets one deadline.
            response = await asyncio.wait_for(self._post(url, body), timeout=self._timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransportError(f"Notification request timed out after {self._timeout_s:g}s") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Notification request failed: {exc}") from exc
        if not response.is_success:
            raise TransportError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError("Malformed notification response body", status_code=response.status_code) from exc
        return parse_batch_response(payload)
