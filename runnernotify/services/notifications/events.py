from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import json
import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from runnernotify.core.errors import MalformedEventError, ResolverError
from runnernotify.domain.events import (
    DISABLING_KINDS,
    ENABLING_KINDS,
    EventKind,
    LifecycleEvent,
    NotificationDetails,
    ParsedEvent,
    RejectedEvent,
)
from runnernotify.domain.notifications import ReservationOutcome
from runnernotify.persistence.repos.users import (
    clear_notification_destination,
    get_user,
    set_notification_destination,
)
from runnernotify.services.notifications.producers import queue_welcome_notification


logger = logging.getLogger(__name__)

_KIND_ALIASES = {
    "added": EventKind.FRAME_ADDED,
    "removed": EventKind.FRAME_REMOVED,
    "enabled": EventKind.NOTIFICATIONS_ENABLED,
    "disabled": EventKind.NOTIFICATIONS_DISABLED,
}


@dataclass(frozen=True)
class IngestResult:
    # status: enabled | disabled | accepted | user_not_found | rejected
    status: str
    fid: int | None = None
    reason: str | None = None
    welcome: ReservationOutcome | None = None

    @property
    def processed(self) -> bool:
        return self.status in {"enabled", "disabled", "accepted"}


def _parse_kind(value: Any) -> EventKind | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized in _KIND_ALIASES:
        return _KIND_ALIASES[normalized]
    try:
        return EventKind(normalized)
    except ValueError:
        return None


def _parse_fid(value: Any) -> int | None:
    # bool is an int subclass; a JSON true is not a fid.
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def _parse_details(value: Any) -> NotificationDetails | None:
    if not isinstance(value, Mapping):
        return None
    token = value.get("token")
    url = value.get("url")
    if not isinstance(token, str) or not token.strip():
        return None
    if not isinstance(url, str) or not url.strip():
        return None
    return NotificationDetails(token=token.strip(), url=url.strip())


def parse_lifecycle_event(raw: Any) -> ParsedEvent:
    """Turn an untyped webhook payload into a ``LifecycleEvent`` or a ``RejectedEvent``.

    Accepts ``{event|kind, fid, notificationDetails?: {token, url}}``. Enabling
    notifications without a complete destination is rejected; adding the app
    without one is accepted since the client may enable notifications later.
    """
    if not isinstance(raw, Mapping):
        return RejectedEvent(reason="event payload must be an object")
    kind = _parse_kind(raw.get("event", raw.get("kind")))
    if kind is None:
        return RejectedEvent(reason="unknown event kind")
    fid = _parse_fid(raw.get("fid"))
    if fid is None:
        return RejectedEvent(reason="missing or invalid fid")
    details = _parse_details(raw.get("notificationDetails"))
    if kind == EventKind.NOTIFICATIONS_ENABLED and details is None:
        return RejectedEvent(reason="notifications_enabled requires notificationDetails with token and url")
    if kind in DISABLING_KINDS:
        details = None
    return LifecycleEvent(kind=kind, fid=fid, details=details)


def _decode_segment(segment: Any, name: str) -> dict[str, Any]:
    if not isinstance(segment, str) or not segment:
        raise MalformedEventError(f"webhook {name} is missing")
    # Senders use base64url without padding; plain base64 is tolerated too.
    normalized = segment.strip().replace("+", "-").replace("/", "_")
    normalized += "=" * (-len(normalized) % 4)
    try:
        decoded = base64.urlsafe_b64decode(normalized.encode("ascii"))
        value = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise MalformedEventError(f"webhook {name} is not base64 encoded JSON") from exc
    if not isinstance(value, dict):
        raise MalformedEventError(f"webhook {name} must decode to an object")
    return value


def decode_webhook_envelope(body: Mapping[str, Any]) -> dict[str, Any]:
    """Decode a signed ``{header, payload, signature}`` envelope into a flat event dict.

    Signature verification happens upstream; this only unpacks the header
    (which carries ``fid``) and the payload (``event`` and optional details).
    """
    if not isinstance(body, Mapping):
        raise MalformedEventError("webhook body must be an object")
    header = _decode_segment(body.get("header"), "header")
    payload = _decode_segment(body.get("payload"), "payload")
    event: dict[str, Any] = {"event": payload.get("event"), "fid": header.get("fid")}
    if "notificationDetails" in payload:
        event["notificationDetails"] = payload["notificationDetails"]
    return event


def parse_webhook_body(body: Any) -> ParsedEvent:
    # Envelopes from the client platform and plain events from internal callers share the endpoint.
    if isinstance(body, Mapping) and "header" in body and "payload" in body:
        try:
            return parse_lifecycle_event(decode_webhook_envelope(body))
        except MalformedEventError as exc:
            return RejectedEvent(reason=str(exc))
    return parse_lifecycle_event(body)


async def apply_lifecycle_event(*, session: AsyncSession, event: ParsedEvent) -> IngestResult:
    """Apply a parsed event to the user record; re-applying the same event is a plain overwrite."""
    if isinstance(event, RejectedEvent):
        logger.warning("notification_event_rejected reason=%s", event.reason)
        return IngestResult(status="rejected", reason=event.reason)

    fid = event.fid
    user = await get_user(session, fid)
    if user is None:
        # User records are owned by the main backend; nothing to attach a destination to yet.
        logger.warning("notification_event_ignored fid=%s kind=%s reason=user_not_found", fid, event.kind.value)
        return IngestResult(status="user_not_found", fid=fid)

    if event.kind in DISABLING_KINDS:
        await clear_notification_destination(session, user)
        logger.info("notification_destination_cleared fid=%s kind=%s", fid, event.kind.value)
        return IngestResult(status="disabled", fid=fid)

    if event.kind in ENABLING_KINDS and event.details is not None:
        await set_notification_destination(
            session,
            user,
            token=event.details.token,
            url=event.details.url,
        )
        logger.info("notification_destination_set fid=%s kind=%s", fid, event.kind.value)
        try:
            welcome = await queue_welcome_notification(session=session, user_id=fid)
        except ResolverError:
            logger.exception("notification_welcome_failed fid=%s", fid)
            welcome = None
        return IngestResult(status="enabled", fid=fid, welcome=welcome)

    logger.info("notification_event_accepted fid=%s kind=%s", fid, event.kind.value)
    return IngestResult(status="accepted", fid=fid)
