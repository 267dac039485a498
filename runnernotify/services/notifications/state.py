from __future__ import annotations

from datetime import datetime

from runnernotify.core.errors import InvalidTransitionError
from runnernotify.domain.models import NotificationEntry, utc_now
from runnernotify.domain.notifications import TERMINAL_STATUSES, NotificationStatus


DEFAULT_MAX_RETRIES = 3


def _require_pending(entry: NotificationEntry) -> None:
    if entry.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            f"Notification {entry.idempotency_key} is already {entry.status.value}"
        )


def mark_sent(entry: NotificationEntry, *, sent_at: datetime | None = None) -> NotificationEntry:
    _require_pending(entry)
    entry.status = NotificationStatus.SENT
    entry.sent_at = sent_at or utc_now()
    return entry


def register_failure(
    entry: NotificationEntry,
    reason: str,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> NotificationEntry:
    """Count one failed delivery attempt; the entry fails for good once the ceiling is reached."""
    _require_pending(entry)
    entry.retry_count = int(entry.retry_count or 0) + 1
    entry.error_message = reason
    if entry.retry_count >= max_retries:
        entry.status = NotificationStatus.FAILED
    return entry


def mark_skipped(entry: NotificationEntry, reason: str) -> NotificationEntry:
    # Skipped entries were never attempted but are not picked up again.
    _require_pending(entry)
    entry.status = NotificationStatus.SKIPPED
    entry.error_message = reason
    return entry
