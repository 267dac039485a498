from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from runnernotify.core.errors import TransportError
from runnernotify.domain.models import NotificationEntry, User
from runnernotify.domain.notifications import NotificationStatus, NotificationType
from runnernotify.services.notifications.transport import BatchResult, OutboundNotification


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


async def create_user(
    session: AsyncSession,
    fid: int,
    *,
    enabled: bool = True,
    token: str | None = "tok",
    url: str | None = "https://push.example.test/notify",
    last_run_reminder_sent: datetime | None = None,
    last_run_date: datetime | None = None,
) -> User:
    # Seed a user row the way the main backend would have created it.
    user = User(
        fid=fid,
        username=f"runner{fid}",
        notifications_enabled=enabled,
        notification_token=token,
        notification_url=url,
        last_run_reminder_sent=last_run_reminder_sent,
        last_run_date=last_run_date,
    )
    session.add(user)
    await session.commit()
    return user


async def create_entry(
    session: AsyncSession,
    *,
    user_id: int,
    key: str,
    scheduled_for: datetime,
    status: NotificationStatus = NotificationStatus.PENDING,
    retry_count: int = 0,
    created_at: datetime | None = None,
    notification_type: NotificationType = NotificationType.DAILY_REMINDER,
) -> NotificationEntry:
    entry = NotificationEntry(
        user_id=user_id,
        type=notification_type,
        idempotency_key=key,
        title="title",
        body="body",
        target_url="https://runner.app",
        scheduled_for=scheduled_for,
        status=status,
        retry_count=retry_count,
    )
    if created_at is not None:
        entry.created_at = created_at
    session.add(entry)
    await session.commit()
    return entry


@dataclass
class RecordingTransport:
    """In-memory transport that records batches and answers from a script.

    By default every notification succeeds; ``failures`` maps notificationId to
    an error; ``omit`` drops ids from the reply; ``error`` fails the whole batch.
    """

    failures: dict[str, str] = field(default_factory=dict)
    omit: set[str] = field(default_factory=set)
    error: TransportError | None = None
    calls: list[tuple[str, list[OutboundNotification]]] = field(default_factory=list)

    async def send(self, url: str, notifications: Sequence[OutboundNotification]) -> BatchResult:
        self.calls.append((url, list(notifications)))
        if self.error is not None:
            raise self.error
        successes = set()
        failures = {}
        for item in notifications:
            if item.notification_id in self.omit:
                continue
            if item.notification_id in self.failures:
                failures[item.notification_id] = self.failures[item.notification_id]
            else:
                successes.add(item.notification_id)
        return BatchResult(successes=frozenset(successes), failures=failures)

    @property
    def sent_ids(self) -> list[str]:
        return [item.notification_id for _url, batch in self.calls for item in batch]
