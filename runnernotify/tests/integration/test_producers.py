from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from runnernotify.core.config import get_settings
from runnernotify.core.errors import ResolverError
from runnernotify.domain.models import NotificationEntry
from runnernotify.domain.notifications import (
    EntryDraft,
    NotificationStatus,
    NotificationType,
    ReservationOutcome,
)
from runnernotify.persistence.repos.notification_queue import get_entry_by_key, list_entries_for_user
from runnernotify.persistence.repos.users import get_user
from runnernotify.services.notifications import idempotency
from runnernotify.services.notifications.idempotency import reserve
from runnernotify.services.notifications.producers import (
    cleanup_old_notifications,
    queue_daily_running_reminders,
    queue_evening_running_reminders,
    queue_weekly_achievement_announcements,
    queue_welcome_notification,
    send_welcome_notification,
)
from runnernotify.tests.utils.factories import create_entry, create_user, utc


MORNING = utc(2025, 3, 3, 10)
EVENING = utc(2025, 3, 3, 20)


async def _keys(session) -> list[str]:
    rows = await session.execute(select(NotificationEntry.idempotency_key).order_by(NotificationEntry.idempotency_key))
    return list(rows.scalars().all())


@pytest.mark.asyncio
async def test_daily_reminder_runs_twice_in_one_day_queue_once(session) -> None:
    await create_user(session, 1)
    await create_user(session, 2, enabled=False)
    await create_user(session, 3, token=None)
    await create_user(session, 4, last_run_reminder_sent=MORNING - timedelta(hours=1))

    first = await queue_daily_running_reminders(session=session, now=MORNING)
    second = await queue_daily_running_reminders(session=session, now=MORNING + timedelta(hours=2))

    assert (first.candidates, first.queued) == (1, 1)
    # The reminded stamp already filters the user out before the key is checked.
    assert (second.candidates, second.queued) == (0, 0)
    assert await _keys(session) == ["daily_reminder_1_2025-03-03"]
    user = await get_user(session, 1)
    assert user.last_run_reminder_sent == MORNING


@pytest.mark.asyncio
async def test_daily_reminder_dedupes_on_key_when_stamp_is_missing(session) -> None:
    await create_user(session, 1)
    await queue_daily_running_reminders(session=session, now=MORNING)
    user = await get_user(session, 1)
    user.last_run_reminder_sent = None
    await session.commit()

    again = await queue_daily_running_reminders(session=session, now=MORNING + timedelta(minutes=1))

    assert (again.candidates, again.queued, again.duplicates) == (1, 0, 1)
    assert await _keys(session) == ["daily_reminder_1_2025-03-03"]


@pytest.mark.asyncio
async def test_evening_reminder_targets_reminded_users_without_a_run(session) -> None:
    await create_user(session, 1, last_run_reminder_sent=MORNING)
    await create_user(session, 2, last_run_reminder_sent=MORNING, last_run_date=MORNING + timedelta(hours=1))
    await create_user(session, 3, last_run_reminder_sent=MORNING - timedelta(days=1))
    await create_user(
        session,
        4,
        last_run_reminder_sent=MORNING,
        last_run_date=MORNING - timedelta(days=1),
    )

    result = await queue_evening_running_reminders(session=session, now=EVENING)

    assert result.queued == 2
    assert await _keys(session) == ["evening_reminder_1_2025-03-03", "evening_reminder_4_2025-03-03"]
    entry = await get_entry_by_key(session, "evening_reminder_1_2025-03-03")
    assert entry.type == NotificationType.EVENING_REMINDER
    assert entry.title == get_settings().evening_reminder_title


@pytest.mark.asyncio
async def test_weekly_achievement_is_scoped_to_the_run_date(session) -> None:
    await create_user(session, 1)
    await create_user(session, 2, enabled=False)

    first = await queue_weekly_achievement_announcements(session=session, now=MORNING)
    repeat = await queue_weekly_achievement_announcements(session=session, now=EVENING)
    next_week = await queue_weekly_achievement_announcements(session=session, now=MORNING + timedelta(days=7))

    assert (first.queued, repeat.duplicates, next_week.queued) == (1, 1, 1)
    assert await _keys(session) == [
        "weekly_achievement_1_2025-03-03",
        "weekly_achievement_1_2025-03-10",
    ]


@pytest.mark.asyncio
async def test_producers_are_no_ops_when_disabled(session, monkeypatch: pytest.MonkeyPatch) -> None:
    await create_user(session, 1)
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "false")
    get_settings.cache_clear()

    daily = await queue_daily_running_reminders(session=session, now=MORNING)
    weekly = await queue_weekly_achievement_announcements(session=session, now=MORNING)

    assert daily.disabled and weekly.disabled
    assert await _keys(session) == []
    user = await get_user(session, 1)
    assert user.last_run_reminder_sent is None


@pytest.mark.asyncio
async def test_welcome_is_queued_once_per_user(session) -> None:
    await create_user(session, 8)

    first = await queue_welcome_notification(session=session, user_id=8, now=MORNING)
    second = await queue_welcome_notification(session=session, user_id=8, now=MORNING + timedelta(days=3))

    assert (first, second) == (ReservationOutcome.CREATED, ReservationOutcome.ALREADY_EXISTS)
    entries = await list_entries_for_user(session, 8)
    assert [entry.idempotency_key for entry in entries] == ["welcome_8"]
    assert await send_welcome_notification(session=session, fid=999) is None


@pytest.mark.asyncio
async def test_cleanup_keeps_recent_and_pending_entries(session) -> None:
    await create_user(session, 1)
    for key, age_days, status in [
        ("sent-31", 31, NotificationStatus.SENT),
        ("skipped-40", 40, NotificationStatus.SKIPPED),
        ("sent-29", 29, NotificationStatus.SENT),
        ("pending-60", 60, NotificationStatus.PENDING),
    ]:
        await create_entry(
            session,
            user_id=1,
            key=key,
            scheduled_for=MORNING - timedelta(days=age_days),
            status=status,
            created_at=MORNING - timedelta(days=age_days),
        )

    deleted = await cleanup_old_notifications(session=session, now=MORNING)

    assert deleted == 2
    assert await _keys(session) == ["pending-60", "sent-29"]


def _failing_insert_for(monkeypatch: pytest.MonkeyPatch, failing_key: str) -> None:
    real_insert = idempotency.insert_entry

    async def insert_entry(session, entry):
        if entry.idempotency_key == failing_key:
            session.add(entry)
            raise OperationalError("INSERT INTO notification_queue", {}, Exception("disk I/O error"))
        return await real_insert(session, entry)

    monkeypatch.setattr(idempotency, "insert_entry", insert_entry)


@pytest.mark.asyncio
async def test_reserve_storage_failure_raises_and_leaves_no_entry(session, monkeypatch: pytest.MonkeyPatch) -> None:
    await create_user(session, 1)
    _failing_insert_for(monkeypatch, "welcome_1")

    with pytest.raises(ResolverError):
        await reserve(
            session=session,
            key="welcome_1",
            factory=lambda: EntryDraft(
                user_id=1,
                type=NotificationType.WELCOME,
                title="t",
                body="b",
                target_url="https://runner.app",
                scheduled_for=MORNING,
            ),
        )

    assert await get_entry_by_key(session, "welcome_1") is None
    assert await _keys(session) == []


@pytest.mark.asyncio
async def test_daily_reminder_counts_storage_failure_and_keeps_going(
    session_factory, monkeypatch: pytest.MonkeyPatch
) -> None:
    async with session_factory() as session:
        for fid in (1, 2, 3):
            await create_user(session, fid)
    _failing_insert_for(monkeypatch, "daily_reminder_2_2025-03-03")

    async with session_factory() as session:
        result = await queue_daily_running_reminders(session=session, now=MORNING)

    assert (result.candidates, result.queued, result.errors) == (3, 2, 1)
    async with session_factory() as session:
        assert await _keys(session) == ["daily_reminder_1_2025-03-03", "daily_reminder_3_2025-03-03"]
        for fid in (1, 2, 3):
            user = await get_user(session, fid)
            assert user.last_run_reminder_sent == MORNING
