from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from runnernotify.core.config import get_settings
from runnernotify.core.errors import ResolverError
from runnernotify.domain.models import utc_now
from runnernotify.domain.notifications import (
    EntryDraft,
    NotificationType,
    ReservationOutcome,
    daily_key,
    one_shot_key,
)
from runnernotify.persistence.repos.notification_queue import delete_older_than
from runnernotify.persistence.repos.users import (
    get_user,
    list_daily_reminder_candidates,
    list_evening_reminder_candidates,
    list_notifiable_users,
    mark_reminded,
)
from runnernotify.services.notifications.idempotency import reserve


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProducerResult:
    producer: str
    candidates: int = 0
    queued: int = 0
    duplicates: int = 0
    errors: int = 0
    disabled: bool = False

    def as_dict(self) -> dict[str, int | str | bool]:
        return {
            "producer": self.producer,
            "candidates": self.candidates,
            "queued": self.queued,
            "duplicates": self.duplicates,
            "errors": self.errors,
            "disabled": self.disabled,
        }


def _as_utc(now: datetime | None) -> datetime:
    value = now or utc_now()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _day_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


async def _reserve_for_users(
    *,
    session: AsyncSession,
    producer: str,
    fids: list[int],
    notification_type: NotificationType,
    title: str,
    body: str,
    now: datetime,
) -> ProducerResult:
    # Work on plain fids: a rolled-back reservation expires every ORM instance in the session.
    target_url = get_settings().notify_base_url
    queued = duplicates = errors = 0
    for fid in fids:
        key = daily_key(notification_type, fid, now.date())
        try:
            outcome = await reserve(
                session=session,
                key=key,
                factory=lambda fid=fid: EntryDraft(
                    user_id=fid,
                    type=notification_type,
                    title=title,
                    body=body,
                    target_url=target_url,
                    scheduled_for=now,
                ),
            )
        except ResolverError:
            logger.exception("notification_reservation_failed producer=%s key=%s", producer, key)
            errors += 1
            continue
        if outcome == ReservationOutcome.CREATED:
            queued += 1
        else:
            duplicates += 1
    result = ProducerResult(
        producer=producer,
        candidates=len(fids),
        queued=queued,
        duplicates=duplicates,
        errors=errors,
    )
    logger.info(
        "notification_producer_complete producer=%s candidates=%s queued=%s duplicates=%s errors=%s",
        producer,
        result.candidates,
        result.queued,
        result.duplicates,
        result.errors,
    )
    return result


def _disabled(producer: str) -> ProducerResult | None:
    if get_settings().notifications_enabled:
        return None
    logger.info("notification_producer_skipped producer=%s reason=disabled", producer)
    return ProducerResult(producer=producer, disabled=True)


async def queue_welcome_notification(
    *,
    session: AsyncSession,
    user_id: int,
    now: datetime | None = None,
) -> ReservationOutcome:
    """Queue the one-time welcome entry for ``user_id``.

    The key has no date component, so a user is welcomed at most once no matter
    how often they re-add the app or re-enable notifications.
    """
    settings = get_settings()
    when = _as_utc(now)
    return await reserve(
        session=session,
        key=one_shot_key(NotificationType.WELCOME, user_id),
        factory=lambda: EntryDraft(
            user_id=user_id,
            type=NotificationType.WELCOME,
            title=settings.welcome_title,
            body=settings.welcome_body,
            target_url=settings.notify_base_url,
            scheduled_for=when,
        ),
    )


async def send_welcome_notification(*, session: AsyncSession, fid: int) -> ReservationOutcome | None:
    # Manual trigger path; None when the user does not exist.
    user = await get_user(session, fid)
    if user is None:
        logger.warning("notification_welcome_skipped fid=%s reason=user_not_found", fid)
        return None
    return await queue_welcome_notification(session=session, user_id=fid)


async def queue_daily_running_reminders(
    *,
    session: AsyncSession,
    now: datetime | None = None,
) -> ProducerResult:
    """Queue today's run reminder for every enabled user not yet reminded today.

    Every selected user is stamped as reminded afterwards, including users whose
    entry already existed, so the evening follow-up can find them.
    """
    producer = "daily_reminder"
    disabled = _disabled(producer)
    if disabled is not None:
        return disabled
    settings = get_settings()
    current = _as_utc(now)
    day_start, _ = _day_bounds(current)
    users = await list_daily_reminder_candidates(session, day_start=day_start)
    fids = [user.fid for user in users]
    result = await _reserve_for_users(
        session=session,
        producer=producer,
        fids=fids,
        notification_type=NotificationType.DAILY_REMINDER,
        title=settings.daily_reminder_title,
        body=settings.daily_reminder_body,
        now=current,
    )
    await mark_reminded(session, fids, reminded_at=current)
    return result


async def queue_evening_running_reminders(
    *,
    session: AsyncSession,
    now: datetime | None = None,
) -> ProducerResult:
    producer = "evening_reminder"
    disabled = _disabled(producer)
    if disabled is not None:
        return disabled
    settings = get_settings()
    current = _as_utc(now)
    day_start, day_end = _day_bounds(current)
    users = await list_evening_reminder_candidates(session, day_start=day_start, day_end=day_end)
    return await _reserve_for_users(
        session=session,
        producer=producer,
        fids=[user.fid for user in users],
        notification_type=NotificationType.EVENING_REMINDER,
        title=settings.evening_reminder_title,
        body=settings.evening_reminder_body,
        now=current,
    )


async def queue_weekly_achievement_announcements(
    *,
    session: AsyncSession,
    now: datetime | None = None,
) -> ProducerResult:
    producer = "weekly_achievement"
    disabled = _disabled(producer)
    if disabled is not None:
        return disabled
    settings = get_settings()
    current = _as_utc(now)
    users = await list_notifiable_users(session)
    return await _reserve_for_users(
        session=session,
        producer=producer,
        fids=[user.fid for user in users],
        notification_type=NotificationType.WEEKLY_ACHIEVEMENT,
        title=settings.weekly_achievement_title,
        body=settings.weekly_achievement_body,
        now=current,
    )


async def cleanup_old_notifications(
    *,
    session: AsyncSession,
    now: datetime | None = None,
) -> int:
    # Only terminal entries are pruned; pending work survives regardless of age.
    retention_days = max(1, int(get_settings().notify_retention_days))
    cutoff = _as_utc(now) - timedelta(days=retention_days)
    deleted = await delete_older_than(session, cutoff=cutoff)
    logger.info("notification_cleanup_complete deleted=%s cutoff=%s", deleted, cutoff.isoformat())
    return deleted
