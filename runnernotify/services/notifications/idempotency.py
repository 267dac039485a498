from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from runnernotify.core.config import get_settings
from runnernotify.core.errors import DuplicateKeyError, ResolverError
from runnernotify.domain.models import NotificationEntry, utc_now
from runnernotify.domain.notifications import (
    EntryDraft,
    NotificationStatus,
    NotificationType,
    ReservationOutcome,
    daily_key,
)
from runnernotify.persistence.repos.notification_queue import get_entry_by_key, insert_entry


logger = logging.getLogger(__name__)


def _normalize_key(value: str) -> str:
    # Keys double as notificationId on the wire; keep them non-empty and within the column size.
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("idempotency key is empty")
    if len(cleaned) > 255:
        raise ValueError("idempotency key exceeds 255 characters")
    return cleaned


async def reserve(
    *,
    session: AsyncSession,
    key: str,
    factory: Callable[[], EntryDraft],
) -> ReservationOutcome:
    """Persist ``factory()`` as a pending entry unless ``key`` is already queued.

    The factory is only called when the key is free. A lost insert race on the
    unique index is reported as ``ALREADY_EXISTS`` like any other duplicate.
    """
    normalized = _normalize_key(key)
    try:
        existing = await get_entry_by_key(session, normalized)
        if existing is not None:
            logger.info("notification_already_queued key=%s", normalized)
            return ReservationOutcome.ALREADY_EXISTS
        draft = factory()
        entry = NotificationEntry(
            user_id=draft.user_id,
            type=draft.type,
            idempotency_key=normalized,
            title=draft.title,
            body=draft.body,
            target_url=draft.target_url,
            scheduled_for=draft.scheduled_for,
            status=NotificationStatus.PENDING,
            retry_count=0,
        )
        await insert_entry(session, entry)
    except DuplicateKeyError:
        logger.info("notification_reservation_conflict key=%s", normalized)
        return ReservationOutcome.ALREADY_EXISTS
    except SQLAlchemyError as exc:
        await session.rollback()
        raise ResolverError(f"Failed to reserve notification key {normalized}") from exc
    logger.info(
        "notification_queued key=%s user_id=%s type=%s",
        normalized,
        draft.user_id,
        draft.type.value,
    )
    return ReservationOutcome.CREATED


async def queue_notification(
    *,
    session: AsyncSession,
    user_id: int,
    notification_type: NotificationType,
    title: str,
    body: str,
    target_url: str | None = None,
    scheduled_for: datetime | None = None,
    idempotency_key: str | None = None,
) -> ReservationOutcome:
    # Without an explicit key, one entry per type, user and UTC day of scheduled_for.
    when = scheduled_for or utc_now()
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc)
    key = idempotency_key or daily_key(notification_type, user_id, when.date())
    url = target_url or get_settings().notify_base_url
    return await reserve(
        session=session,
        key=key,
        factory=lambda: EntryDraft(
            user_id=user_id,
            type=notification_type,
            title=title,
            body=body,
            target_url=url,
            scheduled_for=when,
        ),
    )
