from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from runnernotify.core.errors import DuplicateKeyError
from runnernotify.domain.models import NotificationEntry
from runnernotify.domain.notifications import (
    TERMINAL_STATUSES,
    NotificationStatus,
)


async def insert_entry(session: AsyncSession, entry: NotificationEntry) -> NotificationEntry:
    # The unique index on idempotency_key backs up the resolver's existence check.
    session.add(entry)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateKeyError(entry.idempotency_key) from exc
    return entry


async def get_entry_by_key(session: AsyncSession, idempotency_key: str) -> NotificationEntry | None:
    result = await session.execute(
        select(NotificationEntry).where(NotificationEntry.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def due_for_dispatch(
    session: AsyncSession,
    *,
    now: datetime,
    max_retries: int,
    batch_limit: int,
) -> list[NotificationEntry]:
    # Oldest scheduled work first so staleness stays bounded; owners are loaded for destination lookup.
    stmt = (
        select(NotificationEntry)
        .options(selectinload(NotificationEntry.user))
        .where(
            NotificationEntry.status == NotificationStatus.PENDING,
            NotificationEntry.scheduled_for <= now,
            NotificationEntry.retry_count < max_retries,
        )
        .order_by(
            NotificationEntry.scheduled_for.asc(),
            NotificationEntry.created_at.asc(),
            NotificationEntry.id.asc(),
        )
        .limit(max(1, int(batch_limit)))
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def save_entry(session: AsyncSession, entry: NotificationEntry) -> NotificationEntry:
    # Last writer wins; only the single active dispatcher writes delivery fields.
    session.add(entry)
    await session.commit()
    return entry


async def delete_older_than(
    session: AsyncSession,
    *,
    cutoff: datetime,
    statuses: Iterable[NotificationStatus] = TERMINAL_STATUSES,
) -> int:
    """Bulk-remove terminal entries created before ``cutoff`` and return how many went."""
    selected = {NotificationStatus(status) for status in statuses}
    if not selected:
        return 0
    if not selected <= TERMINAL_STATUSES:
        raise ValueError("Only terminal notification statuses can be pruned")
    result = await session.execute(
        delete(NotificationEntry).where(
            NotificationEntry.created_at < cutoff,
            NotificationEntry.status.in_(sorted(selected, key=lambda status: status.value)),
        )
    )
    await session.commit()
    return int(result.rowcount or 0)


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    rows = (
        await session.execute(
            select(NotificationEntry.status, func.count(NotificationEntry.id)).group_by(
                NotificationEntry.status
            )
        )
    ).all()
    counts = {status.value: 0 for status in NotificationStatus}
    for status, count in rows:
        counts[NotificationStatus(status).value] = int(count or 0)
    return counts


async def list_entries_for_user(session: AsyncSession, user_id: int) -> list[NotificationEntry]:
    result = await session.execute(
        select(NotificationEntry)
        .where(NotificationEntry.user_id == user_id)
        .order_by(NotificationEntry.created_at.asc(), NotificationEntry.id.asc())
    )
    return list(result.scalars().all())
