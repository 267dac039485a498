from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from runnernotify.domain.models import User


def _notifiable():
    return and_(User.notifications_enabled.is_(True), User.notification_token.is_not(None))


async def get_user(session: AsyncSession, fid: int) -> User | None:
    return await session.get(User, fid)


async def list_daily_reminder_candidates(session: AsyncSession, *, day_start: datetime) -> list[User]:
    # Not yet reminded today (or never reminded at all).
    result = await session.execute(
        select(User)
        .where(
            _notifiable(),
            or_(User.last_run_reminder_sent.is_(None), User.last_run_reminder_sent < day_start),
        )
        .order_by(User.fid.asc())
    )
    return list(result.scalars().all())


async def list_evening_reminder_candidates(
    session: AsyncSession,
    *,
    day_start: datetime,
    day_end: datetime,
) -> list[User]:
    # Reminded this morning but no run recorded today.
    result = await session.execute(
        select(User)
        .where(
            _notifiable(),
            User.last_run_reminder_sent >= day_start,
            User.last_run_reminder_sent < day_end,
            or_(User.last_run_date.is_(None), User.last_run_date < day_start),
        )
        .order_by(User.fid.asc())
    )
    return list(result.scalars().all())


async def list_notifiable_users(session: AsyncSession) -> list[User]:
    result = await session.execute(select(User).where(_notifiable()).order_by(User.fid.asc()))
    return list(result.scalars().all())


async def mark_reminded(session: AsyncSession, fids: Sequence[int], *, reminded_at: datetime) -> int:
    if not fids:
        return 0
    result = await session.execute(
        update(User).where(User.fid.in_(list(fids))).values(last_run_reminder_sent=reminded_at)
    )
    await session.commit()
    return int(result.rowcount or 0)


async def set_notification_destination(
    session: AsyncSession,
    user: User,
    *,
    token: str,
    url: str,
) -> User:
    # Replaces any previous destination; a user has at most one.
    user.notifications_enabled = True
    user.notification_token = token
    user.notification_url = url
    await session.commit()
    return user


async def clear_notification_destination(session: AsyncSession, user: User) -> User:
    user.notifications_enabled = False
    user.notification_token = None
    user.notification_url = None
    await session.commit()
    return user
