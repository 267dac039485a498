from __future__ import annotations

import asyncio
from datetime import timezone
import logging

from arq import cron
from arq.connections import RedisSettings

from runnernotify.core.config import get_settings
from runnernotify.core.logging import configure_logging
from runnernotify.persistence.db import SessionLocal
from runnernotify.services.notifications.dispatcher import Dispatcher
from runnernotify.services.notifications.producers import (
    cleanup_old_notifications,
    queue_daily_running_reminders,
    queue_evening_running_reminders,
    queue_weekly_achievement_announcements,
)


logger = logging.getLogger(__name__)


def _dispatcher(ctx) -> Dispatcher:
    dispatcher = ctx.get("dispatcher")
    if dispatcher is None:
        dispatcher = Dispatcher(session_factory=SessionLocal)
        ctx["dispatcher"] = dispatcher
    return dispatcher


async def process_notification_queue(ctx) -> dict:
    # Dispatch passes never raise; the summary lands in the ARQ job result for inspection.
    summary = await _dispatcher(ctx).run_once()
    return summary.as_dict()


async def send_daily_reminders(ctx) -> dict:
    async with SessionLocal() as session:
        result = await queue_daily_running_reminders(session=session)
    return result.as_dict()


async def send_evening_reminders(ctx) -> dict:
    async with SessionLocal() as session:
        result = await queue_evening_running_reminders(session=session)
    return result.as_dict()


async def send_weekly_achievements(ctx) -> dict:
    async with SessionLocal() as session:
        result = await queue_weekly_achievement_announcements(session=session)
    return result.as_dict()


async def cleanup_notifications(ctx) -> int:
    async with SessionLocal() as session:
        return await cleanup_old_notifications(session=session)


async def run_dispatch_loop(dispatcher: Dispatcher | None = None) -> None:
    """Poll the queue on a fixed interval without Redis, for single-process deployments."""
    settings = get_settings()
    interval = max(1, int(settings.notify_dispatch_interval_s))
    active = dispatcher or Dispatcher(session_factory=SessionLocal)
    while True:
        try:
            await active.run_once()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("notification dispatch loop iteration failed")
        await asyncio.sleep(interval)


async def _startup(ctx) -> None:
    # One dispatcher per worker process holds the limiter window and the single-flight guard.
    configure_logging()
    ctx["dispatcher"] = Dispatcher(session_factory=SessionLocal)


async def _shutdown(ctx) -> None:
    ctx.pop("dispatcher", None)


def _cron_jobs() -> list:
    settings = get_settings()
    dispatch_every_min = max(1, int(settings.notify_dispatch_interval_s) // 60)
    return [
        cron(
            process_notification_queue,
            minute=set(range(0, 60, dispatch_every_min)),
            unique=True,
        ),
        cron(send_daily_reminders, hour=settings.notify_daily_reminder_hour, minute=0, unique=True),
        cron(send_evening_reminders, hour=settings.notify_evening_reminder_hour, minute=0, unique=True),
        cron(
            send_weekly_achievements,
            weekday=settings.notify_weekly_achievement_weekday,
            hour=settings.notify_weekly_achievement_hour,
            minute=0,
            unique=True,
        ),
        cron(cleanup_notifications, hour=settings.notify_cleanup_hour, minute=0, unique=True),
    ]


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    timezone = timezone.utc
    functions = [process_notification_queue]
    cron_jobs = _cron_jobs()
    on_startup = _startup
    on_shutdown = _shutdown
