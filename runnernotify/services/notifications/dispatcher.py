from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from runnernotify.core.config import Settings, get_settings
from runnernotify.core.errors import TransportError
from runnernotify.domain.models import NotificationEntry, utc_now
from runnernotify.domain.notifications import NotificationStatus
from runnernotify.persistence.repos.notification_queue import due_for_dispatch, save_entry
from runnernotify.services.notifications.rate_limit import (
    AdmissionController,
    SlidingWindowRateLimiter,
    WindowConfig,
)
from runnernotify.services.notifications.state import mark_sent, mark_skipped, register_failure
from runnernotify.services.notifications.transport import (
    BatchResult,
    HttpNotificationTransport,
    NotificationTransport,
    OutboundNotification,
)


logger = logging.getLogger(__name__)

REASON_DESTINATION_UNAVAILABLE = "destination unavailable"
REASON_RATE_LIMITED = "rate limit exceeded"
REASON_NO_RESULT = "no result returned by transport"


@dataclass
class DispatchSummary:
    status: str
    fetched: int = 0
    sent: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0
    unavailable: int = 0

    def as_dict(self) -> dict[str, int | str]:
        return {
            "status": self.status,
            "fetched": self.fetched,
            "sent": self.sent,
            "retrying": self.retrying,
            "failed": self.failed,
            "skipped": self.skipped,
            "unavailable": self.unavailable,
        }


def group_by_destination(entries: list[NotificationEntry]) -> tuple[dict[str, list[NotificationEntry]], list[NotificationEntry]]:
    """Split entries into URL groups (first-seen order) and entries with no usable destination.

    A destination is the (url, token) pair; a user missing either cannot be delivered to.
    """
    groups: dict[str, list[NotificationEntry]] = {}
    unavailable: list[NotificationEntry] = []
    for entry in entries:
        user = entry.user
        if user is None or not user.notification_url or not user.notification_token:
            unavailable.append(entry)
            continue
        groups.setdefault(user.notification_url, []).append(entry)
    return groups, unavailable


class Dispatcher:
    """Drains due notification entries into rate-limited batch sends.

    One instance owns the limiter state and the single-flight guard, so a
    deployment must run exactly one dispatcher.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        transport: NotificationTransport | None = None,
        rate_limiter: AdmissionController | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        if session_factory is None:
            from runnernotify.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._transport = transport or HttpNotificationTransport(
            timeout_s=self._settings.notify_transport_timeout_s
        )
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            WindowConfig(
                window_seconds=float(self._settings.notify_rate_limit_window_s),
                limit=int(self._settings.notify_rate_limit_max),
            )
        )
        self._clock = clock or utc_now
        self._lock = asyncio.Lock()

    @property
    def rate_limiter(self) -> AdmissionController:
        return self._rate_limiter

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    async def run_once(self) -> DispatchSummary:
        # Overlapping ticks are dropped, not queued, so two passes never race on the same rows.
        if self._lock.locked():
            logger.info("notification_dispatch_skipped reason=in_flight")
            return DispatchSummary(status="skipped_in_flight")
        if not self._settings.notifications_enabled:
            logger.info("notification_dispatch_skipped reason=disabled")
            return DispatchSummary(status="disabled")
        async with self._lock:
            try:
                async with self._session_factory() as session:
                    summary = await self._run_pass(session)
            except SQLAlchemyError:
                logger.exception("notification_dispatch_aborted reason=storage_error")
                return DispatchSummary(status="storage_error")
            except Exception:  # noqa: BLE001 - the scheduler must never see a dispatch failure.
                logger.exception("notification_dispatch_aborted reason=unexpected_error")
                return DispatchSummary(status="error")
        logger.info(
            "notification_dispatch_complete fetched=%s sent=%s retrying=%s failed=%s skipped=%s unavailable=%s",
            summary.fetched,
            summary.sent,
            summary.retrying,
            summary.failed,
            summary.skipped,
            summary.unavailable,
        )
        return summary

    async def _run_pass(self, session: AsyncSession) -> DispatchSummary:
        settings = self._settings
        entries = await due_for_dispatch(
            session,
            now=self._clock(),
            max_retries=int(settings.notify_max_retries),
            batch_limit=int(settings.notify_batch_size),
        )
        summary = DispatchSummary(status="ok", fetched=len(entries))
        if not entries:
            return summary
        groups, unavailable = group_by_destination(entries)
        if unavailable:
            logger.warning("notification_destination_unavailable count=%s", len(unavailable))
            summary.unavailable = len(unavailable)
            await self._fail_all(session, unavailable, REASON_DESTINATION_UNAVAILABLE, summary)
        for url, group in groups.items():
            await self._dispatch_group(session, url, group, summary)
        return summary

    async def _dispatch_group(
        self,
        session: AsyncSession,
        url: str,
        group: list[NotificationEntry],
        summary: DispatchSummary,
    ) -> None:
        if not self._rate_limiter.admit(url, len(group)):
            logger.warning("notification_rate_limited url=%s count=%s", url, len(group))
            for entry in group:
                mark_skipped(entry, REASON_RATE_LIMITED)
                await save_entry(session, entry)
                summary.skipped += 1
            return
        outbound = [
            OutboundNotification(
                notification_id=entry.idempotency_key,
                title=entry.title,
                body=entry.body,
                target_url=entry.target_url,
                token=entry.user.notification_token,
            )
            for entry in group
        ]
        try:
            result = await self._transport.send(url, outbound)
        except TransportError as exc:
            logger.warning("notification_batch_failed url=%s count=%s error=%s", url, len(group), exc)
            await self._fail_all(session, group, str(exc), summary)
            return
        await self._apply_results(session, group, result, summary)

    async def _apply_results(
        self,
        session: AsyncSession,
        group: list[NotificationEntry],
        result: BatchResult,
        summary: DispatchSummary,
    ) -> None:
        logger.info(
            "notification_batch_results successes=%s failures=%s",
            len(result.successes),
            len(result.failures),
        )
        sent_at = self._clock()
        for entry in group:
            key = entry.idempotency_key
            if key in result.successes:
                mark_sent(entry, sent_at=sent_at)
                await save_entry(session, entry)
                summary.sent += 1
                continue
            reason = result.failures.get(key, REASON_NO_RESULT)
            await self._fail(session, entry, reason, summary)

    async def _fail_all(
        self,
        session: AsyncSession,
        entries: list[NotificationEntry],
        reason: str,
        summary: DispatchSummary,
    ) -> None:
        for entry in entries:
            await self._fail(session, entry, reason, summary)

    async def _fail(
        self,
        session: AsyncSession,
        entry: NotificationEntry,
        reason: str,
        summary: DispatchSummary,
    ) -> None:
        register_failure(entry, reason, max_retries=int(self._settings.notify_max_retries))
        await save_entry(session, entry)
        if entry.status == NotificationStatus.FAILED:
            summary.failed += 1
        else:
            summary.retrying += 1
