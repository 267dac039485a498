from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from runnernotify.apps.api.deps import get_db, get_dispatcher, require_manual_triggers
from runnernotify.core.config import get_settings
from runnernotify.core.errors import ResolverError
from runnernotify.persistence.repos.notification_queue import count_by_status
from runnernotify.services.notifications.dispatcher import Dispatcher
from runnernotify.services.notifications.events import apply_lifecycle_event, parse_webhook_body
from runnernotify.services.notifications.producers import (
    cleanup_old_notifications,
    queue_daily_running_reminders,
    queue_evening_running_reminders,
    queue_weekly_achievement_announcements,
    send_welcome_notification,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notification-service", tags=["notifications"])


class WebhookResponse(BaseModel):
    success: bool
    processed: bool
    status: str
    request_id: str | None = None


class HealthResponse(BaseModel):
    status: str
    notifications_enabled: bool
    environment: str
    queue: dict[str, int] | None = None


class TriggerResponse(BaseModel):
    success: bool
    result: dict[str, Any]


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> WebhookResponse:
    # Always answer 200: a non-2xx makes the client platform retry the same lifecycle event.
    request_id = getattr(request.state, "request_id", None)
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else None
    except ValueError:
        body = None
    event = parse_webhook_body(body)
    try:
        result = await apply_lifecycle_event(session=db, event=event)
    except SQLAlchemyError:
        logger.exception("notification_webhook_failed request_id=%s", request_id)
        return WebhookResponse(success=False, processed=False, status="error", request_id=request_id)
    return WebhookResponse(
        success=True,
        processed=result.processed,
        status=result.status,
        request_id=request_id,
    )


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    settings = get_settings()
    try:
        queue = await count_by_status(db)
    except SQLAlchemyError:
        logger.exception("notification_health_queue_unavailable")
        return HealthResponse(
            status="degraded",
            notifications_enabled=settings.notifications_enabled,
            environment=settings.environment,
        )
    return HealthResponse(
        status="ok",
        notifications_enabled=settings.notifications_enabled,
        environment=settings.environment,
        queue=queue,
    )


@router.post(
    "/dev/trigger-daily-reminders",
    response_model=TriggerResponse,
    dependencies=[Depends(require_manual_triggers)],
)
async def trigger_daily_reminders(db: AsyncSession = Depends(get_db)) -> TriggerResponse:
    result = await queue_daily_running_reminders(session=db)
    return TriggerResponse(success=True, result=result.as_dict())


@router.post(
    "/dev/trigger-evening-reminders",
    response_model=TriggerResponse,
    dependencies=[Depends(require_manual_triggers)],
)
async def trigger_evening_reminders(db: AsyncSession = Depends(get_db)) -> TriggerResponse:
    result = await queue_evening_running_reminders(session=db)
    return TriggerResponse(success=True, result=result.as_dict())


@router.post(
    "/dev/trigger-weekly-achievements",
    response_model=TriggerResponse,
    dependencies=[Depends(require_manual_triggers)],
)
async def trigger_weekly_achievements(db: AsyncSession = Depends(get_db)) -> TriggerResponse:
    result = await queue_weekly_achievement_announcements(session=db)
    return TriggerResponse(success=True, result=result.as_dict())


@router.post(
    "/dev/process-queue",
    response_model=TriggerResponse,
    dependencies=[Depends(require_manual_triggers)],
)
async def process_queue(dispatcher: Dispatcher = Depends(get_dispatcher)) -> TriggerResponse:
    summary = await dispatcher.run_once()
    return TriggerResponse(success=summary.status in {"ok", "skipped_in_flight", "disabled"}, result=summary.as_dict())


@router.post(
    "/dev/cleanup",
    response_model=TriggerResponse,
    dependencies=[Depends(require_manual_triggers)],
)
async def cleanup(db: AsyncSession = Depends(get_db)) -> TriggerResponse:
    deleted = await cleanup_old_notifications(session=db)
    return TriggerResponse(success=True, result={"deleted": deleted})


@router.post(
    "/dev/send-welcome/{fid}",
    response_model=TriggerResponse,
    dependencies=[Depends(require_manual_triggers)],
)
async def send_welcome(fid: int, db: AsyncSession = Depends(get_db)) -> TriggerResponse:
    try:
        outcome = await send_welcome_notification(session=db, fid=fid)
    except ResolverError as exc:
        raise HTTPException(
            status_code=503,
            detail={"code": "NOTIFICATION_QUEUE_UNAVAILABLE", "message": str(exc)},
        ) from exc
    if outcome is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "USER_NOT_FOUND", "message": f"User {fid} not found"},
        )
    return TriggerResponse(success=True, result={"fid": fid, "outcome": outcome.value})
