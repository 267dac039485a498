from __future__ import annotations

from typing import AsyncGenerator

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from runnernotify.core.config import get_settings
from runnernotify.core.errors import ManualTriggerForbiddenError
from runnernotify.persistence.db import get_session
from runnernotify.services.notifications.dispatcher import Dispatcher


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_dispatcher(request: Request) -> Dispatcher:
    # The app owns one dispatcher so manual passes share the limiter and single-flight guard.
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = Dispatcher()
        request.app.state.dispatcher = dispatcher
    return dispatcher


def ensure_manual_triggers_allowed() -> None:
    if get_settings().is_production:
        raise ManualTriggerForbiddenError("Manual notification triggers are disabled in production")


async def require_manual_triggers() -> None:
    # Producer and dispatch triggers bypass the schedule; only non-production deployments expose them.
    try:
        ensure_manual_triggers_allowed()
    except ManualTriggerForbiddenError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "MANUAL_TRIGGER_FORBIDDEN", "message": str(exc)},
        ) from exc
