from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request

from runnernotify.apps.api.errors import http_exception_handler, unhandled_exception_handler
from runnernotify.apps.api.routes.notifications import router as notifications_router
from runnernotify.core.logging import configure_logging
from runnernotify.services.notifications.dispatcher import Dispatcher


def create_app(*, dispatcher: Dispatcher | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="runner notification service")
    # Manual dispatch passes reuse this instance; the scheduled worker owns its own.
    app.state.dispatcher = dispatcher

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(notifications_router)
    return app


app = create_app()
