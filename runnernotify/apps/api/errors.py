from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _split_detail(detail: Any, status_code: int) -> tuple[str, str]:
    # Extract code/message from FastAPI HTTPException detail payloads.
    default_code = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        return str(detail.get("code") or default_code), str(detail.get("message") or "Request failed")
    if isinstance(detail, str):
        return default_code, detail
    return default_code, "Request failed"


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message = _split_detail(exc.detail, exc.status_code)
    payload = {"error": {"code": code, "message": message}, "request_id": _request_id(request)}
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_request_error path=%s", request.url.path, exc_info=exc)
    payload = {
        "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"},
        "request_id": _request_id(request),
    }
    return JSONResponse(content=payload, status_code=500)
