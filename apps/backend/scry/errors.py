"""Scheduler error types and the JSON error envelope.

エンジン層は型付き例外を送出し、HTTP 層はそれを `ErrorResponse`
形式（error_code/message/details/request_id）へ変換する。
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from google.api_core import exceptions as gexc
from pydantic import BaseModel
from starlette.exceptions import HTTPException

from .logging import get_logger


class SchedulerError(Exception):
    """Base class for errors raised by the scheduling engine."""

    code = "SCHEDULER_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(SchedulerError):
    """Item does not exist or is no longer visible (archived/deleted)."""

    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class PermissionDenied(SchedulerError):
    """Item exists but belongs to another user."""

    code = "PERMISSION_DENIED"
    status_code = status.HTTP_403_FORBIDDEN


class InvalidInput(SchedulerError):
    """Malformed identifier, grade or payload."""

    code = "INVALID_INPUT"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class ErrorResponse(BaseModel):
    """Error response envelope returned by every failing endpoint."""

    error_code: str
    message: str
    details: Any | None = None
    request_id: str | None = None


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    return str(request_id) if request_id else str(uuid.uuid4())


def _error_json(
    request: Request,
    *,
    status_code: int,
    error_code: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error_code=error_code,
            message=message,
            details=details,
            request_id=get_request_id(request),
        ).model_dump(),
    )


async def scheduler_error_handler(request: Request, exc: SchedulerError) -> JSONResponse:
    return _error_json(
        request,
        status_code=exc.status_code,
        error_code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render pydantic validation failures with the shared envelope (422)."""

    details = [
        {
            "field": ".".join(str(loc) for loc in error.get("loc", [])),
            "issue": error.get("msg", "Validation error"),
            "type": error.get("type", "validation_error"),
        }
        for error in exc.errors()
    ]
    return _error_json(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        error_code=InvalidInput.code,
        message="Invalid request data",
        details=details,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "An error occurred"
    details = exc.detail if isinstance(exc.detail, (dict, list)) else None
    response = _error_json(
        request,
        status_code=exc.status_code,
        error_code="HTTP_ERROR",
        message=message,
        details=details,
    )
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


STORE_TIMEOUT = "STORE_TIMEOUT"
STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


async def store_error_handler(request: Request, exc: gexc.GoogleAPIError) -> JSONResponse:
    """Render Firestore failures that escaped the engine with the shared envelope.

    期限切れは 504、それ以外の API エラーは 503 として返す。
    """

    timed_out = isinstance(exc, gexc.DeadlineExceeded)
    get_logger("errors").warning(
        "store_request_failed",
        path=request.url.path,
        error_class=exc.__class__.__name__,
        timed_out=timed_out,
    )
    return _error_json(
        request,
        status_code=status.HTTP_504_GATEWAY_TIMEOUT if timed_out else status.HTTP_503_SERVICE_UNAVAILABLE,
        error_code=STORE_TIMEOUT if timed_out else STORE_UNAVAILABLE,
        message="Storage request timed out" if timed_out else "Storage is temporarily unavailable",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SchedulerError, scheduler_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(gexc.GoogleAPIError, store_error_handler)  # type: ignore[arg-type]


__all__ = [
    "ErrorResponse",
    "InvalidInput",
    "NotFound",
    "PermissionDenied",
    "SchedulerError",
    "register_exception_handlers",
]
