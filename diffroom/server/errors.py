from __future__ import annotations

import logging
import traceback
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from diffroom.session.errors import SessionError, UnknownRoom

_log = logging.getLogger("diffroom.errors")

_SESSION_STATUS: dict[type[SessionError], int] = {
    UnknownRoom: 404,
}


def _error_response(
    *,
    status: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    body = {"ok": False, "code": code, "message": message}
    if details is not None:
        body["details"] = details
    return JSONResponse(body, status_code=status)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SessionError)
    async def _session_exc(request: Request, exc: SessionError):
        status = _SESSION_STATUS.get(type(exc), 400)
        _log.debug("session error on %s: %s", request.url.path, exc)
        details = {"room_id": exc.room_id} if exc.room_id else None
        return _error_response(
            status=status, code=exc.code, message=exc.message, details=details
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_exc(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        message = str(detail) if detail else "Request failed"
        details = detail if isinstance(detail, (dict, list)) else None
        return _error_response(
            status=exc.status_code,
            code=f"http_{exc.status_code}",
            message=message,
            details=details,
        )

    @app.exception_handler(RequestValidationError)
    async def _val_exc(request: Request, exc: RequestValidationError):
        _log.debug("validation error: %s", exc)
        return _error_response(
            status=422,
            code="validation_error",
            message="Request validation failed",
            details=exc.errors(),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        err_id = uuid.uuid4().hex
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        _log.error("Unhandled exception [%s]: %s", err_id, tb)
        return _error_response(
            status=500,
            code="internal_error",
            message="Internal server error",
            details={"error_id": err_id},
        )


__all__ = ["register_exception_handlers"]
