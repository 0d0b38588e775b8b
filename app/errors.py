from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.services.exceptions import ReasonCode, ServiceError

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    400: ReasonCode.validation_error.value,
    401: ReasonCode.invalid_token.value,
    403: ReasonCode.not_owner.value,
    404: ReasonCode.not_found.value,
    409: ReasonCode.concurrency_conflict.value,
}


def _error_payload(code: str, message: str, details: object, request_id: str | None):
    return {"code": code, "message": message, "details": details, "request_id": request_id}


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "unknown"


def _sanitize_input(value):
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, UploadFile):
        return value.filename or "upload"
    if isinstance(value, dict):
        return {key: _sanitize_input(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize_input(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def register_error_handlers(app) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.warning(
                "service_error code=%s path=%s message=%s",
                exc.code.value,
                request.url.path,
                exc.message,
                extra={"request_id": _request_id(request)},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code.value, exc.message, exc.details, _request_id(request)),
        )

    def _handle_http_exception(request: Request, status_code: int, detail: object):
        code = _STATUS_CODES.get(status_code, f"HTTP_{status_code}")
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(code, message, details, _request_id(request)),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return _handle_http_exception(request, exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return _handle_http_exception(request, exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            error_copy = dict(error)
            if "input" in error_copy:
                error_copy["input"] = _sanitize_input(error_copy.get("input"))
            # ctx may hold the raw exception instance.
            if "ctx" in error_copy:
                error_copy["ctx"] = _sanitize_input(error_copy["ctx"])
            errors.append(error_copy)
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                ReasonCode.validation_error.value,
                "Validation error",
                errors,
                _request_id(request),
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "INTERNAL_ERROR", "Internal server error", None, _request_id(request)
            ),
        )
