from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from destinyrag.apps.api.response import error_response
from destinyrag.core.errors import (
    DatabaseError,
    DestinyError,
    InvalidRequestError,
    LLMCancelledError,
    LLMError,
    LLMTimeoutError,
    NotFoundError,
    ProviderConfigError,
    QuotaExceededError,
    UnknownJobTypeError,
)


logger = logging.getLogger(__name__)

# Codes for framework-raised HTTP errors (unknown routes, wrong methods).
_HTTP_STATUS_CODES: dict[int, str] = {
    400: "INVALID_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}


def classify_error(exc: DestinyError) -> tuple[int, str, str, dict[str, Any] | None]:
    """Map a domain error to (status, code, client message, details)."""
    if isinstance(exc, QuotaExceededError):
        return (
            402,
            "QUOTA_EXCEEDED",
            str(exc),
            {
                "used": exc.used,
                "limit": exc.limit,
                "remaining": exc.remaining,
                "upgradeHint": exc.upgrade_hint,
            },
        )
    if isinstance(exc, NotFoundError):
        return 404, "NOT_FOUND", str(exc), None
    if isinstance(exc, (InvalidRequestError, UnknownJobTypeError)):
        return 400, "INVALID_REQUEST", str(exc), None
    if isinstance(exc, LLMTimeoutError):
        return 504, "UPSTREAM_TIMEOUT", "The language model did not respond in time", None
    if isinstance(exc, LLMCancelledError):
        return 499, "REQUEST_CANCELLED", "The request was cancelled", None
    if isinstance(exc, LLMError):
        return 502, "UPSTREAM_FAILURE", "The language model request failed", None
    if isinstance(exc, ProviderConfigError):
        return 503, "SERVICE_UNAVAILABLE", "The language model provider is not configured", None
    if isinstance(exc, DatabaseError):
        return 500, "DB_ERROR", "Database error", None
    return 500, "INTERNAL_ERROR", "Internal server error", None


async def destiny_exception_handler(request: Request, exc: DestinyError) -> JSONResponse:
    status_code, code, message, details = classify_error(exc)
    if status_code >= 500:
        # Keep upstream/provider detail in logs only.
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers fastapi.HTTPException too, which subclasses the Starlette one.
    code = _HTTP_STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    payload = error_response(request=request, code=code, message=message)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    # pydantic error contexts may hold exception objects; keep only JSON-safe keys.
    return [
        {"loc": list(err.get("loc", ())), "msg": str(err.get("msg", "")), "type": err.get("type")}
        for err in exc.errors()
    ]


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_errors(exc)},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
