from __future__ import annotations

from typing import Any

from destinyrag.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", "INVALID_REQUEST", "question must not be empty"),
    402: _response(
        "Quota exceeded",
        "QUOTA_EXCEEDED",
        "Question quota exhausted for tier free",
        details={"used": 5, "limit": 5, "remaining": 0, "upgradeHint": "..."},
    ),
    404: _response("Not found", "NOT_FOUND", "Report not found"),
    422: _response("Validation error", "VALIDATION_ERROR", "Validation error"),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
    502: _response("Upstream failure", "UPSTREAM_FAILURE", "The language model request failed"),
    504: _response("Upstream timeout", "UPSTREAM_TIMEOUT", "The language model did not respond in time"),
}
