from __future__ import annotations

from typing import Any

from quotagate.apps.api.response import ErrorEnvelope


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
    400: _response("Bad request", "BAD_REQUEST", "Bad request"),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid shared token"),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
    503: _response("Service unavailable", "STORE_UNAVAILABLE", "Entitlements are temporarily unavailable"),
}

QUOTA_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    402: _response(
        "Quota exceeded",
        "QUOTA_EXCEEDED",
        "Daily quota exceeded",
        details={"action": "chat", "limit": 5, "tier": "free"},
    ),
    413: _response(
        "Request too large",
        "REQUEST_TOO_LARGE",
        "Request exceeds the maximum size for this tier",
        details={"limit": 2000, "tier": "free"},
    ),
}

RELAY_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    502: _response("Relay failed", "RELAY_FAILED", "Relay timed out"),
}

CONFLICT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    409: _response("Conflict", "CUSTOMER_REF_CONFLICT", "customer_ref already linked"),
}
