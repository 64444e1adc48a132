from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from quotagate.apps.api.response import error_response
from quotagate.core.errors import (
    CustomerRefConflictError,
    QuotagateError,
    RelayError,
    StoreUnavailableError,
    WebhookPayloadError,
    WebhookVerificationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "QUOTA_EXCEEDED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "REQUEST_TOO_LARGE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "RELAY_FAILED",
    503: "SERVICE_UNAVAILABLE",
}


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    fallback = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, str):
        return fallback, detail, None
    if not isinstance(detail, dict):
        return fallback, "Request failed", None
    extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
    return (
        str(detail.get("code") or fallback),
        str(detail.get("message") or "Request failed"),
        extra or None,
    )


def _json_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    *,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # FastAPI's HTTPException subclasses Starlette's, so one handler serves both.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _json_response(request, exc.status_code, code, message, details=details, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # ctx may carry exception objects; only loc/msg/type go on the wire.
    errors = [
        {"loc": list(item.get("loc", ())), "msg": str(item.get("msg", "")), "type": str(item.get("type", ""))}
        for item in exc.errors()
    ]
    return _json_response(
        request, 422, "REQUEST_VALIDATION_ERROR", "Validation error", details={"errors": errors}
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _json_response(request, 500, "INTERNAL_ERROR", "Internal server error")


_DOMAIN_ERROR_STATUS: tuple[tuple[type[QuotagateError], int, str], ...] = (
    (StoreUnavailableError, 503, "STORE_UNAVAILABLE"),
    (WebhookVerificationError, 400, "WEBHOOK_SIGNATURE_INVALID"),
    (WebhookPayloadError, 400, "WEBHOOK_PAYLOAD_INVALID"),
    (CustomerRefConflictError, 409, "CUSTOMER_REF_CONFLICT"),
    (RelayError, 502, "RELAY_FAILED"),
)


async def quotagate_exception_handler(request: Request, exc: QuotagateError) -> JSONResponse:
    # Domain errors that escape a route.
    for error_type, status_code, code in _DOMAIN_ERROR_STATUS:
        if isinstance(exc, error_type):
            if status_code >= 500:
                logger.error("domain_error path=%s code=%s", request.url.path, code, exc_info=exc)
            return _json_response(request, status_code, code, str(exc) or code)
    return await unhandled_exception_handler(request, exc)
