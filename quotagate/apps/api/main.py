from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from quotagate.apps.api.errors import (
    http_exception_handler,
    quotagate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from quotagate.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from quotagate.apps.api.routes.admin import router as admin_router
from quotagate.apps.api.routes.billing import router as billing_router
from quotagate.apps.api.routes.chat import router as chat_router
from quotagate.apps.api.routes.health import router as health_router
from quotagate.apps.api.routes.ops import router as ops_router
from quotagate.apps.api.routes.quota import router as quota_router
from quotagate.core.config import get_settings
from quotagate.core.errors import QuotagateError
from quotagate.core.logging import configure_logging
from quotagate.services.telemetry import record_request


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name, version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Echo the caller's request id, or mint one, on every response.
        request_id = get_request_id(request)
        started = time.perf_counter()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.perf_counter() - started) * 1000.0,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(QuotagateError, quotagate_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (health_router, chat_router, quota_router, billing_router, admin_router, ops_router):
        app.include_router(router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
