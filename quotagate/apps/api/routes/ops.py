from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from quotagate.apps.api.deps import require_shared_token
from quotagate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from quotagate.apps.api.response import SuccessEnvelope, success_response
from quotagate.persistence.db import pool_stats
from quotagate.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    request_latency_p95,
)


router = APIRouter(
    prefix="/ops",
    tags=["ops"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_shared_token)],
)


class MetricsResponse(BaseModel):
    window_s: int
    counters: dict[str, int]
    request_latency_p95_ms: float | None
    external: dict[str, dict[str, float | None]]
    db_pool: dict[str, Any]


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def metrics(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
) -> dict:
    # Counters are process-local and reset on restart.
    return success_response(
        request=request,
        data=MetricsResponse(
            window_s=window_s,
            counters=counters_snapshot(),
            request_latency_p95_ms=request_latency_p95(window_s),
            external=external_latency_by_integration(window_s),
            db_pool=pool_stats(),
        ),
    )
