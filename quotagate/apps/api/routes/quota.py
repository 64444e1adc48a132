from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from quotagate.apps.api.deps import get_gate, get_principal_context, require_shared_token
from quotagate.apps.api.openapi import DEFAULT_ERROR_RESPONSES, QUOTA_ERROR_RESPONSES
from quotagate.apps.api.response import SuccessEnvelope, success_response
from quotagate.domain.state import ACTION_CHAT
from quotagate.services.identity import PrincipalContext
from quotagate.services.quota import Decision, QuotaGate, build_quota_exception, quota_headers


router = APIRouter(
    prefix="/quota",
    tags=["quota"],
    responses={**DEFAULT_ERROR_RESPONSES, **QUOTA_ERROR_RESPONSES},
    dependencies=[Depends(require_shared_token)],
)


class QuotaCheckRequest(BaseModel):
    action: str = Field(default=ACTION_CHAT, min_length=1, max_length=64)
    request_size: int = Field(default=0, ge=0)


class QuotaDecisionResponse(BaseModel):
    allowed: bool
    principal_id: str
    action: str
    tier: str | None
    limit: int | None
    used: int
    remaining: int | None
    degraded: bool


class UsageRecordRequest(BaseModel):
    action: str = Field(default=ACTION_CHAT, min_length=1, max_length=64)
    tokens_used: int = Field(default=0, ge=0)
    # Pin the bucket returned by /quota/check so a midnight rollover cannot split it.
    principal_id: str | None = Field(default=None, max_length=256)


class UsageRecordResponse(BaseModel):
    recorded: bool
    principal_id: str
    action: str


class UsageTodayResponse(BaseModel):
    principal_id: str
    day: str
    tier: str
    counts: dict[str, int]
    tokens_consumed: int
    limits: dict[str, int]
    degraded: bool


def decision_payload(decision: Decision) -> QuotaDecisionResponse:
    return QuotaDecisionResponse(
        allowed=decision.allowed,
        principal_id=decision.principal_id,
        action=decision.action_kind,
        tier=decision.tier,
        limit=decision.limit,
        used=decision.used,
        remaining=decision.remaining,
        degraded=decision.degraded,
    )


@router.post("/check", response_model=SuccessEnvelope[QuotaDecisionResponse])
async def check_quota(
    payload: QuotaCheckRequest,
    request: Request,
    response: Response,
    context: PrincipalContext = Depends(get_principal_context),
    gate: QuotaGate = Depends(get_gate),
) -> dict:
    # Admission only; nothing is consumed until /quota/usage confirms downstream success.
    decision = await gate.check(context, payload.action, payload.request_size)
    if not decision.allowed:
        raise build_quota_exception(decision)
    for key, value in quota_headers(decision).items():
        response.headers[key] = value
    return success_response(request=request, data=decision_payload(decision))


@router.post("/usage", response_model=SuccessEnvelope[UsageRecordResponse])
async def record_usage(
    payload: UsageRecordRequest,
    request: Request,
    context: PrincipalContext = Depends(get_principal_context),
    gate: QuotaGate = Depends(get_gate),
) -> dict:
    principal_id = payload.principal_id or gate.resolve_principal(context)
    recorded = await gate.record_usage(
        context,
        payload.action,
        payload.tokens_used,
        principal_id=principal_id,
    )
    return success_response(
        request=request,
        data=UsageRecordResponse(recorded=recorded, principal_id=principal_id, action=payload.action),
    )


@router.get("/usage", response_model=SuccessEnvelope[UsageTodayResponse])
async def get_usage(
    request: Request,
    context: PrincipalContext = Depends(get_principal_context),
    gate: QuotaGate = Depends(get_gate),
) -> dict:
    principal_id = gate.resolve_principal(context)
    principal = await gate.entitlements.get_or_create(principal_id)
    usage = await gate.ledger.get_today_usage(principal_id)
    policy = await gate.policy_for(principal_id, principal.tier)
    limits = {action: policy.limit_for(action) for action in usage.count_per_action}
    return success_response(
        request=request,
        data=UsageTodayResponse(
            principal_id=principal_id,
            day=usage.day.isoformat(),
            tier=principal.tier,
            counts=dict(usage.count_per_action),
            tokens_consumed=usage.tokens_consumed,
            limits=limits,
            degraded=usage.degraded,
        ),
    )
