from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from quotagate.apps.api.deps import get_gate, require_shared_token
from quotagate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from quotagate.apps.api.response import SuccessEnvelope, success_response
from quotagate.services.quota import QuotaGate


router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_shared_token)],
)


class PolicyResponse(BaseModel):
    tier: str
    actions_per_day: dict[str, int]
    max_request_size_chars: int


class PrincipalResponse(BaseModel):
    principal_id: str
    tier: str
    subscription_status: str
    payment_customer_ref: str | None
    subscription_ref: str | None


@router.get("/policies", response_model=SuccessEnvelope[list[PolicyResponse]])
async def list_policies(request: Request, gate: QuotaGate = Depends(get_gate)) -> dict:
    # Effective table after operator overrides are merged over configured defaults.
    table = await gate.policy_table()
    return success_response(request=request, data=table.as_list())


@router.get("/principals", response_model=SuccessEnvelope[PrincipalResponse])
async def get_principal(
    request: Request,
    principal_id: str | None = Query(default=None, max_length=256),
    customer_ref: str | None = Query(default=None, max_length=256),
    gate: QuotaGate = Depends(get_gate),
) -> dict:
    # Support lookups for billing investigations; reads never create rows.
    if principal_id:
        record = await gate.entitlements.get(principal_id)
    elif customer_ref:
        record = await gate.entitlements.find_by_customer_ref(customer_ref)
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "principal_id or customer_ref is required"},
        )
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Principal not found"},
        )
    return success_response(
        request=request,
        data=PrincipalResponse(
            principal_id=record.principal_id,
            tier=record.tier,
            subscription_status=record.subscription_status,
            payment_customer_ref=record.payment_customer_ref,
            subscription_ref=record.subscription_ref,
        ),
    )
