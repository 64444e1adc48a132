from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from quotagate.apps.api.deps import get_updater, require_shared_token
from quotagate.apps.api.openapi import CONFLICT_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES
from quotagate.apps.api.response import SuccessEnvelope, success_response
from quotagate.core.errors import CustomerRefConflictError, WebhookPayloadError, WebhookVerificationError
from quotagate.services.billing_webhook import (
    EntitlementUpdater,
    parse_stripe_event,
    verify_stripe_payload,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


class WebhookResponse(BaseModel):
    outcome: str
    event_type: str
    customer_ref: str | None
    tier: str | None
    status: str | None
    message: str


class LinkCustomerRequest(BaseModel):
    principal_id: str = Field(min_length=1, max_length=256)
    customer_ref: str = Field(min_length=1, max_length=256)


class LinkCustomerResponse(BaseModel):
    principal_id: str
    customer_ref: str | None
    tier: str
    subscription_status: str


@router.post("/webhook", response_model=SuccessEnvelope[WebhookResponse])
async def billing_webhook(
    request: Request,
    updater: EntitlementUpdater = Depends(get_updater),
) -> dict[str, Any]:
    # Signature checks need the exact raw bytes, so the body is not parsed by FastAPI.
    body = await request.body()
    try:
        verify_stripe_payload(body, request.headers.get("Stripe-Signature"))
    except WebhookVerificationError as exc:
        logger.warning("billing_webhook_signature_invalid")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "WEBHOOK_SIGNATURE_INVALID", "message": str(exc)},
        ) from exc
    try:
        event = parse_stripe_event(body)
    except WebhookPayloadError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "WEBHOOK_PAYLOAD_INVALID", "message": str(exc)},
        ) from exc

    outcome = await updater.handle_event(event.event_type, event.customer_ref, event.status_payload)
    return success_response(request=request, data=WebhookResponse(**outcome.as_dict()))


@router.post(
    "/link",
    response_model=SuccessEnvelope[LinkCustomerResponse],
    responses=CONFLICT_ERROR_RESPONSES,
    dependencies=[Depends(require_shared_token)],
)
async def link_customer(
    payload: LinkCustomerRequest,
    request: Request,
    updater: EntitlementUpdater = Depends(get_updater),
) -> dict[str, Any]:
    try:
        record = await updater.store.link_customer_ref(payload.principal_id, payload.customer_ref)
    except CustomerRefConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "CUSTOMER_REF_CONFLICT", "message": str(exc)},
        ) from exc
    return success_response(
        request=request,
        data=LinkCustomerResponse(
            principal_id=record.principal_id,
            customer_ref=record.payment_customer_ref,
            tier=record.tier,
            subscription_status=record.subscription_status,
        ),
    )
