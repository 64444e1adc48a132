from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from quotagate.apps.api.deps import get_gate, get_principal_context, get_relay, require_shared_token
from quotagate.apps.api.openapi import DEFAULT_ERROR_RESPONSES, QUOTA_ERROR_RESPONSES, RELAY_ERROR_RESPONSES
from quotagate.apps.api.response import success_response
from quotagate.core.errors import RelayError
from quotagate.domain.state import ACTION_CHAT, ACTION_WEB_SEARCH
from quotagate.services.identity import PrincipalContext
from quotagate.services.quota import QuotaGate, build_quota_exception, quota_headers
from quotagate.services.relay import ChatRelay


logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["chat"],
    responses={**DEFAULT_ERROR_RESPONSES, **QUOTA_ERROR_RESPONSES, **RELAY_ERROR_RESPONSES},
    dependencies=[Depends(require_shared_token)],
)


class WebOptions(BaseModel):
    enabled: bool = False
    query: str = ""


class ChatRequest(BaseModel):
    # Unknown keys are forwarded untouched so relay features do not need a schema bump.
    model_config = ConfigDict(extra="allow")

    message: str | None = None
    expert: bool = False
    web: WebOptions = Field(default_factory=WebOptions)


@router.post("/chat")
async def chat(
    payload: ChatRequest,
    request: Request,
    context: PrincipalContext = Depends(get_principal_context),
    gate: QuotaGate = Depends(get_gate),
    relay: ChatRelay = Depends(get_relay),
) -> JSONResponse:
    message = (payload.message or "").strip()
    if not message:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "MISSING_MESSAGE", "message": "message is required"},
        )

    action = ACTION_WEB_SEARCH if payload.web.enabled else ACTION_CHAT
    decision = await gate.check(context, action, len(message))
    if not decision.allowed:
        raise build_quota_exception(decision)

    forwarded: dict[str, Any] = payload.model_dump()
    try:
        result = await relay.forward(forwarded)
    except RelayError as exc:
        # Admitted but not served: the caller is not charged.
        logger.warning("chat_relay_failed principal_id=%s action=%s", decision.principal_id, action)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "RELAY_FAILED", "message": str(exc)},
        ) from exc

    if result.status_code >= 400:
        # Relay-side client errors are passed through without charging quota.
        return JSONResponse(content=result.body, status_code=result.status_code)

    recorded = await gate.record_usage(context, action, result.tokens_used, principal_id=decision.principal_id)
    headers = quota_headers(decision)
    if recorded:
        used_after = decision.used + 1
        headers["X-Quota-Used"] = str(used_after)
        if decision.limit is not None:
            headers["X-Quota-Remaining"] = str(max(decision.limit - used_after, 0))
    return JSONResponse(
        content=success_response(request=request, data=result.body),
        status_code=result.status_code,
        headers=headers,
    )
