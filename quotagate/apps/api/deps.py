from __future__ import annotations

import hmac

from fastapi import HTTPException, Request, status

from quotagate.core.config import get_settings
from quotagate.services.billing_webhook import EntitlementUpdater, get_entitlement_updater
from quotagate.services.identity import PrincipalContext, client_ip_from_headers
from quotagate.services.quota import QuotaGate, get_quota_gate
from quotagate.services.relay import ChatRelay


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def require_shared_token(request: Request) -> None:
    # Only the trusted front layer may call metered routes; compare in constant time.
    settings = get_settings()
    if not settings.shared_token:
        raise _auth_error("Shared token is not configured")
    provided = request.headers.get(settings.shared_token_header)
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), settings.shared_token.encode("utf-8")):
        raise _auth_error("Missing or invalid shared token")


def get_principal_context(request: Request) -> PrincipalContext:
    # The front layer forwards the logged-in user id; anonymous callers are keyed by address.
    settings = get_settings()
    peer_host = request.client.host if request.client else None
    ip_address = client_ip_from_headers(
        peer_host=peer_host,
        forwarded_for=request.headers.get("X-Forwarded-For"),
        trust_forwarded_for=settings.trust_forwarded_for,
    )
    user_id = request.headers.get(settings.user_id_header)
    return PrincipalContext(user_id=user_id or None, ip_address=ip_address)


def get_gate() -> QuotaGate:
    return get_quota_gate()


def get_updater() -> EntitlementUpdater:
    return get_entitlement_updater()


def get_relay() -> ChatRelay:
    return ChatRelay()
