from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Callable

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotagate.core.config import Settings, get_settings
from quotagate.core.errors import EntitlementStoreUnavailableError, StoreUnavailableError
from quotagate.domain.state import UNKNOWN_PRINCIPAL_ID
from quotagate.services.entitlements import EntitlementStore
from quotagate.services.identity import IdentityResolver, PrincipalContext
from quotagate.services.ledger import UsageLedger
from quotagate.services.policy import (
    PolicyTable,
    QuotaPolicy,
    build_default_policies,
    load_policy_table,
)
from quotagate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

REASON_REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
REASON_QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
REASON_STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


@dataclass(frozen=True)
class Decision:
    # Outcome of one admission check; rejections carry what callers need for upgrade prompts.
    allowed: bool
    principal_id: str
    action_kind: str
    tier: str | None
    limit: int | None
    used: int
    reason: str | None = None
    degraded: bool = False

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(self.limit - self.used, 0)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotaGate:
    """Admission control for metered actions.

    ``check`` walks identity -> entitlement -> usage -> policy and returns a
    decision without consuming quota. Callers perform the downstream action
    and call ``record_usage`` only once it has succeeded. Concurrent checks
    for one principal may both pass near the limit, so the daily limit is a
    soft cap.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
        entitlements: EntitlementStore | None = None,
        ledger: UsageLedger | None = None,
        resolver: IdentityResolver | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or _utc_now
        self._resolver = resolver or IdentityResolver(time_provider=self._time_provider)
        self._entitlements = entitlements or EntitlementStore(session_factory=session_factory)
        self._ledger = ledger or UsageLedger(
            session_factory=session_factory,
            time_provider=self._time_provider,
            fallback_enabled=self._settings.ledger_memory_fallback_enabled,
        )
        self._policy_table = build_default_policies(self._settings)
        self._policy_expires_at = 0.0

    @property
    def entitlements(self) -> EntitlementStore:
        return self._entitlements

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    def resolve_principal(self, context: PrincipalContext) -> str:
        return self._resolver.resolve(context)

    async def policy_table(self) -> PolicyTable:
        # Refresh operator overrides on a short TTL; keep the last good table on store errors.
        now = time.monotonic()
        if now < self._policy_expires_at:
            return self._policy_table
        try:
            async with self._session_factory() as session:
                self._policy_table = await load_policy_table(session, self._settings)
        except SQLAlchemyError as exc:
            logger.warning("quota_policy_reload_failed", exc_info=exc)
        self._policy_expires_at = now + max(0, self._settings.policy_cache_ttl_s)
        return self._policy_table

    async def policy_for(self, principal_id: str, tier: str | None) -> QuotaPolicy:
        # Unidentified callers get the most restrictive limits across all tiers.
        table = await self.policy_table()
        if principal_id == UNKNOWN_PRINCIPAL_ID:
            return table.restricted()
        return table.resolve(tier)

    async def check(
        self,
        context: PrincipalContext,
        action_kind: str,
        request_size: int,
    ) -> Decision:
        principal_id = self._resolver.resolve(context)

        try:
            principal = await self._entitlements.get_or_create(principal_id)
            usage = await self._ledger.get_today_usage(principal_id)
        except (EntitlementStoreUnavailableError, StoreUnavailableError) as exc:
            # Fail closed: guessing the tier could over- or under-admit.
            logger.error("quota_check_store_unavailable principal_id=%s", principal_id, exc_info=exc)
            increment_counter("quota.rejected.store_unavailable")
            return Decision(
                allowed=False,
                principal_id=principal_id,
                action_kind=action_kind,
                tier=None,
                limit=None,
                used=0,
                reason=REASON_STORE_UNAVAILABLE,
            )

        policy = await self.policy_for(principal_id, principal.tier)

        # Oversized requests are rejected before the counter check so they never cost quota.
        if request_size > policy.max_request_size_chars:
            increment_counter("quota.rejected.request_too_large")
            return Decision(
                allowed=False,
                principal_id=principal_id,
                action_kind=action_kind,
                tier=principal.tier,
                limit=policy.max_request_size_chars,
                used=request_size,
                reason=REASON_REQUEST_TOO_LARGE,
                degraded=usage.degraded,
            )

        limit = policy.limit_for(action_kind)
        used = usage.count(action_kind)
        if used >= limit:
            increment_counter("quota.rejected.quota_exceeded")
            logger.info(
                "quota_exceeded principal_id=%s action=%s tier=%s limit=%s",
                principal_id,
                action_kind,
                principal.tier,
                limit,
            )
            return Decision(
                allowed=False,
                principal_id=principal_id,
                action_kind=action_kind,
                tier=principal.tier,
                limit=limit,
                used=used,
                reason=REASON_QUOTA_EXCEEDED,
                degraded=usage.degraded,
            )

        increment_counter("quota.admitted")
        return Decision(
            allowed=True,
            principal_id=principal_id,
            action_kind=action_kind,
            tier=principal.tier,
            limit=limit,
            used=used,
            degraded=usage.degraded,
        )

    async def record_usage(
        self,
        context: PrincipalContext,
        action_kind: str,
        tokens_used: int = 0,
        *,
        principal_id: str | None = None,
    ) -> bool:
        # Call only after a confirmed downstream success; failures are logged, never raised.
        resolved = principal_id or self._resolver.resolve(context)
        try:
            await self._ledger.increment(resolved, action_kind, amount=1, tokens=max(0, int(tokens_used)))
        except StoreUnavailableError as exc:
            logger.error(
                "quota_record_usage_failed principal_id=%s action=%s",
                resolved,
                action_kind,
                exc_info=exc,
            )
            increment_counter("quota.record_failed")
            return False
        increment_counter("quota.recorded")
        return True


_quota_gate: QuotaGate | None = None


def get_quota_gate() -> QuotaGate:
    # Cache the gate (and its in-memory fallback counters) for reuse across requests.
    global _quota_gate
    if _quota_gate is None:
        from quotagate.persistence.db import SessionLocal

        _quota_gate = QuotaGate(session_factory=SessionLocal)
    return _quota_gate


def reset_quota_gate() -> None:
    # Reset cached services for deterministic tests.
    global _quota_gate
    _quota_gate = None


def _format_limit(value: int | None) -> str:
    return "unknown" if value is None else str(value)


def quota_headers(decision: Decision) -> dict[str, str]:
    # Render quota headers for responses with consistent casing.
    headers = {
        "X-Quota-Action": decision.action_kind,
        "X-Quota-Limit": _format_limit(decision.limit),
        "X-Quota-Used": str(decision.used),
        "X-Quota-Remaining": _format_limit(decision.remaining),
        "X-Quota-Tier": decision.tier or "unknown",
    }
    if decision.degraded:
        headers["X-Quota-Degraded"] = "true"
    return headers


def build_quota_exception(decision: Decision) -> HTTPException:
    # Construct stable payloads so callers can render upgrade prompts.
    if decision.reason == REASON_REQUEST_TOO_LARGE:
        return HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail={
                "code": REASON_REQUEST_TOO_LARGE,
                "message": "Request exceeds the maximum size for this tier",
                "limit": decision.limit,
                "tier": decision.tier,
            },
        )
    if decision.reason == REASON_STORE_UNAVAILABLE:
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "code": REASON_STORE_UNAVAILABLE,
                "message": "Entitlements are temporarily unavailable",
            },
        )
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "code": REASON_QUOTA_EXCEEDED,
            "message": "Daily quota exceeded",
            "action": decision.action_kind,
            "limit": decision.limit,
            "tier": decision.tier,
        },
        headers=quota_headers(decision),
    )
