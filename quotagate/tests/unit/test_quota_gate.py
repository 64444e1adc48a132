from __future__ import annotations

from datetime import datetime, timezone
import warnings

import pytest

from quotagate.core.config import Settings
from quotagate.domain.models import QuotaPolicyRow
from quotagate.domain.state import ACTION_CHAT, ACTION_WEB_SEARCH, TIER_FREE
from quotagate.persistence.db import SessionLocal
from quotagate.services.identity import PrincipalContext
from quotagate.services.quota import (
    REASON_QUOTA_EXCEEDED,
    REASON_REQUEST_TOO_LARGE,
    REASON_STORE_UNAVAILABLE,
    QuotaGate,
    build_quota_exception,
    quota_headers,
)


DAY_ONE = datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)
DAY_TWO = datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc)
USER = PrincipalContext(user_id="p1")


class _Clock:
    # Mutable clock shared by the gate, ledger and resolver.
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _gate(clock: _Clock, **overrides) -> QuotaGate:
    settings = Settings(policy_cache_ttl_s=0, **overrides)
    return QuotaGate(session_factory=SessionLocal, settings=settings, time_provider=clock)


async def _admit_and_succeed(gate: QuotaGate, context: PrincipalContext, times: int) -> None:
    for _ in range(times):
        decision = await gate.check(context, ACTION_CHAT, 10)
        assert decision.allowed
        assert await gate.record_usage(context, ACTION_CHAT, principal_id=decision.principal_id)


@pytest.mark.asyncio
async def test_sixth_free_chat_on_same_day_is_rejected() -> None:
    gate = _gate(_Clock(DAY_ONE))
    await _admit_and_succeed(gate, USER, 5)

    decision = await gate.check(USER, ACTION_CHAT, 10)
    assert decision.allowed is False
    assert decision.reason == REASON_QUOTA_EXCEEDED
    assert decision.limit == 5
    assert decision.tier == TIER_FREE
    assert decision.used == 5
    assert decision.remaining == 0


@pytest.mark.asyncio
async def test_new_utc_day_admits_with_fresh_counter() -> None:
    clock = _Clock(DAY_ONE)
    gate = _gate(clock)
    await _admit_and_succeed(gate, USER, 5)
    assert (await gate.check(USER, ACTION_CHAT, 10)).allowed is False

    clock.now = DAY_TWO
    decision = await gate.check(USER, ACTION_CHAT, 10)
    assert decision.allowed is True
    assert decision.used == 0


@pytest.mark.asyncio
async def test_unconfirmed_calls_are_not_charged() -> None:
    gate = _gate(_Clock(DAY_ONE))
    admitted = [await gate.check(USER, ACTION_CHAT, 10) for _ in range(3)]
    assert all(decision.allowed for decision in admitted)

    # Only two of the three admitted calls succeeded downstream.
    for decision in admitted[:2]:
        await gate.record_usage(USER, ACTION_CHAT, principal_id=decision.principal_id)

    usage = await gate.ledger.get_today_usage(admitted[0].principal_id)
    assert usage.count(ACTION_CHAT) == 2


@pytest.mark.asyncio
async def test_check_does_not_consume_quota() -> None:
    gate = _gate(_Clock(DAY_ONE))
    for _ in range(10):
        assert (await gate.check(USER, ACTION_CHAT, 10)).allowed
    usage = await gate.ledger.get_today_usage("user:p1")
    assert usage.count(ACTION_CHAT) == 0


@pytest.mark.asyncio
async def test_actions_have_independent_limits() -> None:
    gate = _gate(_Clock(DAY_ONE))
    for _ in range(2):
        decision = await gate.check(USER, ACTION_WEB_SEARCH, 10)
        await gate.record_usage(USER, ACTION_WEB_SEARCH, principal_id=decision.principal_id)

    web = await gate.check(USER, ACTION_WEB_SEARCH, 10)
    assert web.allowed is False
    assert web.limit == 2
    assert (await gate.check(USER, ACTION_CHAT, 10)).allowed is True


@pytest.mark.asyncio
async def test_oversized_request_is_rejected_before_counting() -> None:
    gate = _gate(_Clock(DAY_ONE))
    decision = await gate.check(USER, ACTION_CHAT, 2001)
    assert decision.allowed is False
    assert decision.reason == REASON_REQUEST_TOO_LARGE
    assert decision.limit == 2000

    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        exc = build_quota_exception(decision)
    assert exc.status_code == 413
    assert exc.detail["code"] == REASON_REQUEST_TOO_LARGE


@pytest.mark.asyncio
async def test_unknown_caller_gets_restricted_policy() -> None:
    gate = _gate(_Clock(DAY_ONE), free_chat_daily_limit=5, premium_chat_daily_limit=3)
    decision = await gate.check(PrincipalContext(), ACTION_CHAT, 10)
    assert decision.principal_id == "unknown"
    assert decision.limit == 3


@pytest.mark.asyncio
async def test_policy_rows_override_configured_limits() -> None:
    async with SessionLocal() as session:
        session.add(QuotaPolicyRow(tier=TIER_FREE, actions_per_day={ACTION_CHAT: 1}, max_request_size_chars=500))
        await session.commit()

    gate = _gate(_Clock(DAY_ONE))
    await _admit_and_succeed(gate, USER, 1)
    decision = await gate.check(USER, ACTION_CHAT, 10)
    assert decision.allowed is False
    assert decision.limit == 1


@pytest.mark.asyncio
async def test_entitlement_outage_fails_closed(broken_session_factory) -> None:
    gate = QuotaGate(
        session_factory=broken_session_factory,
        settings=Settings(policy_cache_ttl_s=0),
        time_provider=_Clock(DAY_ONE),
    )
    decision = await gate.check(USER, ACTION_CHAT, 10)
    assert decision.allowed is False
    assert decision.reason == REASON_STORE_UNAVAILABLE
    assert build_quota_exception(decision).status_code == 503


@pytest.mark.asyncio
async def test_quota_exceeded_exception_carries_upgrade_details() -> None:
    gate = _gate(_Clock(DAY_ONE))
    await _admit_and_succeed(gate, USER, 5)
    decision = await gate.check(USER, ACTION_CHAT, 10)

    exc = build_quota_exception(decision)
    assert exc.status_code == 402
    assert exc.detail == {
        "code": REASON_QUOTA_EXCEEDED,
        "message": "Daily quota exceeded",
        "action": ACTION_CHAT,
        "limit": 5,
        "tier": TIER_FREE,
    }
    headers = quota_headers(decision)
    assert headers["X-Quota-Remaining"] == "0"
    assert headers["X-Quota-Tier"] == TIER_FREE
