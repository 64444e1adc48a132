from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timezone
import logging
from typing import Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotagate.core.errors import StoreUnavailableError
from quotagate.domain.state import ACTION_KINDS, UsageRecord
from quotagate.persistence.repos.usage import ensure_usage_rows, increment_usage, list_usage_rows
from quotagate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Errors that indicate the store is unreachable rather than a programming mistake.
_STORE_ERRORS = (SQLAlchemyError, OSError)


def _utc_now() -> datetime:
    # Use UTC so day buckets roll over at the same instant for every caller.
    return datetime.now(timezone.utc)


def utc_day(now: datetime) -> date:
    return now.astimezone(timezone.utc).date()


class InMemoryUsageCounters:
    """Process-local counters used while the durable store is unavailable.

    Counts reset on restart and are not shared across workers, so quotas
    enforced from here are approximate. They are never merged back into the
    durable ledger.
    """

    def __init__(self) -> None:
        self._counts: dict[tuple[str, date, str], int] = defaultdict(int)
        self._tokens: dict[tuple[str, date, str], int] = defaultdict(int)

    def increment(self, principal_id: str, day: date, action: str, *, amount: int, tokens: int) -> None:
        # No await between read and write, so the event loop cannot interleave updates.
        key = (principal_id, day, action)
        self._counts[key] += amount
        self._tokens[key] += tokens

    def snapshot(self, principal_id: str, day: date, actions: Iterable[str]) -> UsageRecord:
        counts = {action: self._counts.get((principal_id, day, action), 0) for action in actions}
        for (pid, bucket_day, action), value in self._counts.items():
            if pid == principal_id and bucket_day == day:
                counts[action] = value
        tokens = sum(
            value
            for (pid, bucket_day, _action), value in self._tokens.items()
            if pid == principal_id and bucket_day == day
        )
        return UsageRecord(
            principal_id=principal_id,
            day=day,
            count_per_action=counts,
            tokens_consumed=tokens,
            degraded=True,
        )

    def prune_before(self, cutoff: date) -> None:
        # Drop stale buckets so a long outage does not grow memory unbounded.
        for store in (self._counts, self._tokens):
            for key in [key for key in store if key[1] < cutoff]:
                store.pop(key, None)


class UsageLedger:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        time_provider: Callable[[], datetime] | None = None,
        fallback_enabled: bool = True,
        actions: Iterable[str] = ACTION_KINDS,
    ) -> None:
        self._session_factory = session_factory
        self._time_provider = time_provider or _utc_now
        self._fallback_enabled = fallback_enabled
        self._actions = tuple(actions)
        self._memory = InMemoryUsageCounters()

    def today(self) -> date:
        return utc_day(self._time_provider())

    async def get_today_usage(self, principal_id: str) -> UsageRecord:
        # Lazily create zeroed rows for today, then read the current counters.
        day = self.today()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await ensure_usage_rows(session, principal_id, day, self._actions)
                    rows = await list_usage_rows(session, principal_id, day)
        except _STORE_ERRORS as exc:
            self._degrade("get_today_usage", principal_id, exc)
            self._memory.prune_before(day)
            return self._memory.snapshot(principal_id, day, self._actions)

        counts = {action: 0 for action in self._actions}
        tokens = 0
        for row in rows:
            counts[row.action] = int(row.action_count or 0)
            tokens += int(row.tokens or 0)
        return UsageRecord(principal_id=principal_id, day=day, count_per_action=counts, tokens_consumed=tokens)

    async def increment(
        self,
        principal_id: str,
        action_kind: str,
        amount: int = 1,
        tokens: int = 0,
    ) -> None:
        # Counters only move forward; negative deltas are rejected outright.
        if amount < 0 or tokens < 0:
            raise ValueError("usage increments must be non-negative")
        day = self.today()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await increment_usage(
                        session,
                        principal_id,
                        day,
                        action_kind,
                        amount=amount,
                        tokens=tokens,
                    )
        except _STORE_ERRORS as exc:
            self._degrade("increment", principal_id, exc)
            self._memory.increment(principal_id, day, action_kind, amount=amount, tokens=tokens)

    def _degrade(self, operation: str, principal_id: str, exc: BaseException) -> None:
        if not self._fallback_enabled:
            raise StoreUnavailableError(f"usage store unavailable during {operation}") from exc
        increment_counter("ledger.degraded")
        logger.warning(
            "usage_ledger_degraded operation=%s principal_id=%s",
            operation,
            principal_id,
            exc_info=exc,
        )
