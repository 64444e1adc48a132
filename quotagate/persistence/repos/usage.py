from __future__ import annotations

from datetime import date
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.domain.models import UsageDaily
from quotagate.persistence.upsert import dialect_insert


_USAGE_KEY = [UsageDaily.principal_id, UsageDaily.day, UsageDaily.action]


async def ensure_usage_rows(
    session: AsyncSession,
    principal_id: str,
    day: date,
    actions: Iterable[str],
) -> None:
    # Insert zeroed rows for the day; existing counters are left untouched.
    rows = [
        {"principal_id": principal_id, "day": day, "action": action, "action_count": 0, "tokens": 0}
        for action in actions
    ]
    if not rows:
        return
    stmt = dialect_insert(session, UsageDaily).values(rows)
    stmt = stmt.on_conflict_do_nothing(index_elements=_USAGE_KEY)
    await session.execute(stmt)


async def increment_usage(
    session: AsyncSession,
    principal_id: str,
    day: date,
    action: str,
    *,
    amount: int,
    tokens: int,
) -> None:
    # One upsert statement per metered event; the store serializes concurrent increments.
    stmt = dialect_insert(session, UsageDaily).values(
        principal_id=principal_id,
        day=day,
        action=action,
        action_count=amount,
        tokens=tokens,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=_USAGE_KEY,
        set_={
            "action_count": UsageDaily.action_count + stmt.excluded.action_count,
            "tokens": UsageDaily.tokens + stmt.excluded.tokens,
        },
    )
    await session.execute(stmt)


async def list_usage_rows(session: AsyncSession, principal_id: str, day: date) -> list[UsageDaily]:
    result = await session.execute(
        select(UsageDaily)
        .where(UsageDaily.principal_id == principal_id, UsageDaily.day == day)
        .order_by(UsageDaily.action)
    )
    return list(result.scalars().all())


async def delete_usage_before(session: AsyncSession, cutoff: date) -> int:
    result = await session.execute(delete(UsageDaily).where(UsageDaily.day < cutoff))
    return int(result.rowcount or 0)
