from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.domain.models import BillingEvent
from quotagate.persistence.upsert import dialect_insert


async def get_billing_event(session: AsyncSession, event_id: str) -> BillingEvent | None:
    result = await session.execute(select(BillingEvent).where(BillingEvent.event_id == event_id))
    return result.scalar_one_or_none()


async def record_billing_event(
    session: AsyncSession,
    *,
    event_id: str,
    event_type: str,
    customer_ref: str | None,
    outcome: str,
) -> None:
    # First write wins; a racing redelivery of the same id is dropped silently.
    stmt = dialect_insert(session, BillingEvent).values(
        event_id=event_id,
        event_type=event_type,
        customer_ref=customer_ref,
        outcome=outcome,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[BillingEvent.event_id])
    await session.execute(stmt)
