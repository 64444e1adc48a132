from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.errors import DatabaseError
from quotagate.domain.models import Principal
from quotagate.persistence.upsert import dialect_insert


async def get_principal(session: AsyncSession, principal_id: str) -> Principal | None:
    result = await session.execute(select(Principal).where(Principal.principal_id == principal_id))
    return result.scalar_one_or_none()


async def get_principal_by_customer_ref(session: AsyncSession, customer_ref: str) -> Principal | None:
    result = await session.execute(
        select(Principal).where(Principal.payment_customer_ref == customer_ref)
    )
    return result.scalar_one_or_none()


async def insert_principal_if_absent(session: AsyncSession, principal_id: str) -> Principal:
    # Race-safe insert: concurrent first requests collapse onto the unique key.
    stmt = dialect_insert(session, Principal).values(principal_id=principal_id)
    stmt = stmt.on_conflict_do_nothing(index_elements=[Principal.principal_id])
    await session.execute(stmt)

    created = await get_principal(session, principal_id)
    if created is None:
        raise DatabaseError("principal insert failed unexpectedly")
    return created


async def update_principal_by_customer_ref(
    session: AsyncSession,
    customer_ref: str,
    *,
    tier: str,
    subscription_status: str,
    subscription_ref: str | None = None,
) -> int:
    # Single UPDATE keyed by the provider reference; rowcount 0 means no match.
    values: dict[str, str] = {"tier": tier, "subscription_status": subscription_status}
    if subscription_ref is not None:
        values["subscription_ref"] = subscription_ref
    result = await session.execute(
        update(Principal)
        .where(Principal.payment_customer_ref == customer_ref)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def set_customer_ref(session: AsyncSession, principal_id: str, customer_ref: str) -> int:
    result = await session.execute(
        update(Principal)
        .where(Principal.principal_id == principal_id)
        .values(payment_customer_ref=customer_ref)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
