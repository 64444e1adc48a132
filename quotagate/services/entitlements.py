from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotagate.core.errors import CustomerRefConflictError, EntitlementStoreUnavailableError
from quotagate.domain.models import Principal
from quotagate.domain.state import PrincipalRecord
from quotagate.persistence.repos.principals import (
    get_principal,
    get_principal_by_customer_ref,
    insert_principal_if_absent,
    set_customer_ref,
    update_principal_by_customer_ref,
)


logger = logging.getLogger(__name__)


def _to_record(row: Principal) -> PrincipalRecord:
    return PrincipalRecord(
        principal_id=row.principal_id,
        tier=row.tier,
        subscription_status=row.subscription_status,
        payment_customer_ref=row.payment_customer_ref,
        subscription_ref=row.subscription_ref,
    )


class EntitlementStore:
    """Durable tier and subscription state per principal.

    Every operation runs in its own short transaction expressed as a single
    upsert or update, so concurrent readers never block each other and
    concurrent first requests for one principal collapse onto one row.
    """

    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_or_create(self, principal_id: str) -> PrincipalRecord:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await insert_principal_if_absent(session, principal_id)
                    return _to_record(row)
        except SQLAlchemyError as exc:
            raise EntitlementStoreUnavailableError("entitlement store unavailable") from exc

    async def get(self, principal_id: str) -> PrincipalRecord | None:
        try:
            async with self._session_factory() as session:
                row = await get_principal(session, principal_id)
        except SQLAlchemyError as exc:
            raise EntitlementStoreUnavailableError("entitlement store unavailable") from exc
        return _to_record(row) if row is not None else None

    async def find_by_customer_ref(self, customer_ref: str) -> PrincipalRecord | None:
        try:
            async with self._session_factory() as session:
                row = await get_principal_by_customer_ref(session, customer_ref)
        except SQLAlchemyError as exc:
            raise EntitlementStoreUnavailableError("entitlement store unavailable") from exc
        return _to_record(row) if row is not None else None

    async def apply_transition(
        self,
        customer_ref: str,
        new_tier: str,
        new_status: str,
        subscription_ref: str | None = None,
    ) -> bool:
        # Last-write-wins per field: replaying a transition converges on the same row state.
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    matched = await update_principal_by_customer_ref(
                        session,
                        customer_ref,
                        tier=new_tier,
                        subscription_status=new_status,
                        subscription_ref=subscription_ref,
                    )
        except SQLAlchemyError as exc:
            raise EntitlementStoreUnavailableError("entitlement transition failed") from exc

        if matched == 0:
            logger.warning(
                "entitlement_transition_unmatched customer_ref=%s tier=%s status=%s",
                customer_ref,
                new_tier,
                new_status,
            )
            return False
        logger.info(
            "entitlement_transition_applied customer_ref=%s tier=%s status=%s",
            customer_ref,
            new_tier,
            new_status,
        )
        return True

    async def link_customer_ref(self, principal_id: str, customer_ref: str) -> PrincipalRecord:
        # Associate the provider customer with a principal; re-linking the same pair is a no-op.
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    owner = await get_principal_by_customer_ref(session, customer_ref)
                    if owner is not None and owner.principal_id != principal_id:
                        raise CustomerRefConflictError(
                            f"customer_ref already linked to {owner.principal_id}"
                        )
                    row = await insert_principal_if_absent(session, principal_id)
                    if row.payment_customer_ref not in (None, customer_ref):
                        logger.info(
                            "entitlement_customer_ref_relinked principal_id=%s previous=%s",
                            principal_id,
                            row.payment_customer_ref,
                        )
                    await set_customer_ref(session, principal_id, customer_ref)
                    await session.refresh(row)
                    return _to_record(row)
        except IntegrityError as exc:
            # A concurrent link claimed the reference between our check and update.
            raise CustomerRefConflictError("customer_ref already linked") from exc
        except SQLAlchemyError as exc:
            raise EntitlementStoreUnavailableError("entitlement store unavailable") from exc
