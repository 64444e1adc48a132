from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.config import Settings, get_settings
from quotagate.domain.models import QuotaPolicyRow
from quotagate.persistence.repos.usage import delete_usage_before
from quotagate.persistence.upsert import dialect_insert
from quotagate.services.policy import build_default_policies


logger = logging.getLogger(__name__)


async def prune_usage_daily(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Drop usage rows once they fall outside the retention window; past days are never read.
    settings = get_settings()
    current = now or datetime.now(timezone.utc)
    cutoff = (current - timedelta(days=settings.usage_retention_days)).date()
    deleted = await delete_usage_before(session, cutoff)
    logger.info("usage_daily_pruned cutoff=%s deleted=%s", cutoff.isoformat(), deleted)
    return deleted


async def seed_quota_policies(session: AsyncSession, settings: Settings | None = None) -> list[str]:
    # Insert configured tier limits as policy rows; existing operator rows are left untouched.
    resolved = settings or get_settings()
    table = build_default_policies(resolved)
    existing = set((await session.execute(select(QuotaPolicyRow.tier))).scalars().all())
    inserted: list[str] = []
    for tier, policy in table.policies.items():
        if tier in existing:
            continue
        stmt = dialect_insert(session, QuotaPolicyRow).values(
            tier=tier,
            actions_per_day=dict(policy.actions_per_day),
            max_request_size_chars=policy.max_request_size_chars,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=[QuotaPolicyRow.tier])
        await session.execute(stmt)
        inserted.append(tier)
    return inserted
