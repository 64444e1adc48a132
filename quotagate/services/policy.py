from __future__ import annotations

from dataclasses import dataclass, field
import logging
from types import MappingProxyType
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.config import Settings
from quotagate.domain.models import QuotaPolicyRow
from quotagate.domain.state import ACTION_CHAT, ACTION_KINDS, ACTION_WEB_SEARCH, TIER_FREE, TIER_PREMIUM


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaPolicy:
    # Numeric limits for one tier; there is no "unlimited" value.
    tier: str
    actions_per_day: Mapping[str, int]
    max_request_size_chars: int

    def limit_for(self, action_kind: str) -> int:
        # Unlisted actions inherit the conservative fallback, never unlimited.
        if action_kind in self.actions_per_day:
            return int(self.actions_per_day[action_kind])
        return int(FALLBACK_POLICY.actions_per_day.get(action_kind, 0))

    def as_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "actions_per_day": dict(self.actions_per_day),
            "max_request_size_chars": self.max_request_size_chars,
        }


def _policy(tier: str, actions: Mapping[str, int], max_chars: int) -> QuotaPolicy:
    # Freeze limits so cached tables cannot be mutated by callers.
    frozen = MappingProxyType({key: max(0, int(value)) for key, value in actions.items()})
    return QuotaPolicy(tier=tier, actions_per_day=frozen, max_request_size_chars=max(0, int(max_chars)))


# Last line of defence when the free tier itself is missing from configuration.
FALLBACK_POLICY = _policy(
    TIER_FREE,
    {ACTION_CHAT: 5, ACTION_WEB_SEARCH: 1},
    2000,
)


@dataclass(frozen=True)
class PolicyTable:
    policies: Mapping[str, QuotaPolicy] = field(default_factory=dict)

    def resolve(self, tier: str | None) -> QuotaPolicy:
        # Total lookup: unknown tiers fall back to free, a missing free tier to the hardcoded default.
        if tier is not None and tier in self.policies:
            return self.policies[tier]
        if tier is not None and tier != TIER_FREE:
            logger.warning("quota_policy_unknown_tier tier=%s", tier)
        return self.policies.get(TIER_FREE, FALLBACK_POLICY)

    def restricted(self) -> QuotaPolicy:
        # Element-wise minimum across tiers for callers we could not identify.
        candidates = list(self.policies.values()) or [FALLBACK_POLICY]
        actions = set(ACTION_KINDS)
        for policy in candidates:
            actions.update(policy.actions_per_day)
        limits = {action: min(policy.limit_for(action) for policy in candidates) for action in actions}
        max_chars = min(policy.max_request_size_chars for policy in candidates)
        return _policy("restricted", limits, max_chars)

    def as_list(self) -> list[dict[str, Any]]:
        return [self.policies[tier].as_dict() for tier in sorted(self.policies)]


def build_default_policies(settings: Settings) -> PolicyTable:
    # Configured tier limits; DB rows may override them per tier.
    return PolicyTable(
        policies={
            TIER_FREE: _policy(
                TIER_FREE,
                {
                    ACTION_CHAT: settings.free_chat_daily_limit,
                    ACTION_WEB_SEARCH: settings.free_web_search_daily_limit,
                },
                settings.free_max_request_chars,
            ),
            TIER_PREMIUM: _policy(
                TIER_PREMIUM,
                {
                    ACTION_CHAT: settings.premium_chat_daily_limit,
                    ACTION_WEB_SEARCH: settings.premium_web_search_daily_limit,
                },
                settings.premium_max_request_chars,
            ),
        }
    )


def merge_policy_rows(base: PolicyTable, rows: list[QuotaPolicyRow]) -> PolicyTable:
    # Overlay operator rows; malformed rows are skipped so the base limits still apply.
    policies = dict(base.policies)
    for row in rows:
        if not isinstance(row.actions_per_day, dict):
            logger.warning("quota_policy_row_invalid tier=%s", row.tier)
            continue
        try:
            actions = {str(key): int(value) for key, value in row.actions_per_day.items()}
        except (TypeError, ValueError):
            logger.warning("quota_policy_row_invalid tier=%s", row.tier)
            continue
        inherited = policies.get(row.tier)
        if inherited is not None:
            actions = {**dict(inherited.actions_per_day), **actions}
        policies[row.tier] = _policy(row.tier, actions, row.max_request_size_chars)
    return PolicyTable(policies=policies)


async def load_policy_table(session: AsyncSession, settings: Settings) -> PolicyTable:
    # Read operator overrides from quota_policies on top of configured defaults.
    result = await session.execute(select(QuotaPolicyRow).order_by(QuotaPolicyRow.tier))
    return merge_policy_rows(build_default_policies(settings), list(result.scalars().all()))
