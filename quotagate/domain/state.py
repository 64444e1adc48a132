from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date


TIER_FREE = "free"
TIER_PREMIUM = "premium"

STATUS_INACTIVE = "inactive"
STATUS_ACTIVE = "active"
STATUS_CANCELED = "canceled"
STATUS_TRIALING = "trialing"
# Provider statuses that keep a principal on the premium tier.
PREMIUM_STATUSES = frozenset({STATUS_ACTIVE, STATUS_TRIALING})

ACTION_CHAT = "chat"
ACTION_WEB_SEARCH = "web_search"
ACTION_KINDS = (ACTION_CHAT, ACTION_WEB_SEARCH)

UNKNOWN_PRINCIPAL_ID = "unknown"


@dataclass(frozen=True)
class PrincipalRecord:
    # Detached snapshot of a principals row, safe to share across sessions.
    principal_id: str
    tier: str
    subscription_status: str
    payment_customer_ref: str | None = None
    subscription_ref: str | None = None


@dataclass(frozen=True)
class UsageRecord:
    # Aggregated counters for one principal on one UTC day.
    principal_id: str
    day: date
    count_per_action: dict[str, int] = field(default_factory=dict)
    tokens_consumed: int = 0
    # True when served from process-local counters during a store outage.
    degraded: bool = False

    def count(self, action_kind: str) -> int:
        return int(self.count_per_action.get(action_kind, 0))
