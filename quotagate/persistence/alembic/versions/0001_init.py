"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _json_type() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "principals",
        sa.Column("principal_id", sa.String(), primary_key=True),
        sa.Column("tier", sa.String(), nullable=False, server_default="free"),
        sa.Column("subscription_status", sa.String(), nullable=False, server_default="inactive"),
        sa.Column("payment_customer_ref", sa.String(), nullable=True),
        sa.Column("subscription_ref", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # At most one principal per provider customer; NULLs stay unconstrained.
    op.create_index(
        "uq_principals_payment_customer_ref",
        "principals",
        ["payment_customer_ref"],
        unique=True,
    )

    op.create_table(
        "quota_policies",
        sa.Column("tier", sa.String(), primary_key=True),
        sa.Column("actions_per_day", _json_type(), nullable=False),
        sa.Column("max_request_size_chars", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "usage_daily",
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("action_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tokens", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("principal_id", "day", "action"),
    )
    # Retention pruning scans by day only.
    op.create_index("ix_usage_daily_day", "usage_daily", ["day"])

    op.create_table(
        "billing_events",
        sa.Column("event_id", sa.String(), primary_key=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("customer_ref", sa.String(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_billing_events_customer_ref", "billing_events", ["customer_ref"])


def downgrade() -> None:
    op.drop_index("ix_billing_events_customer_ref", table_name="billing_events")
    op.drop_table("billing_events")
    op.drop_index("ix_usage_daily_day", table_name="usage_daily")
    op.drop_table("usage_daily")
    op.drop_table("quota_policies")
    op.drop_index("uq_principals_payment_customer_ref", table_name="principals")
    op.drop_table("principals")
