from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Prefer JSONB on Postgres while keeping the schema portable for SQLite test databases.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Principal(Base):
    __tablename__ = "principals"
    __table_args__ = (
        Index(
            "uq_principals_payment_customer_ref",
            "payment_customer_ref",
            unique=True,
        ),
    )

    # Canonical caller identity (user:<id>, anon:<digest> or the unknown sentinel).
    principal_id: Mapped[str] = mapped_column(String, primary_key=True)
    tier: Mapped[str] = mapped_column(String, default="free", server_default="free", nullable=False)
    # Provider statuses are stored verbatim on subscription updates.
    subscription_status: Mapped[str] = mapped_column(
        String, default="inactive", server_default="inactive", nullable=False
    )
    # Webhooks key off the provider customer id, never the principal id.
    payment_customer_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class QuotaPolicyRow(Base):
    __tablename__ = "quota_policies"

    # Operator-managed overrides of the configured tier limits.
    tier: Mapped[str] = mapped_column(String, primary_key=True)
    actions_per_day: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    max_request_size_chars: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageDaily(Base):
    __tablename__ = "usage_daily"
    __table_args__ = (Index("ix_usage_daily_day", "day"),)

    # One row per principal/day/action so each metered event is a single atomic upsert.
    principal_id: Mapped[str] = mapped_column(String, primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    action: Mapped[str] = mapped_column(String, primary_key=True)
    action_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    tokens: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BillingEvent(Base):
    __tablename__ = "billing_events"

    # Provider event ids already applied; redeliveries short-circuit to a no-op.
    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    customer_ref: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
