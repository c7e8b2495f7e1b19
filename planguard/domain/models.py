from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    func,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_BigId = BigInteger().with_variant(Integer, "sqlite")
_Json = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Identity-provider tenant id carried in auth context and provider metadata.
    external_tenant_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    organization_name: Mapped[str] = mapped_column(String)
    primary_admin_email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Tenants are never deleted; status flips instead.
    status: Mapped[str] = mapped_column(String, default="Active")
    onboarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # One row per provider subscription; a new provider id always means a new row.
        UniqueConstraint(
            "tenant_id",
            "external_subscription_id",
            name="uq_subscriptions_tenant_external",
        ),
        Index("ix_subscriptions_tenant_status_start", "tenant_id", "status", "start_date"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    tier: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Prior-tier entitlement survives cancellation until this instant.
    grace_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    external_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Null for local-only subscriptions (trials and manual plans).
    external_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BillingEvent(Base):
    __tablename__ = "billing_events"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    # Provider event id; uniqueness is the idempotency guarantee.
    external_event_id: Mapped[str] = mapped_column(String, unique=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    # Maintained per-tenant counts; "lifetime" rows track standing artifact counts.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    resource_kind: Mapped[str] = mapped_column(String, primary_key=True)
    period_type: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    count: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageEvent(Base):
    __tablename__ = "usage_events"
    __table_args__ = (
        Index("ix_usage_events_window", "tenant_id", "resource_kind", "occurred_at"),
    )

    # Raw metered events for the trailing rate window and counter reconciliation.
    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    resource_kind: Mapped[str] = mapped_column(String)
    amount: Mapped[int] = mapped_column(BigInteger, default=1)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class AiUsageLedger(Base):
    __tablename__ = "ai_usage_ledgers"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    max_requests_per_hour: Mapped[int] = mapped_column(Integer)
    max_tokens_per_request: Mapped[int] = mapped_column(Integer)
    # Zero disables the monthly budget.
    monthly_token_budget: Mapped[int] = mapped_column(BigInteger, default=0)
    tokens_used_this_month: Mapped[int] = mapped_column(BigInteger, default=0)
    # Lazily compared against the current (month, year); no scheduler resets it.
    last_monthly_reset: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Null tenant_id is allowed for provider events that never resolved a tenant.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_Json, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
