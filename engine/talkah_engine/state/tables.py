"""SQLAlchemy 2.0 ORM table definitions for the subscription state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that round-trips as UTC on every backend.

    PostgreSQL stores ``timestamptz`` natively.  SQLite has no timezone
    support, so values are stored as naive UTC and re-tagged on load.
    """

    impl = DateTime
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> Any:
        return dialect.type_descriptor(DateTime(timezone=True))

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all Talkah tables."""


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------


class PlanTable(Base):
    """Subscription tiers.  A ``NULL`` limit column means unlimited."""

    __tablename__ = "plans"

    plan_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    features_json: Mapped[list[str] | None] = mapped_column(_JsonType, nullable=True)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    calls_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    texts_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    emails_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_monthly_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_yearly_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stripe_price_id_monthly: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_price_id_yearly: Mapped[str | None] = mapped_column(String(256), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("calls_limit IS NULL OR calls_limit >= 0", name="ck_plans_calls_limit"),
        CheckConstraint("texts_limit IS NULL OR texts_limit >= 0", name="ck_plans_texts_limit"),
        CheckConstraint("emails_limit IS NULL OR emails_limit >= 0", name="ck_plans_emails_limit"),
        CheckConstraint("rank >= 0", name="ck_plans_rank"),
        Index("ix_plans_rank", "rank"),
    )


# ---------------------------------------------------------------------------
# Per-user subscription state
# ---------------------------------------------------------------------------


class UserSubscriptionTable(Base):
    """Exactly one row per user, created at signup and never deleted."""

    __tablename__ = "user_subscriptions"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_id: Mapped[str] = mapped_column(String(32), ForeignKey("plans.plan_id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    billing_interval: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    billing_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    billing_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    external_customer_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    external_subscription_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    plan_as_of: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status_as_of: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'past_due', 'canceled', 'trialing')",
            name="ck_user_subscriptions_status",
        ),
        CheckConstraint(
            "billing_interval IN ('monthly', 'yearly')",
            name="ck_user_subscriptions_interval",
        ),
        CheckConstraint(
            "billing_period_end > billing_period_start",
            name="ck_user_subscriptions_period",
        ),
        Index("ix_user_subscriptions_customer", "external_customer_ref", unique=True),
        Index("ix_user_subscriptions_period_end", "billing_period_end"),
    )


class PendingPlanChangeTable(Base):
    """Deferred plan changes.  At most one ``pending`` row per user."""

    __tablename__ = "pending_plan_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("user_subscriptions.user_id"), nullable=False)
    target_plan_id: Mapped[str] = mapped_column(String(32), ForeignKey("plans.plan_id"), nullable=False)
    target_billing_interval: Mapped[str] = mapped_column(String(16), nullable=False)
    change_type: Mapped[str] = mapped_column(String(32), nullable=False)
    effective_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "change_type IN ('upgrade', 'downgrade', 'interval_switch')",
            name="ck_pending_plan_changes_type",
        ),
        CheckConstraint(
            "status IN ('pending', 'completed', 'cancelled', 'failed')",
            name="ck_pending_plan_changes_status",
        ),
        Index(
            "uq_pending_plan_changes_live",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_pending_plan_changes_user", "user_id", "requested_at"),
    )


# ---------------------------------------------------------------------------
# Usage counters
# ---------------------------------------------------------------------------


class UsageCounterTable(Base):
    """Per-user, per-period, per-feature consumption counter.

    Only the current period's rows are incremented.  Closed periods are
    retained for history.
    """

    __tablename__ = "usage_counters"

    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("user_subscriptions.user_id"), nullable=False)
    period_key: Mapped[str] = mapped_column(String(32), nullable=False)
    feature: Mapped[str] = mapped_column(String(16), nullable=False)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("user_id", "period_key", "feature"),
        CheckConstraint("used >= 0", name="ck_usage_counters_used"),
        CheckConstraint("feature IN ('calls', 'texts', 'emails')", name="ck_usage_counters_feature"),
        Index("ix_usage_counters_user_period", "user_id", "period_start"),
    )


# ---------------------------------------------------------------------------
# Reconciliation audit log
# ---------------------------------------------------------------------------


class ReconciliationEventTable(Base):
    """Append-only record of every applied or ignored processor event.

    The unique ``external_event_id`` is the deduplication key.
    """

    __tablename__ = "reconciliation_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("outcome IN ('applied', 'ignored')", name="ck_reconciliation_events_outcome"),
        Index("ix_reconciliation_events_user", "user_id", "occurred_at"),
    )
