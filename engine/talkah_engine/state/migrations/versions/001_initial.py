"""Initial subscription state schema.

Creates ``plans``, ``user_subscriptions``, ``pending_plan_changes``,
``usage_counters`` and ``reconciliation_events``.  A partial unique index
keeps at most one live pending change per user.

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JsonType = JSONB().with_variant(sa.JSON(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "plans",
        sa.Column("plan_id", sa.String(32), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("features_json", _JsonType, nullable=True),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("calls_limit", sa.Integer(), nullable=True),
        sa.Column("texts_limit", sa.Integer(), nullable=True),
        sa.Column("emails_limit", sa.Integer(), nullable=True),
        sa.Column("price_monthly_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_yearly_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stripe_price_id_monthly", sa.String(256), nullable=True),
        sa.Column("stripe_price_id_yearly", sa.String(256), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("calls_limit IS NULL OR calls_limit >= 0", name="ck_plans_calls_limit"),
        sa.CheckConstraint("texts_limit IS NULL OR texts_limit >= 0", name="ck_plans_texts_limit"),
        sa.CheckConstraint("emails_limit IS NULL OR emails_limit >= 0", name="ck_plans_emails_limit"),
        sa.CheckConstraint("rank >= 0", name="ck_plans_rank"),
    )
    op.create_index("ix_plans_rank", "plans", ["rank"])

    op.create_table(
        "user_subscriptions",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("plan_id", sa.String(32), sa.ForeignKey("plans.plan_id"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("billing_interval", sa.String(16), nullable=False, server_default="monthly"),
        sa.Column("billing_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("billing_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("external_customer_ref", sa.String(256), nullable=True),
        sa.Column("external_subscription_ref", sa.String(256), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("plan_as_of", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_as_of", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('active', 'past_due', 'canceled', 'trialing')",
            name="ck_user_subscriptions_status",
        ),
        sa.CheckConstraint("billing_interval IN ('monthly', 'yearly')", name="ck_user_subscriptions_interval"),
        sa.CheckConstraint("billing_period_end > billing_period_start", name="ck_user_subscriptions_period"),
    )
    op.create_index(
        "ix_user_subscriptions_customer",
        "user_subscriptions",
        ["external_customer_ref"],
        unique=True,
    )
    op.create_index("ix_user_subscriptions_period_end", "user_subscriptions", ["billing_period_end"])

    op.create_table(
        "pending_plan_changes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("user_subscriptions.user_id"), nullable=False),
        sa.Column("target_plan_id", sa.String(32), sa.ForeignKey("plans.plan_id"), nullable=False),
        sa.Column("target_billing_interval", sa.String(16), nullable=False),
        sa.Column("change_type", sa.String(32), nullable=False),
        sa.Column("effective_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("requested_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "change_type IN ('upgrade', 'downgrade', 'interval_switch')",
            name="ck_pending_plan_changes_type",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'cancelled', 'failed')",
            name="ck_pending_plan_changes_status",
        ),
    )
    op.create_index(
        "uq_pending_plan_changes_live",
        "pending_plan_changes",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )
    op.create_index("ix_pending_plan_changes_user", "pending_plan_changes", ["user_id", "requested_at"])

    op.create_table(
        "usage_counters",
        sa.Column("user_id", sa.String(64), sa.ForeignKey("user_subscriptions.user_id"), nullable=False),
        sa.Column("period_key", sa.String(32), nullable=False),
        sa.Column("feature", sa.String(16), nullable=False),
        sa.Column("used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "period_key", "feature"),
        sa.CheckConstraint("used >= 0", name="ck_usage_counters_used"),
        sa.CheckConstraint("feature IN ('calls', 'texts', 'emails')", name="ck_usage_counters_feature"),
    )
    op.create_index("ix_usage_counters_user_period", "usage_counters", ["user_id", "period_start"])

    op.create_table(
        "reconciliation_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("payload", _JsonType, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.CheckConstraint("outcome IN ('applied', 'ignored')", name="ck_reconciliation_events_outcome"),
    )
    op.create_index("ix_reconciliation_events_user", "reconciliation_events", ["user_id", "occurred_at"])


def downgrade() -> None:
    op.drop_index("ix_reconciliation_events_user", table_name="reconciliation_events")
    op.drop_table("reconciliation_events")
    op.drop_index("ix_usage_counters_user_period", table_name="usage_counters")
    op.drop_table("usage_counters")
    op.drop_index("ix_pending_plan_changes_user", table_name="pending_plan_changes")
    op.drop_index("uq_pending_plan_changes_live", table_name="pending_plan_changes")
    op.drop_table("pending_plan_changes")
    op.drop_index("ix_user_subscriptions_period_end", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_customer", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")
    op.drop_index("ix_plans_rank", table_name="plans")
    op.drop_table("plans")
