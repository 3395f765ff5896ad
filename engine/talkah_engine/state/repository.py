"""Repository layer wrapping the subscription state tables.

Each repository operates on a caller-provided :class:`AsyncSession` and
never commits; the caller owns the transaction boundary.  Mutating methods
``flush()`` so that constraint violations surface at the call site.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from talkah_engine.errors import IntegrityViolation
from talkah_engine.models.plan import BillingInterval, Feature, Plan, limit_from_column, limit_to_column
from talkah_engine.models.subscription import (
    BillingPeriod,
    ChangeType,
    PendingChangeStatus,
    PendingPlanChange,
    SubscriptionStatus,
    UserSubscriptionState,
)
from talkah_engine.models.usage import PeriodUsage
from talkah_engine.state.database import dialect_name
from talkah_engine.state.tables import (
    PendingPlanChangeTable,
    PlanTable,
    ReconciliationEventTable,
    UsageCounterTable,
    UserSubscriptionTable,
)

logger = logging.getLogger(__name__)

_LIMIT_COLUMNS: dict[Feature, str] = {
    Feature.CALLS: "calls_limit",
    Feature.TEXTS: "texts_limit",
    Feature.EMAILS: "emails_limit",
}


# ---------------------------------------------------------------------------
# Dialect helpers
# ---------------------------------------------------------------------------


def _insert_for(session: AsyncSession, table: Any) -> Any:
    if "postgresql" in dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        return _pg_insert(table)
    from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

    return _sqlite_insert(table)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: ``ON CONFLICT DO UPDATE`` on PostgreSQL and SQLite.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    """
    stmt = _insert_for(session, table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: getattr(stmt.excluded, col) for col in update_columns},
    )
    return await session.execute(stmt)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    rows: list[dict[str, Any]],
    index_elements: list[str],
) -> Any:
    """Dialect-aware multi-row insert with ``ON CONFLICT DO NOTHING``."""
    stmt = _insert_for(session, table).values(rows)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def plan_from_row(row: PlanTable) -> Plan:
    return Plan(
        id=row.plan_id,
        name=row.name,
        description=row.description,
        features=list(row.features_json or []),
        limits={feature: limit_from_column(getattr(row, column)) for feature, column in _LIMIT_COLUMNS.items()},
        price_monthly_cents=row.price_monthly_cents,
        price_yearly_cents=row.price_yearly_cents,
        stripe_price_id_monthly=row.stripe_price_id_monthly,
        stripe_price_id_yearly=row.stripe_price_id_yearly,
        rank=row.rank,
        active=row.active,
    )


def subscription_from_row(row: UserSubscriptionTable) -> UserSubscriptionState:
    return UserSubscriptionState(
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        billing_interval=BillingInterval(row.billing_interval),
        billing_period=BillingPeriod(start=row.billing_period_start, end=row.billing_period_end),
        external_customer_ref=row.external_customer_ref,
        external_subscription_ref=row.external_subscription_ref,
        version=row.version,
        plan_as_of=row.plan_as_of,
        status_as_of=row.status_as_of,
    )


def pending_from_row(row: PendingPlanChangeTable) -> PendingPlanChange:
    return PendingPlanChange(
        id=row.id,
        user_id=row.user_id,
        target_plan_id=row.target_plan_id,
        target_billing_interval=BillingInterval(row.target_billing_interval),
        change_type=ChangeType(row.change_type),
        effective_date=row.effective_date,
        status=PendingChangeStatus(row.status),
        requested_at=row.requested_at,
        resolved_at=row.resolved_at,
        note=row.note,
    )


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanRepository:
    """Read access to the plan catalog plus the operator seeding path."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, plan_id: str) -> PlanTable | None:
        return await self._session.get(PlanTable, plan_id)

    async def list_plans(self, active_only: bool = True) -> Sequence[PlanTable]:
        stmt = select(PlanTable).order_by(PlanTable.rank, PlanTable.plan_id)
        if active_only:
            stmt = stmt.where(PlanTable.active.is_(True))
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_by_stripe_price_id(self, price_id: str) -> tuple[PlanTable, BillingInterval] | None:
        """Resolve a processor price id to its plan and billing interval."""
        stmt = select(PlanTable).where(
            (PlanTable.stripe_price_id_monthly == price_id) | (PlanTable.stripe_price_id_yearly == price_id)
        )
        result = await self._session.execute(stmt)
        row = result.scalars().first()
        if row is None:
            return None
        if row.stripe_price_id_yearly == price_id:
            return row, BillingInterval.YEARLY
        return row, BillingInterval.MONTHLY

    async def upsert(self, plan: Plan) -> None:
        values: dict[str, Any] = {
            "plan_id": plan.id,
            "name": plan.name,
            "description": plan.description,
            "features_json": list(plan.features),
            "rank": plan.rank,
            "price_monthly_cents": plan.price_monthly_cents,
            "price_yearly_cents": plan.price_yearly_cents,
            "stripe_price_id_monthly": plan.stripe_price_id_monthly,
            "stripe_price_id_yearly": plan.stripe_price_id_yearly,
            "active": plan.active,
            "created_at": datetime.now(UTC),
            "updated_at": datetime.now(UTC),
        }
        for feature, column in _LIMIT_COLUMNS.items():
            values[column] = limit_to_column(plan.limit_for(feature))
        await _dialect_upsert(
            self._session,
            PlanTable,
            values=values,
            index_elements=["plan_id"],
            update_columns=[col for col in values if col not in ("plan_id", "created_at")],
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# Subscription state
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """CRUD for ``user_subscriptions``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: str) -> UserSubscriptionTable | None:
        return await self._session.get(UserSubscriptionTable, user_id)

    async def get_by_customer_ref(self, customer_ref: str) -> UserSubscriptionTable | None:
        stmt = select(UserSubscriptionTable).where(UserSubscriptionTable.external_customer_ref == customer_ref)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        user_id: str,
        plan_id: str,
        period_start: datetime,
        period_end: datetime,
        external_customer_ref: str | None = None,
    ) -> UserSubscriptionTable:
        row = UserSubscriptionTable(
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE.value,
            billing_interval=BillingInterval.MONTHLY.value,
            billing_period_start=period_start,
            billing_period_end=period_end,
            external_customer_ref=external_customer_ref,
            version=1,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_due_for_rollover(self, now: datetime, limit: int = 500) -> list[str]:
        """Return ids of users whose billing period has ended."""
        stmt = (
            select(UserSubscriptionTable.user_id)
            .where(UserSubscriptionTable.billing_period_end <= now)
            .order_by(UserSubscriptionTable.billing_period_end)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def touch(self, row: UserSubscriptionTable) -> None:
        """Bump the row version after an in-place mutation and flush."""
        row.version = (row.version or 0) + 1
        await self._session.flush()


# ---------------------------------------------------------------------------
# Pending plan changes
# ---------------------------------------------------------------------------


class PendingChangeRepository:
    """Access to ``pending_plan_changes``.

    The partial unique index guarantees that :meth:`get_live` matches at
    most one row; :meth:`insert` raises ``IntegrityError`` if a second live
    row would be created.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_live(self, user_id: str) -> PendingPlanChangeTable | None:
        stmt = select(PendingPlanChangeTable).where(
            PendingPlanChangeTable.user_id == user_id,
            PendingPlanChangeTable.status == PendingChangeStatus.PENDING.value,
        )
        result = await self._session.execute(stmt)
        rows = result.scalars().all()
        if len(rows) > 1:
            raise IntegrityViolation(f"User '{user_id}' has {len(rows)} live pending plan changes")
        return rows[0] if rows else None

    async def insert(
        self,
        user_id: str,
        target_plan_id: str,
        target_interval: BillingInterval,
        change_type: ChangeType,
        effective_date: datetime,
        requested_at: datetime,
        note: str | None = None,
    ) -> PendingPlanChangeTable:
        row = PendingPlanChangeTable(
            user_id=user_id,
            target_plan_id=target_plan_id,
            target_billing_interval=target_interval.value,
            change_type=change_type.value,
            effective_date=effective_date,
            status=PendingChangeStatus.PENDING.value,
            requested_at=requested_at,
            note=note,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def resolve(
        self,
        row: PendingPlanChangeTable,
        status: PendingChangeStatus,
        resolved_at: datetime,
        note: str | None = None,
    ) -> None:
        """Move a live row to a terminal status."""
        row.status = status.value
        row.resolved_at = resolved_at
        if note is not None:
            row.note = note
        await self._session.flush()

    async def history(self, user_id: str, limit: int = 20) -> Sequence[PendingPlanChangeTable]:
        stmt = (
            select(PendingPlanChangeTable)
            .where(PendingPlanChangeTable.user_id == user_id)
            .order_by(PendingPlanChangeTable.requested_at.desc(), PendingPlanChangeTable.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()


# ---------------------------------------------------------------------------
# Usage counters
# ---------------------------------------------------------------------------


class UsageCounterRepository:
    """Atomic per-``(user, period, feature)`` counters."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def ensure_period(
        self,
        user_id: str,
        period_key: str,
        period_start: datetime,
        period_end: datetime,
    ) -> None:
        """Create zeroed counters for every feature; existing rows are kept."""
        now = datetime.now(UTC)
        rows = [
            {
                "user_id": user_id,
                "period_key": period_key,
                "feature": feature.value,
                "used": 0,
                "period_start": period_start,
                "period_end": period_end,
                "updated_at": now,
            }
            for feature in Feature
        ]
        await _dialect_insert_nothing(
            self._session,
            UsageCounterTable,
            rows=rows,
            index_elements=["user_id", "period_key", "feature"],
        )
        await self._session.flush()

    async def get_counts(self, user_id: str, period_key: str) -> dict[Feature, int]:
        stmt = select(UsageCounterTable.feature, UsageCounterTable.used).where(
            UsageCounterTable.user_id == user_id,
            UsageCounterTable.period_key == period_key,
        )
        result = await self._session.execute(stmt)
        counts = {feature: 0 for feature in Feature}
        for feature, used in result.all():
            counts[Feature(feature)] = used
        return counts

    async def conditional_increment(
        self,
        user_id: str,
        period_key: str,
        feature: Feature,
        amount: int,
        limit: int | None,
    ) -> bool:
        """Add *amount* to the counter only if the result stays within *limit*.

        ``limit=None`` means unlimited.  Returns ``True`` when a row was
        updated.  The check and the write are one statement, so two
        concurrent callers can never both pass the same remaining unit.
        """
        stmt = (
            update(UsageCounterTable)
            .where(
                UsageCounterTable.user_id == user_id,
                UsageCounterTable.period_key == period_key,
                UsageCounterTable.feature == feature.value,
            )
            .values(used=UsageCounterTable.used + amount, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        if limit is not None:
            stmt = stmt.where(UsageCounterTable.used + amount <= limit)
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def decrement(self, user_id: str, period_key: str, feature: Feature, amount: int) -> None:
        """Subtract *amount*, flooring the counter at zero."""
        stmt = (
            update(UsageCounterTable)
            .where(
                UsageCounterTable.user_id == user_id,
                UsageCounterTable.period_key == period_key,
                UsageCounterTable.feature == feature.value,
            )
            .values(
                used=case(
                    (UsageCounterTable.used >= amount, UsageCounterTable.used - amount),
                    else_=0,
                ),
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def history(self, user_id: str, limit: int = 12) -> list[PeriodUsage]:
        """Return the most recent periods (newest first) with their counters."""
        key_stmt = (
            select(
                UsageCounterTable.period_key,
                func.min(UsageCounterTable.period_start),
                func.min(UsageCounterTable.period_end),
            )
            .where(UsageCounterTable.user_id == user_id)
            .group_by(UsageCounterTable.period_key)
            .order_by(func.min(UsageCounterTable.period_start).desc())
            .limit(limit)
        )
        periods = (await self._session.execute(key_stmt)).all()
        history: list[PeriodUsage] = []
        for key, start, end in periods:
            counts = await self.get_counts(user_id, key)
            history.append(PeriodUsage(period_key=key, period_start=start, period_end=end, counts=counts))
        return history


# ---------------------------------------------------------------------------
# Reconciliation audit
# ---------------------------------------------------------------------------


class ReconciliationEventRepository:
    """Append-only audit of processor events; also the dedup index."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists(self, external_event_id: str) -> bool:
        stmt = select(ReconciliationEventTable.id).where(
            ReconciliationEventTable.external_event_id == external_event_id
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def record(
        self,
        external_event_id: str,
        event_type: str,
        user_id: str,
        payload: dict[str, Any],
        occurred_at: datetime,
        outcome: str,
        detail: str | None = None,
    ) -> ReconciliationEventTable:
        row = ReconciliationEventTable(
            external_event_id=external_event_id,
            event_type=event_type,
            user_id=user_id,
            payload=payload,
            occurred_at=occurred_at,
            processed_at=datetime.now(UTC),
            outcome=outcome,
            detail=detail,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_user(self, user_id: str, limit: int = 50) -> Sequence[ReconciliationEventTable]:
        stmt = (
            select(ReconciliationEventTable)
            .where(ReconciliationEventTable.user_id == user_id)
            .order_by(ReconciliationEventTable.processed_at.desc(), ReconciliationEventTable.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
