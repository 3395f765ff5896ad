"""Event reconciler: applies processor events to local subscription state.

Processor delivery is at-least-once and unordered, so:

* every event id is recorded in the audit log in the same transaction as
  its effect, and a second delivery is ignored as a duplicate;
* the plan/interval and status field groups each carry an "as of" marker,
  and an event only writes a group when it is not older than the marker;
* period bounds only move forward.

The reconciler is the only component that flips the effective plan from
processor events or completes a pending change.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import cast

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talkah_engine.catalog import FREE_PLAN_ID
from talkah_engine.changes.effects import (
    complete_pending_change,
    is_newer,
    normalize_interval,
    set_period,
    set_plan,
    set_status,
)
from talkah_engine.errors import IntegrityViolation
from talkah_engine.models.events import (
    ApplyOutcome,
    ApplyResult,
    BillingCycleRenewedPayload,
    PaymentFailedPayload,
    PaymentSucceededPayload,
    ReconciliationEvent,
    ReconciliationEventType,
    SubscriptionCanceledPayload,
    SubscriptionUpdatedPayload,
)
from talkah_engine.models.plan import BillingInterval
from talkah_engine.models.subscription import ChangeType, PendingChangeStatus, SubscriptionStatus
from talkah_engine.periods import Clock, ensure_utc, initial_period, period_key, utcnow
from talkah_engine.state.locks import UserLockRegistry, serialized_transaction
from talkah_engine.state.repository import (
    PendingChangeRepository,
    PlanRepository,
    ReconciliationEventRepository,
    SubscriptionRepository,
    UsageCounterRepository,
)
from talkah_engine.state.tables import UserSubscriptionTable
from talkah_engine.usage.ledger import apply_rollover

logger = logging.getLogger(__name__)

# A handler returns the list of changed field groups, or ``None`` when every
# group it would write is newer locally (the event is stale).
_Handler = Callable[[AsyncSession, UserSubscriptionTable, ReconciliationEvent, datetime], Awaitable[list[str] | None]]

DUPLICATE = "duplicate"
STALE = "stale"


class EventReconciler:
    """Applies :class:`ReconciliationEvent` objects exactly once.

    Parameters
    ----------
    session_factory:
        Factory producing sessions bound to the state store.
    locks:
        Per-user lock registry shared with the other engine components.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: UserLockRegistry,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._clock = clock
        self._handlers: dict[ReconciliationEventType, _Handler] = {
            ReconciliationEventType.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            ReconciliationEventType.PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            ReconciliationEventType.BILLING_CYCLE_RENEWED: self._on_billing_cycle_renewed,
            ReconciliationEventType.PAYMENT_FAILED: self._on_payment_failed,
            ReconciliationEventType.SUBSCRIPTION_CANCELED: self._on_subscription_canceled,
        }
        missing = set(ReconciliationEventType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No reconciliation handler for: {sorted(m.value for m in missing)}")

    async def apply(self, event: ReconciliationEvent) -> ApplyResult:
        """Apply one event.

        Returns
        -------
        ApplyResult
            ``applied``; ``ignored`` with reason ``duplicate`` or ``stale``;
            or ``failed`` when the event breaks an invariant (unknown user,
            unknown plan).  Failed events are not recorded, so a later
            redelivery or a manual replay can still apply them.
        """
        try:
            async with serialized_transaction(self._session_factory, self._locks, event.user_id) as session:
                result = await self._apply_locked(session, event)
        except IntegrityViolation as exc:
            logger.error(
                "Failed to reconcile event %s (%s) for user=%s: %s; event=%s",
                event.external_event_id,
                event.event_type.value,
                event.user_id,
                exc,
                event.model_dump_json(),
            )
            return ApplyResult(
                external_event_id=event.external_event_id,
                outcome=ApplyOutcome.FAILED,
                reason=str(exc),
            )
        except IntegrityError:
            # Another worker recorded the same event id first.
            if await self._is_recorded(event.external_event_id):
                logger.info("Duplicate event %s ignored (concurrent delivery)", event.external_event_id)
                return ApplyResult(
                    external_event_id=event.external_event_id,
                    outcome=ApplyOutcome.IGNORED,
                    reason=DUPLICATE,
                )
            raise

        logger.info(
            "Reconciled event %s (%s) for user=%s: %s%s",
            event.external_event_id,
            event.event_type.value,
            event.user_id,
            result.outcome.value,
            f" ({result.reason})" if result.reason else "",
        )
        return result

    async def _is_recorded(self, external_event_id: str) -> bool:
        async with self._session_factory() as session:
            return await ReconciliationEventRepository(session).exists(external_event_id)

    async def _apply_locked(self, session: AsyncSession, event: ReconciliationEvent) -> ApplyResult:
        audit = ReconciliationEventRepository(session)
        if await audit.exists(event.external_event_id):
            return ApplyResult(
                external_event_id=event.external_event_id,
                outcome=ApplyOutcome.IGNORED,
                reason=DUPLICATE,
            )

        row = await SubscriptionRepository(session).get(event.user_id)
        if row is None:
            raise IntegrityViolation(f"Event {event.external_event_id} references unknown user '{event.user_id}'")

        now = self._clock()
        changes = await self._handlers[event.event_type](session, row, event, now)

        if changes is None:
            outcome, reason = ApplyOutcome.IGNORED, STALE
        else:
            outcome, reason = ApplyOutcome.APPLIED, None
            await UsageCounterRepository(session).ensure_period(
                row.user_id,
                period_key(row.billing_period_start),
                row.billing_period_start,
                row.billing_period_end,
            )
            if changes:
                await SubscriptionRepository(session).touch(row)

        await audit.record(
            external_event_id=event.external_event_id,
            event_type=event.event_type.value,
            user_id=event.user_id,
            payload=event.payload.model_dump(mode="json"),
            occurred_at=event.occurred_at,
            outcome=outcome.value,
            detail=", ".join(changes) if changes else reason,
        )
        return ApplyResult(
            external_event_id=event.external_event_id,
            outcome=outcome,
            reason=reason,
            changes=changes or [],
        )

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _require_plan(self, session: AsyncSession, plan_id: str) -> None:
        if await PlanRepository(session).get(plan_id) is None:
            raise IntegrityViolation(f"Event references unknown plan '{plan_id}'")

    async def _apply_subscription_fields(
        self,
        session: AsyncSession,
        row: UserSubscriptionTable,
        occurred_at: datetime,
        plan_id: str,
        interval: BillingInterval,
        period_start: datetime,
        period_end: datetime,
        subscription_ref: str | None,
        now: datetime,
    ) -> list[str] | None:
        """Write the plan group and period, then settle a matching pending change."""
        if not is_newer(occurred_at, row.plan_as_of):
            return None
        await self._require_plan(session, plan_id)

        changes: list[str] = []
        if set_plan(row, plan_id, interval, occurred_at):
            changes.append("plan")
        if set_period(row, period_start, period_end):
            changes.append("period")
        if subscription_ref and row.external_subscription_ref != subscription_ref:
            row.external_subscription_ref = subscription_ref
            changes.append("subscription_ref")

        pending_repo = PendingChangeRepository(session)
        pending = await pending_repo.get_live(row.user_id)
        if (
            pending is not None
            and pending.target_plan_id == row.plan_id
            and normalize_interval(pending.target_plan_id, BillingInterval(pending.target_billing_interval)).value
            == row.billing_interval
        ):
            await pending_repo.resolve(pending, PendingChangeStatus.COMPLETED, now, note="confirmed by processor")
            changes.append("pending_completed")

        await apply_rollover(session, row, now)
        return changes

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_subscription_updated(
        self,
        session: AsyncSession,
        row: UserSubscriptionTable,
        event: ReconciliationEvent,
        now: datetime,
    ) -> list[str] | None:
        payload = cast(SubscriptionUpdatedPayload, event.payload)

        plan_changes = await self._apply_subscription_fields(
            session,
            row,
            event.occurred_at,
            payload.plan_id,
            payload.billing_interval,
            payload.period_start,
            payload.period_end,
            payload.subscription_ref,
            now,
        )
        status_changed = None
        if is_newer(event.occurred_at, row.status_as_of):
            status_changed = set_status(row, payload.status.value, event.occurred_at)

        if plan_changes is None and status_changed is None:
            return None
        changes = list(plan_changes or [])
        if status_changed:
            changes.append("status")
        if payload.customer_ref and not row.external_customer_ref:
            row.external_customer_ref = payload.customer_ref
            changes.append("customer_ref")

        # A scheduled cancellation belongs to the status timeline; an older
        # snapshot must not withdraw one made by a newer cancellation.
        if plan_changes is not None and status_changed is not None:
            changes.extend(await self._sync_cancel_at_period_end(session, row, payload.cancel_at_period_end, now))
        return changes

    async def _sync_cancel_at_period_end(
        self,
        session: AsyncSession,
        row: UserSubscriptionTable,
        cancel_at_period_end: bool,
        now: datetime,
    ) -> list[str]:
        """Mirror a cancellation scheduled or withdrawn at the processor (e.g. via its portal)."""
        repo = PendingChangeRepository(session)
        pending = await repo.get_live(row.user_id)

        if cancel_at_period_end:
            if pending is not None or row.plan_id == FREE_PLAN_ID:
                return []
            await repo.insert(
                user_id=row.user_id,
                target_plan_id=FREE_PLAN_ID,
                target_interval=BillingInterval.MONTHLY,
                change_type=ChangeType.DOWNGRADE,
                effective_date=row.billing_period_end,
                requested_at=now,
                note="cancellation scheduled at processor",
            )
            return ["pending_created"]

        if pending is not None and pending.target_plan_id == FREE_PLAN_ID:
            await repo.resolve(pending, PendingChangeStatus.CANCELLED, now, note="reactivated at processor")
            return ["pending_cancelled"]
        return []

    async def _on_payment_succeeded(
        self,
        session: AsyncSession,
        row: UserSubscriptionTable,
        event: ReconciliationEvent,
        now: datetime,
    ) -> list[str] | None:
        payload = cast(PaymentSucceededPayload, event.payload)

        plan_changes: list[str] | None = None
        if (
            payload.plan_id is not None
            and payload.billing_interval is not None
            and payload.period_start is not None
            and payload.period_end is not None
        ):
            plan_changes = await self._apply_subscription_fields(
                session,
                row,
                event.occurred_at,
                payload.plan_id,
                payload.billing_interval,
                payload.period_start,
                payload.period_end,
                payload.subscription_ref,
                now,
            )

        status_changed = None
        if is_newer(event.occurred_at, row.status_as_of):
            restored = row.status
            if row.status == SubscriptionStatus.PAST_DUE.value:
                restored = SubscriptionStatus.ACTIVE.value
            status_changed = set_status(row, restored, event.occurred_at)

        if plan_changes is None and status_changed is None:
            return None
        changes = list(plan_changes or [])
        if status_changed:
            changes.append("status")
        return changes

    async def _on_billing_cycle_renewed(
        self,
        session: AsyncSession,
        row: UserSubscriptionTable,
        event: ReconciliationEvent,
        now: datetime,
    ) -> list[str] | None:
        payload = cast(BillingCycleRenewedPayload, event.payload)

        stale_period = ensure_utc(payload.period_end) <= ensure_utc(row.billing_period_start)
        changes: list[str] = []
        if set_period(row, payload.period_start, payload.period_end):
            changes.append("period")
        if await apply_rollover(session, row, now):
            changes.append("rollover")

        repo = PendingChangeRepository(session)
        pending = await repo.get_live(row.user_id)
        due_at = max(ensure_utc(now), ensure_utc(payload.period_start))
        if pending is not None and ensure_utc(pending.effective_date) <= due_at:
            completed = await complete_pending_change(
                session,
                row,
                pending,
                now,
                as_of=event.occurred_at,
                note="completed on billing cycle renewal",
            )
            changes.append("pending_completed" if completed else "pending_superseded")

        if stale_period and not changes:
            return None
        return changes

    async def _on_payment_failed(
        self,
        session: AsyncSession,
        row: UserSubscriptionTable,
        event: ReconciliationEvent,
        now: datetime,
    ) -> list[str] | None:
        payload = cast(PaymentFailedPayload, event.payload)
        if not is_newer(event.occurred_at, row.status_as_of):
            return None
        if row.status == SubscriptionStatus.CANCELED.value:
            return []
        if set_status(row, SubscriptionStatus.PAST_DUE.value, event.occurred_at):
            logger.warning(
                "Payment failed for user=%s (attempt %d); marked past_due",
                row.user_id,
                payload.attempt_count,
            )
            return ["status"]
        return []

    async def _on_subscription_canceled(
        self,
        session: AsyncSession,
        row: UserSubscriptionTable,
        event: ReconciliationEvent,
        now: datetime,
    ) -> list[str] | None:
        payload = cast(SubscriptionCanceledPayload, event.payload)

        status_newer = is_newer(event.occurred_at, row.status_as_of)
        plan_newer = is_newer(event.occurred_at, row.plan_as_of)
        if not status_newer and not plan_newer:
            return None

        changes: list[str] = []
        if status_newer and set_status(row, SubscriptionStatus.CANCELED.value, event.occurred_at):
            changes.append("status")
        if not plan_newer:
            return changes

        if payload.ended_at is not None:
            ended = ensure_utc(payload.ended_at) <= ensure_utc(now)
        elif payload.period_end is not None:
            ended = ensure_utc(payload.period_end) <= ensure_utc(now)
        else:
            ended = True

        repo = PendingChangeRepository(session)
        pending = await repo.get_live(row.user_id)

        if ended:
            if pending is not None:
                status = (
                    PendingChangeStatus.COMPLETED
                    if pending.target_plan_id == FREE_PLAN_ID
                    else PendingChangeStatus.CANCELLED
                )
                await repo.resolve(pending, status, now, note="subscription ended at processor")
                changes.append("pending_resolved")
            if set_plan(row, FREE_PLAN_ID, BillingInterval.MONTHLY, event.occurred_at):
                changes.append("plan")
            start, end = initial_period(now)
            row.billing_period_start = start
            row.billing_period_end = end
            row.external_subscription_ref = None
            changes.append("period")
            return changes

        if pending is not None and pending.target_plan_id == FREE_PLAN_ID:
            return changes
        if pending is not None:
            await repo.resolve(pending, PendingChangeStatus.CANCELLED, now, note="superseded by cancellation")
        await repo.insert(
            user_id=row.user_id,
            target_plan_id=FREE_PLAN_ID,
            target_interval=BillingInterval.MONTHLY,
            change_type=ChangeType.DOWNGRADE,
            effective_date=payload.period_end or row.billing_period_end,
            requested_at=now,
            note="subscription canceled at processor",
        )
        changes.append("pending_created")
        return changes
