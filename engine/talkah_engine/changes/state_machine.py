"""Plan change state machine.

Per user the machine is either in *no pending change* or in *pending
change (target plan, target interval, type, effective date)*.  Requests run
in three phases:

1. validate against a snapshot of local state,
2. ask the processor to apply or schedule the change,
3. commit the confirmed result locally.

Nothing is written when the processor fails or times out, and a pending row
only exists after the processor confirmed the matching schedule.  All three
phases run while the user's in-process lock is held; the database phases
additionally hold the cross-process advisory lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from datetime import datetime
from typing import TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talkah_engine.catalog import FREE_PLAN_ID
from talkah_engine.changes.classifier import Timing, Transition, classify_transition
from talkah_engine.changes.effects import load_subscription, normalize_interval, set_period, set_plan, set_status
from talkah_engine.errors import (
    IntegrityViolation,
    ProcessorError,
    StateConflictError,
    ValidationError,
)
from talkah_engine.models.plan import BillingInterval, Plan
from talkah_engine.models.subscription import (
    PendingChangeStatus,
    PendingPlanChange,
    UserSubscriptionState,
)
from talkah_engine.models.view import PlanChangeOutcome, PlanChangeResult
from talkah_engine.periods import Clock, period_key, utcnow
from talkah_engine.processor.base import PaymentProcessor
from talkah_engine.state.locks import UserLockRegistry, locked_session
from talkah_engine.state.repository import (
    PendingChangeRepository,
    PlanRepository,
    SubscriptionRepository,
    UsageCounterRepository,
    pending_from_row,
    plan_from_row,
    subscription_from_row,
)
from talkah_engine.usage.ledger import prepare_current_period

logger = logging.getLogger(__name__)

T = TypeVar("T")


def coerce_interval(interval: BillingInterval | str) -> BillingInterval:
    try:
        return BillingInterval(interval)
    except ValueError:
        raise ValidationError(f"Unknown billing interval '{interval}'") from None


class _Snapshot:
    """Local state read in the validation phase."""

    def __init__(
        self,
        state: UserSubscriptionState,
        current_plan: Plan,
        pending: PendingPlanChange | None,
        pending_plan: Plan | None,
    ) -> None:
        self.state = state
        self.current_plan = current_plan
        self.pending = pending
        self.pending_plan = pending_plan


class PlanChangeStateMachine:
    """Validates, applies and schedules plan changes.

    Parameters
    ----------
    session_factory:
        Factory producing sessions bound to the state store.
    locks:
        Per-user lock registry shared with the other engine components.
    processor:
        The payment processor adapter.
    clock:
        Returns the current UTC time; injectable for tests.
    processor_timeout:
        Deadline in seconds applied to every processor call.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: UserLockRegistry,
        processor: PaymentProcessor,
        clock: Clock = utcnow,
        processor_timeout: float = 15.0,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._processor = processor
        self._clock = clock
        self._processor_timeout = processor_timeout

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call(self, description: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._processor_timeout)
        except TimeoutError:
            logger.warning("Processor call timed out after %.1fs: %s", self._processor_timeout, description)
            raise ProcessorError(f"Processor timed out: {description}", retryable=True, timeout=True) from None

    async def _snapshot(self, user_id: str) -> _Snapshot:
        async with locked_session(self._session_factory, user_id) as session:
            row, current_plan, _key = await prepare_current_period(session, user_id, self._clock())
            pending_row = await PendingChangeRepository(session).get_live(user_id)
            pending_plan = None
            if pending_row is not None:
                plan_row = await PlanRepository(session).get(pending_row.target_plan_id)
                pending_plan = plan_from_row(plan_row) if plan_row is not None else None
            return _Snapshot(
                state=subscription_from_row(row),
                current_plan=current_plan,
                pending=pending_from_row(pending_row) if pending_row is not None else None,
                pending_plan=pending_plan,
            )

    async def _load_target(self, plan_id: str) -> Plan:
        async with self._session_factory() as session:
            row = await PlanRepository(session).get(plan_id)
        if row is None:
            raise ValidationError(f"Unknown plan '{plan_id}'")
        plan = plan_from_row(row)
        if not plan.active:
            raise ValidationError(f"Plan '{plan_id}' is not available")
        return plan

    async def _ensure_customer(self, snapshot: _Snapshot, email: str | None) -> str:
        if snapshot.state.external_customer_ref:
            return snapshot.state.external_customer_ref
        user_id = snapshot.state.user_id
        customer_ref = await self._call("create customer", self._processor.create_customer(user_id, email))
        async with locked_session(self._session_factory, user_id) as session:
            row = await load_subscription(session, user_id)
            row.external_customer_ref = customer_ref
            await SubscriptionRepository(session).touch(row)
        logger.info("Attached processor customer %s to user=%s", customer_ref, user_id)
        return customer_ref

    async def _schedule(self, customer_ref: str, plan: Plan, interval: BillingInterval, effective_at: datetime) -> None:
        if plan.id == FREE_PLAN_ID:
            await self._call(
                "schedule cancellation",
                self._processor.schedule_cancellation_at_period_end(customer_ref),
            )
        else:
            await self._call(
                f"schedule {plan.id}/{interval.value}",
                self._processor.schedule_subscription_update(customer_ref, plan, interval, effective_at),
            )

    async def _unschedule(self, customer_ref: str, pending: PendingPlanChange) -> None:
        if pending.target_plan_id == FREE_PLAN_ID:
            await self._call("undo cancellation", self._processor.undo_scheduled_cancellation(customer_ref))
        else:
            await self._call("release scheduled update", self._processor.release_scheduled_update(customer_ref))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def request_change(
        self,
        user_id: str,
        target_plan_id: str,
        target_interval: BillingInterval | str = BillingInterval.MONTHLY,
        email: str | None = None,
    ) -> PlanChangeResult:
        """Request a switch to *target_plan_id* billed every *target_interval*.

        Upgrades and monthly-to-yearly switches are applied immediately with
        proration.  Downgrades and yearly-to-monthly switches are scheduled
        for the end of the current period and replace any earlier pending
        change.

        Raises
        ------
        ValidationError
            Unknown or inactive plan, or unknown interval.  The processor is
            not contacted.
        ProcessorError
            The processor failed or timed out; local state is unchanged.
        SubscriptionNotFoundError
            The user has no subscription row.
        """
        interval = coerce_interval(target_interval)
        target_plan = await self._load_target(target_plan_id)
        interval = normalize_interval(target_plan.id, interval)

        async with self._locks.hold(user_id):
            snapshot = await self._snapshot(user_id)
            transition = classify_transition(
                snapshot.current_plan,
                snapshot.state.billing_interval,
                target_plan,
                interval,
            )
            logger.info(
                "Plan change requested user=%s %s/%s -> %s/%s (%s %s)",
                user_id,
                snapshot.state.plan_id,
                snapshot.state.billing_interval.value,
                target_plan.id,
                interval.value,
                transition.timing.value,
                transition.change_type.value if transition.change_type else "-",
            )

            if transition.already_current:
                return PlanChangeResult(
                    outcome=PlanChangeOutcome.ALREADY_CURRENT,
                    plan_id=snapshot.state.plan_id,
                    billing_interval=snapshot.state.billing_interval,
                    pending_change=snapshot.pending,
                )

            if transition.timing == Timing.IMMEDIATE:
                return await self._apply_immediately(snapshot, target_plan, interval, transition, email)
            return await self._schedule_deferred(snapshot, target_plan, interval, transition)

    async def _apply_immediately(
        self,
        snapshot: _Snapshot,
        target_plan: Plan,
        interval: BillingInterval,
        transition: Transition,
        email: str | None,
    ) -> PlanChangeResult:
        user_id = snapshot.state.user_id
        customer_ref = await self._ensure_customer(snapshot, email)
        confirmation = await self._call(
            f"subscribe to {target_plan.id}/{interval.value}",
            self._processor.create_or_update_subscription(customer_ref, target_plan, interval, prorate=True),
        )

        now = self._clock()
        async with locked_session(self._session_factory, user_id) as session:
            row = await load_subscription(session, user_id)
            set_plan(row, target_plan.id, interval, confirmation.confirmed_at)
            set_status(row, confirmation.status.value, confirmation.confirmed_at)
            set_period(row, confirmation.period_start, confirmation.period_end)
            row.external_subscription_ref = confirmation.subscription_ref

            pending_repo = PendingChangeRepository(session)
            live = await pending_repo.get_live(user_id)
            replaced_id = None
            if live is not None:
                replaced_id = live.id
                await pending_repo.resolve(
                    live,
                    PendingChangeStatus.CANCELLED,
                    now,
                    note=f"superseded by immediate {transition.change_type.value} to {target_plan.id}",
                )
            await UsageCounterRepository(session).ensure_period(
                user_id,
                period_key(row.billing_period_start),
                row.billing_period_start,
                row.billing_period_end,
            )
            await SubscriptionRepository(session).touch(row)
            plan_id = row.plan_id
            billing_interval = BillingInterval(row.billing_interval)

        logger.info(
            "Applied immediate %s for user=%s to %s/%s",
            transition.change_type.value,
            user_id,
            plan_id,
            billing_interval.value,
        )
        return PlanChangeResult(
            outcome=PlanChangeOutcome.APPLIED,
            change_type=transition.change_type,
            plan_id=plan_id,
            billing_interval=billing_interval,
            replaced_pending_change_id=replaced_id,
        )

    async def _schedule_deferred(
        self,
        snapshot: _Snapshot,
        target_plan: Plan,
        interval: BillingInterval,
        transition: Transition,
    ) -> PlanChangeResult:
        user_id = snapshot.state.user_id
        previous = snapshot.pending

        if (
            previous is not None
            and previous.target_plan_id == target_plan.id
            and previous.target_billing_interval == interval
        ):
            return PlanChangeResult(
                outcome=PlanChangeOutcome.SCHEDULED,
                change_type=previous.change_type,
                plan_id=snapshot.state.plan_id,
                billing_interval=snapshot.state.billing_interval,
                pending_change=previous,
            )

        customer_ref = snapshot.state.external_customer_ref
        if not customer_ref:
            raise IntegrityViolation(
                f"User '{user_id}' is on paid plan '{snapshot.state.plan_id}' without a processor customer"
            )

        effective_date = snapshot.state.billing_period.end
        if previous is not None:
            await self._unschedule(customer_ref, previous)
        try:
            await self._schedule(customer_ref, target_plan, interval, effective_date)
        except ProcessorError:
            if previous is not None and snapshot.pending_plan is not None:
                await self._restore(customer_ref, previous, snapshot.pending_plan)
            raise

        now = self._clock()
        try:
            async with locked_session(self._session_factory, user_id) as session:
                repo = PendingChangeRepository(session)
                live = await repo.get_live(user_id)
                if live is not None:
                    await repo.resolve(
                        live,
                        PendingChangeStatus.CANCELLED,
                        now,
                        note=f"replaced by {transition.change_type.value} to {target_plan.id}/{interval.value}",
                    )
                new_row = await repo.insert(
                    user_id=user_id,
                    target_plan_id=target_plan.id,
                    target_interval=interval,
                    change_type=transition.change_type,
                    effective_date=effective_date,
                    requested_at=now,
                )
                await SubscriptionRepository(session).touch(await load_subscription(session, user_id))
                pending = pending_from_row(new_row)
        except IntegrityError as exc:
            raise StateConflictError(f"A concurrent plan change for user '{user_id}' is already pending") from exc

        logger.info(
            "Scheduled %s for user=%s to %s/%s effective %s",
            transition.change_type.value,
            user_id,
            target_plan.id,
            interval.value,
            effective_date.isoformat(),
        )
        return PlanChangeResult(
            outcome=PlanChangeOutcome.SCHEDULED,
            change_type=transition.change_type,
            plan_id=snapshot.state.plan_id,
            billing_interval=snapshot.state.billing_interval,
            pending_change=pending,
            replaced_pending_change_id=previous.id if previous is not None else None,
        )

    async def _restore(self, customer_ref: str, previous: PendingPlanChange, previous_plan: Plan) -> None:
        """Best-effort re-registration of a schedule undone during a replacement."""
        try:
            await self._schedule(
                customer_ref,
                previous_plan,
                previous.target_billing_interval,
                previous.effective_date,
            )
        except ProcessorError:
            logger.error(
                "Failed to restore scheduled %s to %s for user=%s; processor and local state may differ",
                previous.change_type.value,
                previous.target_plan_id,
                previous.user_id,
                exc_info=True,
            )

    async def cancel_pending_change(self, user_id: str) -> PendingPlanChange:
        """Withdraw the user's pending change.

        The processor schedule is undone first; the local row is marked
        ``cancelled`` only after that succeeds.

        Raises
        ------
        StateConflictError
            When the user has no pending change.
        ProcessorError
            The processor failed; the pending change is kept.
        """
        async with self._locks.hold(user_id):
            snapshot = await self._snapshot(user_id)
            pending = snapshot.pending
            if pending is None:
                raise StateConflictError(f"User '{user_id}' has no pending plan change")

            if snapshot.state.external_customer_ref:
                await self._unschedule(snapshot.state.external_customer_ref, pending)

            now = self._clock()
            async with locked_session(self._session_factory, user_id) as session:
                repo = PendingChangeRepository(session)
                live = await repo.get_live(user_id)
                if live is None or live.id != pending.id:
                    raise StateConflictError(f"Pending change {pending.id} for user '{user_id}' was already resolved")
                await repo.resolve(live, PendingChangeStatus.CANCELLED, now, note="cancelled by user")
                await SubscriptionRepository(session).touch(await load_subscription(session, user_id))
                cancelled = pending_from_row(live)

        logger.info("Cancelled pending %s for user=%s", pending.change_type.value, user_id)
        return cancelled

    async def open_billing_portal(self, user_id: str, return_url: str) -> str:
        """Return a processor self-service portal URL for the user."""
        async with self._session_factory() as session:
            row = await load_subscription(session, user_id)
            customer_ref = row.external_customer_ref
        if not customer_ref:
            raise StateConflictError(f"User '{user_id}' has no processor customer")
        return await self._call(
            "create portal session",
            self._processor.create_portal_session(customer_ref, return_url),
        )
