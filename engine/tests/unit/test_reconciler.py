"""Tests for the event reconciler."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from talkah_engine.engine import SubscriptionEngine
from talkah_engine.models import (
    ApplyOutcome,
    BillingInterval,
    ChangeType,
    ReconciliationEvent,
    ReconciliationEventType,
    SubscriptionStatus,
)
from talkah_engine.periods import add_months
from talkah_engine.state.tables import ReconciliationEventTable

SUCCEEDED = ReconciliationEventType.PAYMENT_SUCCEEDED
FAILED = ReconciliationEventType.PAYMENT_FAILED
UPDATED = ReconciliationEventType.SUBSCRIPTION_UPDATED
CANCELED = ReconciliationEventType.SUBSCRIPTION_CANCELED
RENEWED = ReconciliationEventType.BILLING_CYCLE_RENEWED


async def _audit_count(engine: SubscriptionEngine) -> int:
    async with engine.session_factory() as session:
        return (await session.execute(select(func.count()).select_from(ReconciliationEventTable))).scalar_one()


async def _pro_user(engine: SubscriptionEngine) -> None:
    await engine.provisioner.provision_user("u1")
    await engine.changes.request_change("u1", "pro", "monthly")


async def _premium_with_scheduled_downgrade(engine: SubscriptionEngine) -> datetime:
    """Premium user with a downgrade to pro due at the end of the period; returns that end."""
    await engine.provisioner.provision_user("u1")
    await engine.changes.request_change("u1", "premium", "monthly")
    await engine.changes.request_change("u1", "pro", "monthly")
    view = await engine.facade.get_subscription_view("u1")
    assert view.pending_change is not None
    return view.billing_period.end


async def _settled_state(engine: SubscriptionEngine) -> tuple[Any, ...]:
    view = await engine.facade.get_subscription_view("u1")
    pending = view.pending_change
    return (
        view.plan.id,
        view.billing_interval,
        view.status,
        view.billing_period.start,
        view.billing_period.end,
        None if pending is None else (pending.target_plan_id, pending.effective_date),
    )


class TestDeliverySemantics:
    @pytest.mark.asyncio
    async def test_duplicate_event_is_ignored(
        self, engine: SubscriptionEngine, make_event: Callable[..., ReconciliationEvent]
    ) -> None:
        await engine.provisioner.provision_user("u1")
        event = make_event(SUCCEEDED, "u1", {})

        first = await engine.reconciler.apply(event)
        after_first = await engine.facade.get_subscription_view("u1")
        second = await engine.reconciler.apply(event)

        assert first.outcome == ApplyOutcome.APPLIED
        assert second.outcome == ApplyOutcome.IGNORED
        assert second.reason == "duplicate"
        assert await engine.facade.get_subscription_view("u1") == after_first
        assert await _audit_count(engine) == 1

    @pytest.mark.asyncio
    async def test_older_status_event_is_stale(
        self,
        engine: SubscriptionEngine,
        clock: Any,
        make_event: Callable[..., ReconciliationEvent],
    ) -> None:
        await engine.provisioner.provision_user("u1")
        now = clock()

        failed = make_event(FAILED, "u1", {"attempt_count": 1}, event_id="evt_new", occurred_at=now)
        late = make_event(SUCCEEDED, "u1", {}, event_id="evt_old", occurred_at=now - timedelta(hours=1))
        assert (await engine.reconciler.apply(failed)).outcome == ApplyOutcome.APPLIED
        result = await engine.reconciler.apply(late)

        assert result.outcome == ApplyOutcome.IGNORED
        assert result.reason == "stale"
        view = await engine.facade.get_subscription_view("u1")
        assert view.status == SubscriptionStatus.PAST_DUE
        # Stale events are still recorded so redeliveries are deduplicated.
        assert await _audit_count(engine) == 2

    @pytest.mark.asyncio
    async def test_unknown_user_fails_without_recording(
        self, engine: SubscriptionEngine, make_event: Callable[..., ReconciliationEvent]
    ) -> None:
        event = make_event(SUCCEEDED, "ghost", {})

        result = await engine.reconciler.apply(event)

        assert result.outcome == ApplyOutcome.FAILED
        assert "ghost" in (result.reason or "")
        assert await _audit_count(engine) == 0

        await engine.provisioner.provision_user("ghost")
        assert (await engine.reconciler.apply(event)).outcome == ApplyOutcome.APPLIED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reverse", [False, True], ids=["in_order", "reversed"])
    async def test_late_renewal_does_not_override_newer_snapshot(
        self,
        engine: SubscriptionEngine,
        clock: Any,
        make_event: Callable[..., ReconciliationEvent],
        reverse: bool,
    ) -> None:
        period_end = await _premium_with_scheduled_downgrade(engine)
        next_end = add_months(period_end, 1)
        clock.set(period_end + timedelta(days=2))
        renewed = make_event(
            RENEWED,
            "u1",
            {"period_start": period_end, "period_end": next_end},
            event_id="evt_renewed",
            occurred_at=period_end,
        )
        # The customer went back to premium at the processor after the renewal.
        updated = make_event(
            UPDATED,
            "u1",
            {
                "plan_id": "premium",
                "billing_interval": "monthly",
                "status": "active",
                "period_start": period_end,
                "period_end": next_end,
            },
            event_id="evt_updated",
            occurred_at=period_end + timedelta(days=1),
        )
        events = [updated, renewed] if reverse else [renewed, updated]

        results = [await engine.reconciler.apply(event) for event in events]

        assert all(result.outcome == ApplyOutcome.APPLIED for result in results)
        if reverse:
            assert results[1].changes == ["pending_superseded"]
        view = await engine.facade.get_subscription_view("u1")
        assert view.plan.id == "premium"
        assert view.pending_change is None
        assert view.billing_period.start == period_end

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "order",
        [
            (0, 1, 2, 3, 4),
            (4, 3, 2, 1, 0),
            (1, 4, 0, 3, 2),
            (0, 4, 1, 2, 3),
            (2, 3, 0, 1, 4),
        ],
        ids=["in_order", "reversed", "cancel_early", "update_after_cancel", "payments_first"],
    )
    async def test_final_state_is_independent_of_arrival_order(
        self,
        engine: SubscriptionEngine,
        clock: Any,
        make_event: Callable[..., ReconciliationEvent],
        order: tuple[int, ...],
    ) -> None:
        period_end = await _premium_with_scheduled_downgrade(engine)
        next_end = add_months(period_end, 1)
        snapshot_at = period_end + timedelta(days=1)
        clock.set(period_end + timedelta(days=2))
        created = [
            make_event(
                RENEWED,
                "u1",
                {"period_start": period_end, "period_end": next_end},
                event_id="evt_renewed",
                occurred_at=period_end,
            ),
            make_event(
                UPDATED,
                "u1",
                {
                    "plan_id": "premium",
                    "billing_interval": "monthly",
                    "status": "active",
                    "period_start": period_end,
                    "period_end": next_end,
                },
                event_id="evt_updated",
                occurred_at=snapshot_at,
            ),
            make_event(
                FAILED, "u1", {"attempt_count": 1}, event_id="evt_failed", occurred_at=snapshot_at + timedelta(hours=1)
            ),
            make_event(SUCCEEDED, "u1", {}, event_id="evt_succeeded", occurred_at=snapshot_at + timedelta(hours=2)),
            make_event(
                CANCELED,
                "u1",
                {"period_end": next_end},
                event_id="evt_canceled",
                occurred_at=snapshot_at + timedelta(hours=3),
            ),
        ]

        for index in order:
            result = await engine.reconciler.apply(created[index])
            assert result.outcome != ApplyOutcome.FAILED

        assert await _settled_state(engine) == (
            "premium",
            BillingInterval.MONTHLY,
            SubscriptionStatus.CANCELED,
            period_end,
            next_end,
            ("free", next_end),
        )

    def test_payload_must_match_event_type(self, make_event: Callable[..., ReconciliationEvent]) -> None:
        with pytest.raises(PydanticValidationError):
            make_event(ReconciliationEventType.BILLING_CYCLE_RENEWED, "u1", {"attempt_count": 2})


class TestPaymentEvents:
    @pytest.mark.asyncio
    async def test_failed_then_succeeded_restores_active(
        self,
        engine: SubscriptionEngine,
        clock: Any,
        make_event: Callable[..., ReconciliationEvent],
    ) -> None:
        await _pro_user(engine)

        clock.advance(minutes=5)
        failed = await engine.reconciler.apply(make_event(FAILED, "u1", {"attempt_count": 2}, event_id="evt_f"))
        assert failed.changes == ["status"]
        assert (await engine.facade.get_subscription_view("u1")).status == SubscriptionStatus.PAST_DUE

        clock.advance(minutes=5)
        await engine.reconciler.apply(make_event(SUCCEEDED, "u1", {}, event_id="evt_s"))
        view = await engine.facade.get_subscription_view("u1")
        assert view.status == SubscriptionStatus.ACTIVE
        assert view.plan.id == "pro"

    @pytest.mark.asyncio
    async def test_payment_with_subscription_fields_sets_plan(
        self,
        engine: SubscriptionEngine,
        clock: Any,
        make_event: Callable[..., ReconciliationEvent],
    ) -> None:
        await engine.provisioner.provision_user("u1")
        start = clock()
        result = await engine.reconciler.apply(
            make_event(
                SUCCEEDED,
                "u1",
                {
                    "plan_id": "premium",
                    "billing_interval": "yearly",
                    "period_start": start,
                    "period_end": add_months(start, 12),
                    "subscription_ref": "sub_9",
                },
            )
        )

        assert result.outcome == ApplyOutcome.APPLIED
        assert "plan" in result.changes
        view = await engine.facade.get_subscription_view("u1")
        assert view.plan.id == "premium"
        assert view.billing_interval == BillingInterval.YEARLY


class TestSubscriptionUpdated:
    def _snapshot(self, start: Any, **overrides: Any) -> dict[str, Any]:
        payload = {
            "plan_id": "pro",
            "billing_interval": "monthly",
            "status": "active",
            "period_start": start,
            "period_end": add_months(start, 1),
            "subscription_ref": "sub_cus_1",
        }
        payload.update(overrides)
        return payload

    @pytest.mark.asyncio
    async def test_cancel_at_period_end_creates_pending_downgrade(
        self,
        engine: SubscriptionEngine,
        clock: Any,
        make_event: Callable[..., ReconciliationEvent],
    ) -> None:
        await _pro_user(engine)
        start = clock()
        clock.advance(minutes=1)

        result = await engine.reconciler.apply(
            make_event(UPDATED, "u1", self._snapshot(start, cancel_at_period_end=True))
        )

        assert result.changes == ["pending_created"]
        pending = (await engine.facade.get_subscription_view("u1")).pending_change
        assert pending is not None
        assert pending.target_plan_id == "free"
        assert pending.change_type == ChangeType.DOWNGRADE
        assert pending.effective_date == add_months(start, 1)

        clock.advance(minutes=1)
        reactivated = await engine.reconciler.apply(make_event(UPDATED, "u1", self._snapshot(start), event_id="evt_2"))
        assert reactivated.changes == ["pending_cancelled"]

    @pytest.mark.asyncio
    async def test_plan_change_made_at_processor(
        self,
        engine: SubscriptionEngine,
        clock: Any,
        make_event: Callable[..., ReconciliationEvent],
    ) -> None:
        await _pro_user(engine)
        start = clock()
        clock.advance(minutes=1)

        result = await engine.reconciler.apply(make_event(UPDATED, "u1", self._snapshot(start, plan_id="premium")))

        assert result.changes == ["plan"]
        assert (await engine.facade.get_subscription_view("u1")).plan.id == "premium"

    @pytest.mark.asyncio
    async def test_snapshot_older_than_confirmation_is_stale(
        self,
        engine: SubscriptionEngine,
        clock: Any,
        make_event: Callable[..., ReconciliationEvent],
    ) -> None:
        await _pro_user(engine)
        start = clock()

        result = await engine.reconciler.apply(
            make_event(UPDATED, "u1", self._snapshot(start, plan_id="free"), occurred_at=start - timedelta(minutes=1))
        )

        assert result.outcome == ApplyOutcome.IGNORED
        assert result.reason == "stale"
        assert (await engine.facade.get_subscription_view("u1")).plan.id == "pro"

    @pytest.mark.asyncio
    async def test_unknown_plan_fails(
        self,
        engine: SubscriptionEngine,
        clock: Any,
        make_event: Callable[..., ReconciliationEvent],
    ) -> None:
        await _pro_user(engine)
        clock.advance(minutes=1)

        result = await engine.reconciler.apply(make_event(UPDATED, "u1", self._snapshot(clock(), plan_id="gold")))

        assert result.outcome == ApplyOutcome.FAILED
        assert await _audit_count(engine) == 0


class TestSubscriptionCanceled:
    @pytest.mark.asyncio
    async def test_ended_subscription_falls_back_to_free(
        self,
        engine: SubscriptionEngine,
        clock: Any,
        make_event: Callable[..., ReconciliationEvent],
    ) -> None:
        await _pro_user(engine)
        clock.advance(days=3)

        result = await engine.reconciler.apply(make_event(CANCELED, "u1", {"ended_at": clock()}))

        assert {"status", "plan", "period"} <= set(result.changes)
        view = await engine.facade.get_subscription_view("u1")
        assert view.plan.id == "free"
        assert view.status == SubscriptionStatus.CANCELED
        assert view.billing_period.start == clock()

    @pytest.mark.asyncio
    async def test_cancellation_keeps_paid_plan_until_period_end(
        self,
        engine: SubscriptionEngine,
        clock: Any,
        make_event: Callable[..., ReconciliationEvent],
    ) -> None:
        await _pro_user(engine)
        period_end = (await engine.facade.get_subscription_view("u1")).billing_period.end
        clock.advance(days=3)

        result = await engine.reconciler.apply(make_event(CANCELED, "u1", {"period_end": period_end}))

        assert "pending_created" in result.changes
        view = await engine.facade.get_subscription_view("u1")
        assert view.plan.id == "pro"
        assert view.status == SubscriptionStatus.CANCELED

        clock.set(period_end + timedelta(hours=1))
        view = await engine.facade.get_subscription_view("u1")
        assert view.plan.id == "free"
        assert view.pending_change is None
