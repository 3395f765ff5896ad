"""Tests for the plan change state machine."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from talkah_engine.engine import SubscriptionEngine
from talkah_engine.errors import (
    IntegrityViolation,
    ProcessorError,
    StateConflictError,
    SubscriptionNotFoundError,
    ValidationError,
)
from talkah_engine.models import (
    ApplyOutcome,
    BillingInterval,
    ChangeType,
    Feature,
    PendingChangeStatus,
    PlanChangeOutcome,
    ReconciliationEventType,
)
from talkah_engine.periods import add_months
from talkah_engine.state.repository import SubscriptionRepository


async def _pro_monthly(engine: SubscriptionEngine, user_id: str = "u1") -> None:
    await engine.provisioner.provision_user(user_id)
    await engine.changes.request_change(user_id, "pro", BillingInterval.MONTHLY)


class TestImmediateChanges:
    @pytest.mark.asyncio
    async def test_free_to_pro_yearly_applies_immediately(self, engine: SubscriptionEngine, processor: Any) -> None:
        await engine.provisioner.provision_user("u1")

        result = await engine.changes.request_change("u1", "pro", "yearly", email="u1@example.test")

        assert result.outcome == PlanChangeOutcome.APPLIED
        assert result.change_type == ChangeType.UPGRADE
        assert result.plan_id == "pro"
        assert result.billing_interval == BillingInterval.YEARLY
        assert processor.names == ["create_customer", "create_or_update_subscription"]

        view = await engine.facade.get_subscription_view("u1")
        assert view.plan.id == "pro"
        assert view.billing_interval == BillingInterval.YEARLY
        assert view.pending_change is None
        assert view.billing_period.end == add_months(view.billing_period.start, 12)

    @pytest.mark.asyncio
    async def test_existing_customer_is_reused(self, engine: SubscriptionEngine, processor: Any) -> None:
        await engine.provisioner.provision_user("u1", external_customer_ref="cus_existing")

        await engine.changes.request_change("u1", "premium")

        assert processor.names == ["create_or_update_subscription"]
        assert processor.calls[0][1][0] == "cus_existing"

    @pytest.mark.asyncio
    async def test_already_current(self, engine: SubscriptionEngine, processor: Any) -> None:
        await engine.provisioner.provision_user("u1")

        result = await engine.changes.request_change("u1", "free", "yearly")

        assert result.outcome == PlanChangeOutcome.ALREADY_CURRENT
        assert processor.calls == []

    @pytest.mark.asyncio
    async def test_upgrade_supersedes_pending_change(self, engine: SubscriptionEngine) -> None:
        await _pro_monthly(engine)
        scheduled = await engine.changes.request_change("u1", "free")
        assert scheduled.pending_change is not None

        result = await engine.changes.request_change("u1", "premium")

        assert result.replaced_pending_change_id == scheduled.pending_change.id
        history = await engine.facade.get_plan_change_history("u1")
        assert history[0].status == PendingChangeStatus.CANCELLED


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_plan_never_reaches_processor(self, engine: SubscriptionEngine, processor: Any) -> None:
        await engine.provisioner.provision_user("u1")

        with pytest.raises(ValidationError, match="enterprise"):
            await engine.changes.request_change("u1", "enterprise")
        assert processor.calls == []

    @pytest.mark.asyncio
    async def test_unknown_interval(self, engine: SubscriptionEngine) -> None:
        await engine.provisioner.provision_user("u1")
        with pytest.raises(ValidationError, match="weekly"):
            await engine.changes.request_change("u1", "pro", "weekly")

    @pytest.mark.asyncio
    async def test_unknown_user(self, engine: SubscriptionEngine) -> None:
        with pytest.raises(SubscriptionNotFoundError):
            await engine.changes.request_change("ghost", "pro")


class TestDeferredChanges:
    @pytest.mark.asyncio
    async def test_downgrade_to_free_is_scheduled_then_completed_on_renewal(
        self,
        engine: SubscriptionEngine,
        processor: Any,
        clock: Any,
        make_event: Callable[..., Any],
    ) -> None:
        await _pro_monthly(engine)
        period_end = (await engine.facade.get_subscription_view("u1")).billing_period.end

        result = await engine.changes.request_change("u1", "free")

        assert result.outcome == PlanChangeOutcome.SCHEDULED
        assert result.change_type == ChangeType.DOWNGRADE
        assert result.plan_id == "pro"
        assert result.pending_change is not None
        assert result.pending_change.effective_date == period_end
        assert processor.names[-1] == "schedule_cancellation_at_period_end"

        view = await engine.facade.get_subscription_view("u1")
        assert view.plan.id == "pro"
        assert view.pending_change is not None

        clock.set(period_end)
        renewal = await engine.reconciler.apply(
            make_event(
                ReconciliationEventType.BILLING_CYCLE_RENEWED,
                "u1",
                {"period_start": period_end, "period_end": add_months(period_end, 1)},
                event_id="evt_renew",
            )
        )
        assert renewal.outcome == ApplyOutcome.APPLIED
        assert "pending_completed" in renewal.changes

        view = await engine.facade.get_subscription_view("u1")
        assert view.plan.id == "free"
        assert view.pending_change is None
        assert await engine.ledger.remaining("u1", Feature.EMAILS) == 10
        history = await engine.facade.get_plan_change_history("u1")
        assert history[0].status == PendingChangeStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_yearly_to_monthly_schedules_update(self, engine: SubscriptionEngine, processor: Any) -> None:
        await engine.provisioner.provision_user("u1")
        await engine.changes.request_change("u1", "pro", "yearly")

        result = await engine.changes.request_change("u1", "pro", "monthly")

        assert result.outcome == PlanChangeOutcome.SCHEDULED
        assert result.change_type == ChangeType.INTERVAL_SWITCH
        assert processor.names[-1] == "schedule_subscription_update"

    @pytest.mark.asyncio
    async def test_same_target_returns_existing_pending(self, engine: SubscriptionEngine, processor: Any) -> None:
        await _pro_monthly(engine)
        first = await engine.changes.request_change("u1", "free")
        calls_before = len(processor.calls)

        second = await engine.changes.request_change("u1", "free")

        assert second.pending_change == first.pending_change
        assert len(processor.calls) == calls_before

    @pytest.mark.asyncio
    async def test_new_target_replaces_pending(self, engine: SubscriptionEngine, processor: Any) -> None:
        await engine.provisioner.provision_user("u1")
        await engine.changes.request_change("u1", "premium", "yearly")
        first = await engine.changes.request_change("u1", "free")
        assert first.pending_change is not None

        second = await engine.changes.request_change("u1", "pro", "monthly")

        assert second.replaced_pending_change_id == first.pending_change.id
        assert processor.names[-2:] == ["undo_scheduled_cancellation", "schedule_subscription_update"]
        history = await engine.facade.get_plan_change_history("u1")
        assert [change.status for change in history] == [PendingChangeStatus.PENDING, PendingChangeStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_failed_replacement_restores_previous_schedule(
        self,
        engine: SubscriptionEngine,
        processor: Any,
    ) -> None:
        await engine.provisioner.provision_user("u1")
        await engine.changes.request_change("u1", "premium")
        first = await engine.changes.request_change("u1", "free")
        processor.fail_on["schedule_subscription_update"] = ProcessorError("card declined")

        with pytest.raises(ProcessorError, match="card declined"):
            await engine.changes.request_change("u1", "pro")

        assert processor.names[-3:] == [
            "undo_scheduled_cancellation",
            "schedule_subscription_update",
            "schedule_cancellation_at_period_end",
        ]
        view = await engine.facade.get_subscription_view("u1")
        assert view.pending_change == first.pending_change

    @pytest.mark.asyncio
    async def test_missing_customer_is_integrity_violation(self, engine: SubscriptionEngine, processor: Any) -> None:
        await _pro_monthly(engine)
        async with engine.session_factory() as session, session.begin():
            row = await SubscriptionRepository(session).get("u1")
            assert row is not None
            row.external_customer_ref = None

        with pytest.raises(IntegrityViolation):
            await engine.changes.request_change("u1", "free")


class TestProcessorFailures:
    @pytest.mark.asyncio
    async def test_processor_error_leaves_state_unchanged(self, engine: SubscriptionEngine, processor: Any) -> None:
        await engine.provisioner.provision_user("u1")
        processor.fail_on["create_or_update_subscription"] = ProcessorError("declined")

        with pytest.raises(ProcessorError):
            await engine.changes.request_change("u1", "pro")

        view = await engine.facade.get_subscription_view("u1")
        assert view.plan.id == "free"

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, engine: SubscriptionEngine, processor: Any) -> None:
        await engine.provisioner.provision_user("u1", external_customer_ref="cus_1")
        processor.delay = 1.0

        with pytest.raises(ProcessorError) as excinfo:
            await engine.changes.request_change("u1", "pro")

        assert excinfo.value.timeout
        assert excinfo.value.retryable
        assert (await engine.facade.get_subscription_view("u1")).plan.id == "free"


class TestCancelAndPortal:
    @pytest.mark.asyncio
    async def test_cancel_pending_change(self, engine: SubscriptionEngine, processor: Any) -> None:
        await _pro_monthly(engine)
        await engine.changes.request_change("u1", "free")

        cancelled = await engine.changes.cancel_pending_change("u1")

        assert cancelled.status == PendingChangeStatus.CANCELLED
        assert processor.names[-1] == "undo_scheduled_cancellation"
        assert (await engine.facade.get_subscription_view("u1")).pending_change is None

    @pytest.mark.asyncio
    async def test_cancel_without_pending_change(self, engine: SubscriptionEngine) -> None:
        await engine.provisioner.provision_user("u1")
        with pytest.raises(StateConflictError):
            await engine.changes.cancel_pending_change("u1")

    @pytest.mark.asyncio
    async def test_portal_requires_customer(self, engine: SubscriptionEngine) -> None:
        await engine.provisioner.provision_user("u1")
        with pytest.raises(StateConflictError):
            await engine.changes.open_billing_portal("u1", "https://app.example.test")

    @pytest.mark.asyncio
    async def test_portal_url(self, engine: SubscriptionEngine) -> None:
        await engine.provisioner.provision_user("u1", external_customer_ref="cus_7")
        url = await engine.changes.open_billing_portal("u1", "https://app.example.test")
        assert url == "https://billing.example.test/cus_7"
