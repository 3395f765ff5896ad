"""Tests for the Stripe payment processor adapter.

The Stripe module is replaced with a mock; its exception classes are the
real ones so error mapping is exercised.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import stripe
from talkah_engine.catalog import DEFAULT_PLANS
from talkah_engine.errors import ProcessorError
from talkah_engine.models import BillingInterval, SubscriptionStatus
from talkah_engine.processor.stripe_processor import StripeProcessor, map_stripe_status

PRO = next(plan for plan in DEFAULT_PLANS if plan.id == "pro").model_copy(
    update={"stripe_price_id_monthly": "price_pro_m", "stripe_price_id_yearly": "price_pro_y"}
)
PERIOD_START = 1_736_942_400
PERIOD_END = 1_739_620_800


def _mock_stripe() -> MagicMock:
    mock = MagicMock()
    mock.StripeError = stripe.StripeError
    mock.APIConnectionError = stripe.APIConnectionError
    mock.RateLimitError = stripe.RateLimitError
    return mock


def _subscription(**overrides: Any) -> dict[str, Any]:
    subscription: dict[str, Any] = {
        "id": "sub_1",
        "status": "active",
        "schedule": None,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "items": {"data": [{"id": "si_1", "price": {"id": "price_free"}}]},
    }
    subscription.update(overrides)
    return subscription


class TestStatusMapping:
    @pytest.mark.parametrize(
        ("stripe_status", "expected"),
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.TRIALING),
            ("unpaid", SubscriptionStatus.PAST_DUE),
            ("incomplete_expired", SubscriptionStatus.CANCELED),
            (None, SubscriptionStatus.ACTIVE),
        ],
    )
    def test_map(self, stripe_status: str | None, expected: SubscriptionStatus) -> None:
        assert map_stripe_status(stripe_status) == expected


class TestStripeProcessor:
    @pytest.mark.asyncio
    async def test_create_customer_tags_user(self) -> None:
        processor = StripeProcessor("sk_test_xxx")
        mock_stripe = _mock_stripe()
        mock_stripe.Customer.create.return_value = {"id": "cus_123"}

        with patch.object(processor, "_get_stripe", return_value=mock_stripe):
            customer_ref = await processor.create_customer("u1", "u1@example.test")

        assert customer_ref == "cus_123"
        mock_stripe.Customer.create.assert_called_once_with(
            metadata={"talkah_user_id": "u1"}, email="u1@example.test"
        )

    @pytest.mark.asyncio
    async def test_new_subscription(self) -> None:
        processor = StripeProcessor("sk_test_xxx")
        mock_stripe = _mock_stripe()
        mock_stripe.Subscription.list.return_value = {"data": []}
        mock_stripe.Subscription.create.return_value = _subscription(id="sub_new")

        with patch.object(processor, "_get_stripe", return_value=mock_stripe):
            confirmation = await processor.create_or_update_subscription("cus_1", PRO, BillingInterval.YEARLY)

        assert confirmation.subscription_ref == "sub_new"
        assert confirmation.status == SubscriptionStatus.ACTIVE
        assert confirmation.period_start == datetime.fromtimestamp(PERIOD_START, tz=UTC)
        kwargs = mock_stripe.Subscription.create.call_args.kwargs
        assert kwargs["items"] == [{"price": "price_pro_y"}]

    @pytest.mark.asyncio
    async def test_existing_subscription_is_modified_with_proration(self) -> None:
        processor = StripeProcessor("sk_test_xxx")
        mock_stripe = _mock_stripe()
        mock_stripe.Subscription.list.return_value = {"data": [_subscription(schedule="sub_sched_1")]}
        mock_stripe.Subscription.modify.return_value = _subscription()

        with patch.object(processor, "_get_stripe", return_value=mock_stripe):
            await processor.create_or_update_subscription("cus_1", PRO, BillingInterval.MONTHLY)

        mock_stripe.SubscriptionSchedule.release.assert_called_once_with("sub_sched_1")
        kwargs = mock_stripe.Subscription.modify.call_args.kwargs
        assert kwargs["items"] == [{"id": "si_1", "price": "price_pro_m"}]
        assert kwargs["proration_behavior"] == "create_prorations"
        assert kwargs["cancel_at_period_end"] is False

    @pytest.mark.asyncio
    async def test_missing_price_id(self) -> None:
        processor = StripeProcessor("sk_test_xxx")
        plan = PRO.model_copy(update={"stripe_price_id_yearly": None})

        with pytest.raises(ProcessorError, match="no Stripe price"):
            await processor.create_or_update_subscription("cus_1", plan, BillingInterval.YEARLY)

    @pytest.mark.asyncio
    async def test_schedule_cancellation(self) -> None:
        processor = StripeProcessor("sk_test_xxx")
        mock_stripe = _mock_stripe()
        mock_stripe.Subscription.list.return_value = {"data": [_subscription()]}

        with patch.object(processor, "_get_stripe", return_value=mock_stripe):
            await processor.schedule_cancellation_at_period_end("cus_1")

        mock_stripe.Subscription.modify.assert_called_once_with("sub_1", cancel_at_period_end=True)

    @pytest.mark.asyncio
    async def test_schedule_cancellation_without_subscription(self) -> None:
        processor = StripeProcessor("sk_test_xxx")
        mock_stripe = _mock_stripe()
        mock_stripe.Subscription.list.return_value = {"data": []}

        with patch.object(processor, "_get_stripe", return_value=mock_stripe):
            with pytest.raises(ProcessorError, match="No live Stripe subscription"):
                await processor.schedule_cancellation_at_period_end("cus_1")

    @pytest.mark.asyncio
    async def test_schedule_update_builds_two_phases(self) -> None:
        processor = StripeProcessor("sk_test_xxx")
        mock_stripe = _mock_stripe()
        mock_stripe.Subscription.list.return_value = {"data": [_subscription()]}
        mock_stripe.SubscriptionSchedule.create.return_value = {
            "id": "sub_sched_2",
            "phases": [{"start_date": PERIOD_START, "items": [{"price": "price_pro_y"}]}],
        }
        effective = datetime.fromtimestamp(PERIOD_END, tz=UTC)

        with patch.object(processor, "_get_stripe", return_value=mock_stripe):
            await processor.schedule_subscription_update("cus_1", PRO, BillingInterval.MONTHLY, effective)

        phases = mock_stripe.SubscriptionSchedule.modify.call_args.kwargs["phases"]
        assert phases[0]["end_date"] == PERIOD_END
        assert phases[1]["items"] == [{"price": "price_pro_m"}]
        assert phases[1]["start_date"] == PERIOD_END

    @pytest.mark.asyncio
    async def test_portal_session(self) -> None:
        processor = StripeProcessor("sk_test_xxx")
        mock_stripe = _mock_stripe()
        mock_stripe.billing_portal.Session.create.return_value = {"url": "https://billing.stripe.com/p/session_1"}

        with patch.object(processor, "_get_stripe", return_value=mock_stripe):
            url = await processor.create_portal_session("cus_1", "https://app.example.test")

        assert url == "https://billing.stripe.com/p/session_1"


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self) -> None:
        processor = StripeProcessor("sk_test_xxx")
        mock_stripe = _mock_stripe()
        mock_stripe.Customer.create.side_effect = stripe.APIConnectionError("network down")

        with patch.object(processor, "_get_stripe", return_value=mock_stripe):
            with pytest.raises(ProcessorError) as excinfo:
                await processor.create_customer("u1")

        assert excinfo.value.retryable
        assert not excinfo.value.timeout

    @pytest.mark.asyncio
    async def test_card_error_is_not_retryable(self) -> None:
        processor = StripeProcessor("sk_test_xxx")
        mock_stripe = _mock_stripe()
        mock_stripe.Subscription.list.return_value = {"data": []}
        mock_stripe.Subscription.create.side_effect = stripe.CardError("card declined", None, "card_declined")

        with patch.object(processor, "_get_stripe", return_value=mock_stripe):
            with pytest.raises(ProcessorError, match="card declined") as excinfo:
                await processor.create_or_update_subscription("cus_1", PRO, BillingInterval.MONTHLY)

        assert not excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self) -> None:
        processor = StripeProcessor("sk_test_xxx", timeout_seconds=0.05)
        mock_stripe = _mock_stripe()
        mock_stripe.Customer.create.side_effect = lambda **_kwargs: time.sleep(0.5) or {"id": "cus_late"}

        with patch.object(processor, "_get_stripe", return_value=mock_stripe):
            with pytest.raises(ProcessorError) as excinfo:
                await processor.create_customer("u1")

        assert excinfo.value.timeout
        assert excinfo.value.retryable
