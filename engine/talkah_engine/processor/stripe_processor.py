"""Stripe implementation of :class:`~talkah_engine.processor.base.PaymentProcessor`.

The Stripe SDK is synchronous; every call runs in a worker thread and is
bounded by a deadline.  Deferred plan changes use subscription schedules,
downgrades to the free tier use ``cancel_at_period_end``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from talkah_engine.errors import ProcessorError
from talkah_engine.models.plan import BillingInterval, Plan
from talkah_engine.models.subscription import SubscriptionStatus
from talkah_engine.processor.base import PaymentProcessor, ProcessorConfirmation

logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_ID_METADATA_KEY = "talkah_user_id"

# Stripe subscription statuses that map onto the engine's vocabulary.
_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def map_stripe_status(status: str | None) -> SubscriptionStatus:
    return _STATUS_MAP.get(status or "", SubscriptionStatus.ACTIVE)


def field(obj: Any, key: str, default: Any = None) -> Any:
    """Read *key* from a Stripe object or plain mapping."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def subscription_period(subscription: Any) -> tuple[datetime, datetime]:
    """Extract the current period of a Stripe subscription.

    Newer API versions report the period on the subscription items only.
    """
    start = field(subscription, "current_period_start")
    end = field(subscription, "current_period_end")
    if start is None or end is None:
        items = field(field(subscription, "items"), "data", [])
        if items:
            start = field(items[0], "current_period_start", start)
            end = field(items[0], "current_period_end", end)
    if start is None or end is None:
        raise ProcessorError("Stripe subscription carries no current period")
    return datetime.fromtimestamp(int(start), tz=UTC), datetime.fromtimestamp(int(end), tz=UTC)


class StripeProcessor(PaymentProcessor):
    """Payment processor backed by the Stripe API.

    Parameters
    ----------
    secret_key:
        Stripe secret API key.
    timeout_seconds:
        Deadline for each SDK call; exceeding it raises a retryable
        :class:`ProcessorError`.
    """

    def __init__(self, secret_key: str, timeout_seconds: float = 10.0) -> None:
        self._secret_key = secret_key
        self._timeout = timeout_seconds

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._secret_key
        return stripe

    async def _call(self, description: str, fn: Callable[[], T]) -> T:
        stripe = self._get_stripe()
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self._timeout)
        except TimeoutError:
            logger.warning("Stripe call timed out after %.1fs: %s", self._timeout, description)
            raise ProcessorError(f"Stripe timed out: {description}", retryable=True, timeout=True) from None
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("Transient Stripe failure during %s: %s", description, exc)
            raise ProcessorError(f"Stripe unavailable: {description}", retryable=True) from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe rejected %s: %s", description, exc)
            raise ProcessorError(f"Stripe rejected {description}: {exc}") from exc

    def _price_id(self, plan: Plan, interval: BillingInterval) -> str:
        price_id = plan.stripe_price_id(interval)
        if not price_id:
            raise ProcessorError(f"Plan '{plan.id}' has no Stripe price for {interval.value} billing")
        return price_id

    def _live_subscription(self, customer_ref: str) -> Any | None:
        stripe = self._get_stripe()
        for status in ("active", "trialing", "past_due"):
            listing = stripe.Subscription.list(customer=customer_ref, status=status, limit=1)
            data = field(listing, "data", [])
            if data:
                return data[0]
        return None

    def _require_subscription(self, customer_ref: str) -> Any:
        subscription = self._live_subscription(customer_ref)
        if subscription is None:
            raise ProcessorError(f"No live Stripe subscription for customer {customer_ref}")
        return subscription

    def _release_schedule(self, subscription: Any) -> None:
        schedule = field(subscription, "schedule")
        if schedule:
            schedule_id = schedule if isinstance(schedule, str) else field(schedule, "id")
            self._get_stripe().SubscriptionSchedule.release(schedule_id)

    # ------------------------------------------------------------------
    # PaymentProcessor
    # ------------------------------------------------------------------

    async def create_customer(self, user_id: str, email: str | None = None) -> str:
        def _create() -> str:
            params: dict[str, Any] = {"metadata": {USER_ID_METADATA_KEY: user_id}}
            if email:
                params["email"] = email
            customer = self._get_stripe().Customer.create(**params)
            return str(customer["id"])

        customer_ref = await self._call("create customer", _create)
        logger.info("Created Stripe customer %s for user=%s", customer_ref, user_id)
        return customer_ref

    async def create_or_update_subscription(
        self,
        customer_ref: str,
        plan: Plan,
        interval: BillingInterval,
        prorate: bool = True,
    ) -> ProcessorConfirmation:
        price_id = self._price_id(plan, interval)

        def _apply() -> Any:
            stripe = self._get_stripe()
            existing = self._live_subscription(customer_ref)
            if existing is None:
                return stripe.Subscription.create(
                    customer=customer_ref,
                    items=[{"price": price_id}],
                    metadata={"plan_id": plan.id, "billing_interval": interval.value},
                )
            self._release_schedule(existing)
            item_id = field(field(existing, "items"), "data", [])[0]["id"]
            return stripe.Subscription.modify(
                existing["id"],
                items=[{"id": item_id, "price": price_id}],
                proration_behavior="create_prorations" if prorate else "none",
                cancel_at_period_end=False,
                metadata={"plan_id": plan.id, "billing_interval": interval.value},
            )

        subscription = await self._call(f"subscribe {customer_ref} to {plan.id}/{interval.value}", _apply)
        start, end = subscription_period(subscription)
        return ProcessorConfirmation(
            subscription_ref=str(subscription["id"]),
            status=map_stripe_status(field(subscription, "status")),
            period_start=start,
            period_end=end,
            confirmed_at=datetime.now(UTC),
        )

    async def schedule_cancellation_at_period_end(self, customer_ref: str) -> None:
        def _schedule() -> None:
            subscription = self._require_subscription(customer_ref)
            self._get_stripe().Subscription.modify(subscription["id"], cancel_at_period_end=True)

        await self._call(f"schedule cancellation for {customer_ref}", _schedule)

    async def undo_scheduled_cancellation(self, customer_ref: str) -> None:
        def _undo() -> None:
            subscription = self._require_subscription(customer_ref)
            self._get_stripe().Subscription.modify(subscription["id"], cancel_at_period_end=False)

        await self._call(f"undo cancellation for {customer_ref}", _undo)

    async def schedule_subscription_update(
        self,
        customer_ref: str,
        plan: Plan,
        interval: BillingInterval,
        effective_at: datetime,
    ) -> None:
        price_id = self._price_id(plan, interval)

        def _schedule() -> None:
            stripe = self._get_stripe()
            subscription = self._require_subscription(customer_ref)
            self._release_schedule(subscription)
            schedule = stripe.SubscriptionSchedule.create(from_subscription=subscription["id"])
            current_phase = field(schedule, "phases", [])[0]
            current_items: list[dict[str, Any]] = []
            for item in field(current_phase, "items", []):
                price = field(item, "price")
                current_items.append({"price": price if isinstance(price, str) else price["id"]})
            stripe.SubscriptionSchedule.modify(
                schedule["id"],
                end_behavior="release",
                phases=[
                    {
                        "items": current_items,
                        "start_date": field(current_phase, "start_date"),
                        "end_date": int(effective_at.timestamp()),
                    },
                    {
                        "items": [{"price": price_id}],
                        "start_date": int(effective_at.timestamp()),
                        "proration_behavior": "none",
                        "metadata": {"plan_id": plan.id, "billing_interval": interval.value},
                    },
                ],
            )

        await self._call(f"schedule {plan.id}/{interval.value} for {customer_ref}", _schedule)

    async def release_scheduled_update(self, customer_ref: str) -> None:
        def _release() -> None:
            subscription = self._live_subscription(customer_ref)
            if subscription is not None:
                self._release_schedule(subscription)

        await self._call(f"release scheduled update for {customer_ref}", _release)

    async def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        def _portal() -> str:
            session = self._get_stripe().billing_portal.Session.create(
                customer=customer_ref,
                return_url=return_url,
            )
            return str(session["url"])

        return await self._call(f"portal session for {customer_ref}", _portal)
