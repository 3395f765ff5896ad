"""Translation of verified Stripe webhook events into reconciliation events.

Only the event kinds the reconciler understands are translated; anything
else yields ``None`` and is acknowledged without effect.  Users are
resolved by Stripe customer id, falling back to the ``talkah_user_id``
metadata written when the customer was created.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talkah_engine.errors import IntegrityViolation
from talkah_engine.models.events import ReconciliationEvent, ReconciliationEventType
from talkah_engine.models.plan import BillingInterval
from talkah_engine.processor.stripe_processor import USER_ID_METADATA_KEY, field, map_stripe_status
from talkah_engine.state.repository import PlanRepository, SubscriptionRepository

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = frozenset({"customer.subscription.created", "customer.subscription.updated"})
PAYMENT_SUCCEEDED_EVENTS = frozenset({"invoice.paid", "invoice.payment_succeeded"})


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _subscription_price_id(subscription: Mapping[str, Any]) -> str | None:
    items = field(field(subscription, "items"), "data", [])
    if not items:
        return None
    price = field(items[0], "price")
    return price if isinstance(price, str) else field(price, "id")


def _subscription_period(subscription: Mapping[str, Any]) -> tuple[datetime | None, datetime | None]:
    start = field(subscription, "current_period_start")
    end = field(subscription, "current_period_end")
    if start is None or end is None:
        items = field(field(subscription, "items"), "data", [])
        if items:
            start = field(items[0], "current_period_start", start)
            end = field(items[0], "current_period_end", end)
    return _timestamp(start), _timestamp(end)


def _invoice_line(invoice: Mapping[str, Any]) -> Mapping[str, Any] | None:
    lines = field(field(invoice, "lines"), "data", [])
    return lines[0] if lines else None


def _invoice_price_id(invoice: Mapping[str, Any]) -> str | None:
    line = _invoice_line(invoice)
    if line is None:
        return None
    price = field(line, "price")
    if price is not None:
        return price if isinstance(price, str) else field(price, "id")
    # API versions from 2025 onward moved the price under ``pricing``.
    return field(field(field(line, "pricing"), "price_details"), "price")


def _invoice_period(invoice: Mapping[str, Any]) -> tuple[datetime | None, datetime | None]:
    line = _invoice_line(invoice)
    period = field(line, "period")
    return _timestamp(field(period, "start")), _timestamp(field(period, "end"))


def _invoice_subscription_ref(invoice: Mapping[str, Any]) -> str | None:
    subscription = field(invoice, "subscription")
    if subscription is None:
        subscription = field(field(field(invoice, "parent"), "subscription_details"), "subscription")
    if isinstance(subscription, Mapping):
        return field(subscription, "id")
    return subscription


class StripeEventTranslator:
    """Maps Stripe webhook payloads to :class:`ReconciliationEvent` objects.

    Parameters
    ----------
    session_factory:
        Factory producing sessions used to look up users and price ids.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _resolve_user(self, session: AsyncSession, data_object: Mapping[str, Any]) -> str:
        customer_ref = field(data_object, "customer")
        if isinstance(customer_ref, Mapping):
            customer_ref = field(customer_ref, "id")
        if customer_ref:
            row = await SubscriptionRepository(session).get_by_customer_ref(customer_ref)
            if row is not None:
                return row.user_id

        user_id = field(field(data_object, "metadata"), USER_ID_METADATA_KEY)
        if user_id:
            return str(user_id)
        raise IntegrityViolation(f"Cannot resolve a user for Stripe customer '{customer_ref}'")

    async def _resolve_price(self, session: AsyncSession, price_id: str | None) -> tuple[str, BillingInterval]:
        if not price_id:
            raise IntegrityViolation("Stripe object carries no price id")
        match = await PlanRepository(session).get_by_stripe_price_id(price_id)
        if match is None:
            raise IntegrityViolation(f"Unknown Stripe price id '{price_id}'")
        row, interval = match
        return row.plan_id, interval

    async def translate(self, event: Mapping[str, Any]) -> ReconciliationEvent | None:
        """Translate one verified Stripe event.

        Returns
        -------
        ReconciliationEvent | None
            ``None`` for event types the engine does not track.

        Raises
        ------
        IntegrityViolation
            When the user or price id cannot be resolved.
        """
        event_type = field(event, "type", "")
        data_object = field(field(event, "data"), "object", {})
        occurred_at = _timestamp(field(event, "created")) or datetime.now(UTC)
        base: dict[str, Any] = {
            "external_event_id": field(event, "id"),
            "occurred_at": occurred_at,
        }

        if event_type not in SUBSCRIPTION_EVENTS | PAYMENT_SUCCEEDED_EVENTS | {
            "invoice.payment_failed",
            "customer.subscription.deleted",
        }:
            logger.debug("Unhandled Stripe event type: %s", event_type)
            return None

        async with self._session_factory() as session:
            user_id = await self._resolve_user(session, data_object)
            base["user_id"] = user_id

            if event_type in SUBSCRIPTION_EVENTS:
                plan_id, interval = await self._resolve_price(session, _subscription_price_id(data_object))
                period_start, period_end = _subscription_period(data_object)
                return ReconciliationEvent.model_validate(
                    {
                        **base,
                        "event_type": ReconciliationEventType.SUBSCRIPTION_UPDATED,
                        "payload": {
                            "subscription_ref": field(data_object, "id"),
                            "customer_ref": field(data_object, "customer"),
                            "plan_id": plan_id,
                            "billing_interval": interval,
                            "status": map_stripe_status(field(data_object, "status")),
                            "period_start": period_start,
                            "period_end": period_end,
                            "cancel_at_period_end": bool(field(data_object, "cancel_at_period_end", False)),
                        },
                    }
                )

            if event_type in PAYMENT_SUCCEEDED_EVENTS:
                period_start, period_end = _invoice_period(data_object)
                common = {
                    "subscription_ref": _invoice_subscription_ref(data_object),
                    "customer_ref": field(data_object, "customer"),
                }
                if field(data_object, "billing_reason") == "subscription_cycle" and period_start and period_end:
                    return ReconciliationEvent.model_validate(
                        {
                            **base,
                            "event_type": ReconciliationEventType.BILLING_CYCLE_RENEWED,
                            "payload": {**common, "period_start": period_start, "period_end": period_end},
                        }
                    )
                payload: dict[str, Any] = dict(common)
                price_id = _invoice_price_id(data_object)
                if price_id and period_start and period_end:
                    match = await PlanRepository(session).get_by_stripe_price_id(price_id)
                    if match is not None:
                        payload.update(
                            plan_id=match[0].plan_id,
                            billing_interval=match[1],
                            period_start=period_start,
                            period_end=period_end,
                        )
                return ReconciliationEvent.model_validate(
                    {**base, "event_type": ReconciliationEventType.PAYMENT_SUCCEEDED, "payload": payload}
                )

            if event_type == "invoice.payment_failed":
                return ReconciliationEvent.model_validate(
                    {
                        **base,
                        "event_type": ReconciliationEventType.PAYMENT_FAILED,
                        "payload": {
                            "subscription_ref": _invoice_subscription_ref(data_object),
                            "customer_ref": field(data_object, "customer"),
                            "attempt_count": int(field(data_object, "attempt_count", 1)),
                        },
                    }
                )

            _start, period_end = _subscription_period(data_object)
            return ReconciliationEvent.model_validate(
                {
                    **base,
                    "event_type": ReconciliationEventType.SUBSCRIPTION_CANCELED,
                    "payload": {
                        "subscription_ref": field(data_object, "id"),
                        "customer_ref": field(data_object, "customer"),
                        "ended_at": _timestamp(field(data_object, "ended_at")),
                        "period_end": period_end,
                    },
                }
            )
