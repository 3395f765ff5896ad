"""Processor events consumed by the reconciler and their outcomes.

Every :class:`ReconciliationEventType` has exactly one payload model.
Payloads are validated when the event is constructed, so a malformed
delivery is rejected before any state is touched.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from talkah_engine.models.plan import BillingInterval
from talkah_engine.models.subscription import SubscriptionStatus


class ReconciliationEventType(str, Enum):
    SUBSCRIPTION_UPDATED = "subscription.updated"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    BILLING_CYCLE_RENEWED = "billing_cycle_renewed"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription.canceled"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    subscription_ref: str | None = None
    customer_ref: str | None = None


class SubscriptionUpdatedPayload(_Payload):
    """Authoritative subscription snapshot from the processor."""

    plan_id: str
    billing_interval: BillingInterval
    status: SubscriptionStatus
    period_start: datetime
    period_end: datetime
    cancel_at_period_end: bool = False

    @model_validator(mode="after")
    def _period_is_ordered(self) -> SubscriptionUpdatedPayload:
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self


class PaymentSucceededPayload(_Payload):
    """A successful charge.

    When the charge confirms a subscription change (e.g. an immediate
    upgrade), the subscription fields are all present.
    """

    plan_id: str | None = None
    billing_interval: BillingInterval | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None

    @model_validator(mode="after")
    def _subscription_fields_complete(self) -> PaymentSucceededPayload:
        fields = (self.plan_id, self.billing_interval, self.period_start, self.period_end)
        present = [f is not None for f in fields]
        if any(present) and not all(present):
            raise ValueError("plan_id, billing_interval, period_start and period_end must be given together")
        if self.period_start is not None and self.period_end is not None and self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self

    @property
    def carries_subscription(self) -> bool:
        return self.plan_id is not None


class BillingCycleRenewedPayload(_Payload):
    """The processor opened a new billing period."""

    period_start: datetime
    period_end: datetime

    @model_validator(mode="after")
    def _period_is_ordered(self) -> BillingCycleRenewedPayload:
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self


class PaymentFailedPayload(_Payload):
    attempt_count: int = Field(default=1, ge=0)


class SubscriptionCanceledPayload(_Payload):
    """The paid subscription was cancelled at the processor.

    ``ended_at`` is set when the subscription has already ended; otherwise
    the paid plan stays effective until ``period_end``.
    """

    ended_at: datetime | None = None
    period_end: datetime | None = None


PAYLOAD_MODELS: dict[ReconciliationEventType, type[_Payload]] = {
    ReconciliationEventType.SUBSCRIPTION_UPDATED: SubscriptionUpdatedPayload,
    ReconciliationEventType.PAYMENT_SUCCEEDED: PaymentSucceededPayload,
    ReconciliationEventType.BILLING_CYCLE_RENEWED: BillingCycleRenewedPayload,
    ReconciliationEventType.PAYMENT_FAILED: PaymentFailedPayload,
    ReconciliationEventType.SUBSCRIPTION_CANCELED: SubscriptionCanceledPayload,
}


# ---------------------------------------------------------------------------
# Event envelope
# ---------------------------------------------------------------------------


class ReconciliationEvent(BaseModel):
    """A processor event addressed to one user.

    ``payload`` accepts a plain mapping and is parsed into the payload model
    that matches ``event_type``.
    """

    model_config = ConfigDict(frozen=True)

    external_event_id: str = Field(..., min_length=1, max_length=255)
    event_type: ReconciliationEventType
    user_id: str = Field(..., min_length=1, max_length=64)
    occurred_at: datetime
    payload: (
        SubscriptionUpdatedPayload
        | PaymentSucceededPayload
        | BillingCycleRenewedPayload
        | PaymentFailedPayload
        | SubscriptionCanceledPayload
    )

    @model_validator(mode="before")
    @classmethod
    def _parse_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw_type = data.get("event_type")
        raw_payload = data.get("payload", {})
        try:
            event_type = ReconciliationEventType(raw_type)
        except ValueError:
            # Leave it to field validation to report the bad type.
            return data
        model = PAYLOAD_MODELS[event_type]
        if isinstance(raw_payload, model):
            return data
        if isinstance(raw_payload, BaseModel):
            raw_payload = raw_payload.model_dump()
        return {**data, "payload": model.model_validate(raw_payload)}

    @model_validator(mode="after")
    def _payload_matches_type(self) -> ReconciliationEvent:
        expected = PAYLOAD_MODELS[self.event_type]
        if type(self.payload) is not expected:
            raise ValueError(f"Payload for {self.event_type.value} must be {expected.__name__}")
        return self


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    FAILED = "failed"


class ApplyResult(BaseModel):
    """Result of :meth:`talkah_engine.reconciler.EventReconciler.apply`.

    ``reason`` is ``duplicate`` or ``stale`` for ignored events and a short
    description for failed ones.
    """

    model_config = ConfigDict(frozen=True)

    external_event_id: str
    outcome: ApplyOutcome
    reason: str | None = None
    changes: list[str] = Field(default_factory=list)
