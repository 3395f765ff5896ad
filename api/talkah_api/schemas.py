"""Request and response models for API endpoints.

Limits are rendered as integers with ``null`` meaning unlimited, and
prices as decimal strings so no precision is lost in JSON.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field
from talkah_engine.models import (
    ApplyResult,
    BillingInterval,
    ConsumeResult,
    FeatureUsage,
    Limited,
    PendingPlanChange,
    PeriodUsage,
    Plan,
    PlanChangeResult,
    SubscriptionView,
    Unlimited,
    UserSubscriptionState,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def limit_value(limit: Limited | Unlimited | int) -> int | None:
    """Render a limit or remaining count; ``None`` stands for unlimited."""
    if isinstance(limit, Unlimited):
        return None
    if isinstance(limit, Limited):
        return limit.count
    return limit


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanResponse(BaseModel):
    """A catalog plan."""

    id: str
    name: str
    description: str = ""
    features: list[str] = Field(default_factory=list)
    limits: dict[str, int | None]
    price_monthly: str
    price_yearly: str
    rank: int

    @classmethod
    def from_plan(cls, plan: Plan) -> PlanResponse:
        return cls(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            features=list(plan.features),
            limits={feature.value: limit_value(limit) for feature, limit in plan.limits.items()},
            price_monthly=str(plan.price(BillingInterval.MONTHLY)),
            price_yearly=str(plan.price(BillingInterval.YEARLY)),
            rank=plan.rank,
        )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class ProvisionRequest(BaseModel):
    external_customer_ref: str | None = None


class SubscriptionStateResponse(BaseModel):
    """The stored subscription row of one user."""

    user_id: str
    plan_id: str
    status: str
    billing_interval: str
    billing_period_start: datetime
    billing_period_end: datetime
    external_customer_ref: str | None = None
    external_subscription_ref: str | None = None

    @classmethod
    def from_state(cls, state: UserSubscriptionState) -> SubscriptionStateResponse:
        return cls(
            user_id=state.user_id,
            plan_id=state.plan_id,
            status=state.status.value,
            billing_interval=state.billing_interval.value,
            billing_period_start=state.billing_period.start,
            billing_period_end=state.billing_period.end,
            external_customer_ref=state.external_customer_ref,
            external_subscription_ref=state.external_subscription_ref,
        )


class PendingChangeResponse(BaseModel):
    """A deferred plan change and its lifecycle status."""

    id: int
    target_plan_id: str
    target_billing_interval: str
    change_type: str
    effective_date: datetime
    status: str
    requested_at: datetime
    resolved_at: datetime | None = None
    note: str | None = None

    @classmethod
    def from_pending(cls, pending: PendingPlanChange) -> PendingChangeResponse:
        return cls(
            id=pending.id,
            target_plan_id=pending.target_plan_id,
            target_billing_interval=pending.target_billing_interval.value,
            change_type=pending.change_type.value,
            effective_date=pending.effective_date,
            status=pending.status.value,
            requested_at=pending.requested_at,
            resolved_at=pending.resolved_at,
            note=pending.note,
        )


class FeatureUsageResponse(BaseModel):
    feature: str
    used: int
    limit: int | None
    remaining: int | None

    @classmethod
    def from_usage(cls, usage: FeatureUsage) -> FeatureUsageResponse:
        return cls(
            feature=usage.feature.value,
            used=usage.used,
            limit=limit_value(usage.limit),
            remaining=limit_value(usage.remaining),
        )


class SubscriptionViewResponse(BaseModel):
    """Current plan, period, pending change and usage of one user."""

    user_id: str
    plan: PlanResponse
    status: str
    billing_interval: str
    billing_period_start: datetime
    billing_period_end: datetime
    pending_change: PendingChangeResponse | None = None
    usage: list[FeatureUsageResponse]

    @classmethod
    def from_view(cls, view: SubscriptionView) -> SubscriptionViewResponse:
        return cls(
            user_id=view.user_id,
            plan=PlanResponse.from_plan(view.plan),
            status=view.status.value,
            billing_interval=view.billing_interval.value,
            billing_period_start=view.billing_period.start,
            billing_period_end=view.billing_period.end,
            pending_change=(
                PendingChangeResponse.from_pending(view.pending_change) if view.pending_change else None
            ),
            usage=[FeatureUsageResponse.from_usage(item) for item in view.usage],
        )


class PlanChangeRequest(BaseModel):
    plan_id: str
    billing_interval: str = BillingInterval.MONTHLY.value
    email: str | None = None


class PlanChangeResponse(BaseModel):
    outcome: str
    change_type: str | None = None
    plan_id: str
    billing_interval: str
    pending_change: PendingChangeResponse | None = None
    replaced_pending_change_id: int | None = None

    @classmethod
    def from_result(cls, result: PlanChangeResult) -> PlanChangeResponse:
        return cls(
            outcome=result.outcome.value,
            change_type=result.change_type.value if result.change_type else None,
            plan_id=result.plan_id,
            billing_interval=result.billing_interval.value,
            pending_change=(
                PendingChangeResponse.from_pending(result.pending_change) if result.pending_change else None
            ),
            replaced_pending_change_id=result.replaced_pending_change_id,
        )


class PortalRequest(BaseModel):
    return_url: str | None = None


class PortalResponse(BaseModel):
    url: str


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class UsageAmountRequest(BaseModel):
    """Units to check, consume or release.  Validated by the ledger."""

    amount: int = 1


class RemainingResponse(BaseModel):
    feature: str
    remaining: int | None
    unlimited: bool


class ConsumeResponse(BaseModel):
    """Decision of a check or consume call.

    ``remaining`` is what is left after the call for an allowed consume,
    or what is left now for a check or a denial.
    """

    allowed: bool
    decision: str
    feature: str
    amount: int
    used: int
    limit: int | None
    remaining: int | None
    reason: str | None = None

    @classmethod
    def from_result(cls, result: ConsumeResult) -> ConsumeResponse:
        return cls(
            allowed=result.allowed,
            decision=result.decision,
            feature=result.feature.value,
            amount=result.amount,
            used=result.used,
            limit=limit_value(result.limit),
            remaining=limit_value(result.limit.remaining(result.used)),
            reason=None if result.allowed else result.reason.value,
        )


class ReleaseResponse(BaseModel):
    feature: str
    used: int


class PeriodUsageResponse(BaseModel):
    period_key: str
    period_start: datetime
    period_end: datetime
    counts: dict[str, int]

    @classmethod
    def from_period(cls, period: PeriodUsage) -> PeriodUsageResponse:
        return cls(
            period_key=period.period_key,
            period_start=period.period_start,
            period_end=period.period_end,
            counts={feature.value: count for feature, count in period.counts.items()},
        )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventResultResponse(BaseModel):
    """Outcome of delivering one processor event."""

    status: str
    external_event_id: str | None = None
    reason: str | None = None
    changes: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: ApplyResult) -> EventResultResponse:
        return cls(
            status=result.outcome.value,
            external_event_id=result.external_event_id,
            reason=result.reason,
            changes=list(result.changes),
        )
