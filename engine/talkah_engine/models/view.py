"""Read models returned by the query facade and the state machine."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict

from talkah_engine.models.plan import BillingInterval, Plan
from talkah_engine.models.subscription import (
    BillingPeriod,
    ChangeType,
    PendingPlanChange,
    SubscriptionStatus,
)
from talkah_engine.models.usage import FeatureUsage


class SubscriptionView(BaseModel):
    """Everything a client needs to render a user's subscription."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    plan: Plan
    status: SubscriptionStatus
    billing_interval: BillingInterval
    billing_period: BillingPeriod
    pending_change: PendingPlanChange | None = None
    usage: list[FeatureUsage]


class PlanChangeOutcome(str, Enum):
    ALREADY_CURRENT = "already_current"
    APPLIED = "applied"
    SCHEDULED = "scheduled"


class PlanChangeResult(BaseModel):
    """Outcome of a plan change request.

    ``APPLIED`` changes are effective immediately; ``SCHEDULED`` changes
    carry the pending row that the reconciler will complete later.
    """

    model_config = ConfigDict(frozen=True)

    outcome: PlanChangeOutcome
    change_type: ChangeType | None = None
    plan_id: str
    billing_interval: BillingInterval
    pending_change: PendingPlanChange | None = None
    replaced_pending_change_id: int | None = None
