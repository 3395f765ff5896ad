"""Per-user subscription state and pending plan change models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

from talkah_engine.models.plan import BillingInterval


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    TRIALING = "trialing"


class ChangeType(str, Enum):
    """Kind of plan change, derived from tier rank and interval."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    INTERVAL_SWITCH = "interval_switch"


class PendingChangeStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class BillingPeriod(BaseModel):
    """Half-open period ``[start, end)`` in UTC."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


class UserSubscriptionState(BaseModel):
    """Snapshot of a user's subscription row.

    ``plan_as_of`` and ``status_as_of`` record the occurrence time of the
    newest processor event that wrote the plan/interval and the status
    field groups respectively.  Older events never overwrite them.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_id: str
    status: SubscriptionStatus
    billing_interval: BillingInterval
    billing_period: BillingPeriod
    external_customer_ref: str | None = None
    external_subscription_ref: str | None = None
    version: int = 1
    plan_as_of: datetime | None = None
    status_as_of: datetime | None = None


class PendingPlanChange(BaseModel):
    """A deferred change awaiting the reconciler."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    target_plan_id: str
    target_billing_interval: BillingInterval
    change_type: ChangeType
    effective_date: datetime
    status: PendingChangeStatus
    requested_at: datetime
    resolved_at: datetime | None = None
    note: str | None = None
