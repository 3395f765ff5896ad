"""Pydantic domain models shared by the engine, API and CLI."""

from talkah_engine.models.events import (
    ApplyOutcome,
    ApplyResult,
    ReconciliationEvent,
    ReconciliationEventType,
)
from talkah_engine.models.plan import (
    UNLIMITED,
    BillingInterval,
    Feature,
    Limit,
    Limited,
    Plan,
    Unlimited,
)
from talkah_engine.models.subscription import (
    BillingPeriod,
    ChangeType,
    PendingChangeStatus,
    PendingPlanChange,
    SubscriptionStatus,
    UserSubscriptionState,
)
from talkah_engine.models.usage import Allowed, ConsumeResult, Denied, DenialReason, FeatureUsage, PeriodUsage
from talkah_engine.models.view import PlanChangeOutcome, PlanChangeResult, SubscriptionView

__all__ = [
    "UNLIMITED",
    "Allowed",
    "ApplyOutcome",
    "ApplyResult",
    "BillingInterval",
    "BillingPeriod",
    "ChangeType",
    "ConsumeResult",
    "Denied",
    "DenialReason",
    "Feature",
    "FeatureUsage",
    "Limit",
    "Limited",
    "PendingChangeStatus",
    "PendingPlanChange",
    "PeriodUsage",
    "Plan",
    "PlanChangeOutcome",
    "PlanChangeResult",
    "ReconciliationEvent",
    "ReconciliationEventType",
    "SubscriptionStatus",
    "SubscriptionView",
    "Unlimited",
    "UserSubscriptionState",
]
