"""Pure classification of a requested plan change."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict

from talkah_engine.changes.effects import normalize_interval
from talkah_engine.models.plan import BillingInterval, Plan
from talkah_engine.models.subscription import ChangeType


class Timing(str, Enum):
    NONE = "none"
    IMMEDIATE = "immediate"
    DEFERRED = "deferred"


class Transition(BaseModel):
    """How a change from the current to the target plan is carried out."""

    model_config = ConfigDict(frozen=True)

    timing: Timing
    change_type: ChangeType | None = None

    @property
    def already_current(self) -> bool:
        return self.timing == Timing.NONE


ALREADY_CURRENT = Transition(timing=Timing.NONE)


def classify_transition(
    current_plan: Plan,
    current_interval: BillingInterval,
    target_plan: Plan,
    target_interval: BillingInterval,
) -> Transition:
    """Classify a plan change by tier rank and billing interval.

    * same plan and interval (the free tier ignores interval): already current
    * higher rank: immediate upgrade, whatever the interval
    * same rank, monthly to yearly: immediate interval switch
    * same rank, yearly to monthly: deferred interval switch
    * lower rank: deferred downgrade

    A lateral move between two different plans of equal rank is treated as
    an immediate upgrade so the processor prorates it.
    """
    current_interval = normalize_interval(current_plan.id, current_interval)
    target_interval = normalize_interval(target_plan.id, target_interval)

    if current_plan.id == target_plan.id and current_interval == target_interval:
        return ALREADY_CURRENT

    if target_plan.rank > current_plan.rank:
        return Transition(timing=Timing.IMMEDIATE, change_type=ChangeType.UPGRADE)
    if target_plan.rank < current_plan.rank:
        return Transition(timing=Timing.DEFERRED, change_type=ChangeType.DOWNGRADE)
    if current_plan.id != target_plan.id:
        return Transition(timing=Timing.IMMEDIATE, change_type=ChangeType.UPGRADE)
    if target_interval == BillingInterval.YEARLY:
        return Transition(timing=Timing.IMMEDIATE, change_type=ChangeType.INTERVAL_SWITCH)
    return Transition(timing=Timing.DEFERRED, change_type=ChangeType.INTERVAL_SWITCH)
