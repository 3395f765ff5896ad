"""Usage ledger results."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict

from talkah_engine.models.plan import Feature, LimitValue, RemainingValue


class DenialReason(str, Enum):
    LIMIT_EXCEEDED = "limit_exceeded"


class Allowed(BaseModel):
    """The requested amount fits (or was consumed) within the plan limit."""

    model_config = ConfigDict(frozen=True)

    decision: Literal["allowed"] = "allowed"
    feature: Feature
    amount: int
    used: int
    limit: LimitValue

    @property
    def allowed(self) -> bool:
        return True


class Denied(BaseModel):
    """The requested amount would push usage past the plan limit."""

    model_config = ConfigDict(frozen=True)

    decision: Literal["denied"] = "denied"
    feature: Feature
    amount: int
    used: int
    limit: LimitValue
    reason: DenialReason = DenialReason.LIMIT_EXCEEDED

    @property
    def allowed(self) -> bool:
        return False


ConsumeResult = Allowed | Denied


class FeatureUsage(BaseModel):
    """Usage of one feature in one billing period."""

    model_config = ConfigDict(frozen=True)

    feature: Feature
    used: int
    limit: LimitValue
    remaining: RemainingValue


class PeriodUsage(BaseModel):
    """Stored counters of one (possibly closed) billing period."""

    model_config = ConfigDict(frozen=True)

    period_key: str
    period_start: datetime
    period_end: datetime
    counts: dict[Feature, int]
