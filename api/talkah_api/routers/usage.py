"""Quota endpoints backed by the usage ledger.

A denied consume is not an error: it answers 200 with ``allowed=false``
and ``reason=limit_exceeded`` so callers can branch on the body.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query
from talkah_engine.models import Unlimited

from talkah_api.dependencies import EngineDep
from talkah_api.middleware.prometheus import USAGE_DECISIONS_TOTAL
from talkah_api.schemas import (
    ConsumeResponse,
    FeatureUsageResponse,
    PeriodUsageResponse,
    ReleaseResponse,
    RemainingResponse,
    UsageAmountRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users/{user_id}/usage", tags=["usage"])


@router.get("", response_model=list[PeriodUsageResponse])
async def usage_history(
    user_id: str,
    engine: EngineDep,
    limit: int = Query(default=12, ge=1, le=120),
) -> list[PeriodUsageResponse]:
    """Per-period counters of the user, newest period first."""
    history = await engine.facade.get_usage_history(user_id, limit=limit)
    return [PeriodUsageResponse.from_period(period) for period in history]


@router.get("/current", response_model=list[FeatureUsageResponse])
async def current_usage(user_id: str, engine: EngineDep) -> list[FeatureUsageResponse]:
    """Usage of every feature in the current billing period."""
    return [FeatureUsageResponse.from_usage(item) for item in await engine.ledger.usage(user_id)]


@router.get("/{feature}", response_model=RemainingResponse)
async def remaining(user_id: str, feature: str, engine: EngineDep) -> RemainingResponse:
    """Units of *feature* left in the current period."""
    left = await engine.ledger.remaining(user_id, feature)
    if isinstance(left, Unlimited):
        return RemainingResponse(feature=feature, remaining=None, unlimited=True)
    return RemainingResponse(feature=feature, remaining=left, unlimited=False)


@router.post("/{feature}/check", response_model=ConsumeResponse)
async def check(
    user_id: str,
    feature: str,
    engine: EngineDep,
    body: UsageAmountRequest | None = None,
) -> ConsumeResponse:
    """Authorise an amount without consuming it."""
    amount = body.amount if body else 1
    result = await engine.ledger.check(user_id, feature, amount)
    return ConsumeResponse.from_result(result)


@router.post("/{feature}/consume", response_model=ConsumeResponse)
async def consume(
    user_id: str,
    feature: str,
    engine: EngineDep,
    body: UsageAmountRequest | None = None,
) -> ConsumeResponse:
    """Atomically consume an amount if it fits the plan limit."""
    amount = body.amount if body else 1
    result = await engine.ledger.try_consume(user_id, feature, amount)
    USAGE_DECISIONS_TOTAL.labels(feature=result.feature.value, decision=result.decision).inc()
    return ConsumeResponse.from_result(result)


@router.post("/{feature}/release", response_model=ReleaseResponse)
async def release(
    user_id: str,
    feature: str,
    engine: EngineDep,
    body: UsageAmountRequest | None = None,
) -> ReleaseResponse:
    """Give back units whose downstream action failed."""
    amount = body.amount if body else 1
    used = await engine.ledger.release(user_id, feature, amount)
    return ReleaseResponse(feature=feature, used=used)
