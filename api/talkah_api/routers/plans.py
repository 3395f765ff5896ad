"""Plan catalog endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from talkah_api.dependencies import EngineDep
from talkah_api.schemas import PlanResponse

router = APIRouter(prefix="/plans", tags=["plans"])


@router.get("", response_model=list[PlanResponse])
async def list_plans(engine: EngineDep) -> list[PlanResponse]:
    """List active plans ordered by tier."""
    plans = await engine.catalog.list_active_plans()
    return [PlanResponse.from_plan(plan) for plan in plans]


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: str, engine: EngineDep) -> PlanResponse:
    """Return one plan; 404 for unknown ids."""
    return PlanResponse.from_plan(await engine.catalog.get_plan(plan_id))
