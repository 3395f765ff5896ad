"""Subscription endpoints: provisioning, the subscription view and plan changes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query

from talkah_api.dependencies import EngineDep, SettingsDep
from talkah_api.middleware.prometheus import PLAN_CHANGES_TOTAL
from talkah_api.schemas import (
    PendingChangeResponse,
    PlanChangeRequest,
    PlanChangeResponse,
    PortalRequest,
    PortalResponse,
    ProvisionRequest,
    SubscriptionStateResponse,
    SubscriptionViewResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users/{user_id}/subscription", tags=["subscriptions"])


@router.post("", response_model=SubscriptionStateResponse)
async def provision_subscription(
    user_id: str,
    engine: EngineDep,
    body: ProvisionRequest | None = None,
) -> SubscriptionStateResponse:
    """Create the signup subscription (free, monthly).  Idempotent."""
    customer_ref = body.external_customer_ref if body else None
    state = await engine.provisioner.provision_user(user_id, external_customer_ref=customer_ref)
    return SubscriptionStateResponse.from_state(state)


@router.get("", response_model=SubscriptionViewResponse)
async def get_subscription(user_id: str, engine: EngineDep) -> SubscriptionViewResponse:
    """Current plan, billing period, pending change and usage."""
    view = await engine.facade.get_subscription_view(user_id)
    return SubscriptionViewResponse.from_view(view)


@router.post("/changes", response_model=PlanChangeResponse)
async def request_plan_change(
    user_id: str,
    body: PlanChangeRequest,
    engine: EngineDep,
) -> PlanChangeResponse:
    """Move the user to another plan or interval.

    Upgrades apply immediately; downgrades and interval switches are
    scheduled for the end of the billing period.
    """
    result = await engine.changes.request_change(
        user_id,
        body.plan_id,
        body.billing_interval,
        email=body.email,
    )
    PLAN_CHANGES_TOTAL.labels(outcome=result.outcome.value).inc()
    return PlanChangeResponse.from_result(result)


@router.get("/changes", response_model=list[PendingChangeResponse])
async def list_plan_changes(
    user_id: str,
    engine: EngineDep,
    limit: int = Query(default=20, ge=1, le=200),
) -> list[PendingChangeResponse]:
    """Deferred plan changes of the user, newest first."""
    history = await engine.facade.get_plan_change_history(user_id, limit=limit)
    return [PendingChangeResponse.from_pending(item) for item in history]


@router.delete("/changes/pending", response_model=PendingChangeResponse)
async def cancel_pending_change(user_id: str, engine: EngineDep) -> PendingChangeResponse:
    """Cancel the scheduled plan change; 409 when there is none."""
    cancelled = await engine.changes.cancel_pending_change(user_id)
    PLAN_CHANGES_TOTAL.labels(outcome="cancelled").inc()
    return PendingChangeResponse.from_pending(cancelled)


@router.post("/portal", response_model=PortalResponse)
async def open_billing_portal(
    user_id: str,
    engine: EngineDep,
    settings: SettingsDep,
    body: PortalRequest | None = None,
) -> PortalResponse:
    """Return a URL to the payment processor's self-service portal."""
    return_url = (body.return_url if body else None) or settings.portal_return_url
    url = await engine.changes.open_billing_portal(user_id, return_url)
    return PortalResponse(url=url)
