"""Processor event intake.

``POST /webhooks/stripe`` is authenticated by the Stripe signature and
feeds verified events through the translator into the reconciler.
``POST /events`` accepts already-normalised reconciliation events from
trusted internal callers (service-token protected), e.g. manual replays.

Events that cannot be applied are acknowledged with HTTP 200 and status
``failed`` so the processor does not retry indefinitely; the failure is
logged with the full payload for manual replay.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError as PayloadValidationError
from talkah_engine.errors import IntegrityViolation
from talkah_engine.models import ApplyResult, ReconciliationEvent

from talkah_api.dependencies import EngineDep, SettingsDep
from talkah_api.middleware.prometheus import RECONCILER_EVENTS_TOTAL
from talkah_api.schemas import EventResultResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

events_router = APIRouter(prefix="/events", tags=["events"])


def _count(event_type: str, result: ApplyResult) -> None:
    RECONCILER_EVENTS_TOTAL.labels(event_type=event_type, outcome=result.outcome.value).inc()


@router.post("/stripe", response_model=EventResultResponse)
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    engine: EngineDep,
) -> EventResultResponse:
    """Handle an incoming Stripe webhook event.

    Validates the signature with the configured webhook secret, translates
    the event and applies it.  Event types the engine does not track are
    acknowledged as ``ignored``.
    """
    if not settings.billing_enabled:
        return EventResultResponse(status="billing_disabled")

    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    import stripe

    try:
        stripe.Webhook.construct_event(
            payload=body,
            sig_header=sig_header,
            secret=settings.stripe_webhook_secret.get_secret_value(),
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload") from None
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail="Signature verification failed") from None

    event = json.loads(body)
    stripe_type = str(event.get("type", ""))
    event_id = event.get("id")

    try:
        translated = await engine.stripe_events.translate(event)
    except (IntegrityViolation, PayloadValidationError) as exc:
        logger.error(
            "Stripe event %s (%s) could not be translated: %s; payload=%s",
            event_id,
            stripe_type,
            exc,
            body.decode("utf-8", errors="replace"),
        )
        RECONCILER_EVENTS_TOTAL.labels(event_type=stripe_type, outcome="failed").inc()
        return EventResultResponse(status="failed", external_event_id=event_id, reason=str(exc))

    if translated is None:
        return EventResultResponse(status="ignored", external_event_id=event_id, reason="untracked_event_type")

    result = await engine.reconciler.apply(translated)
    _count(translated.event_type.value, result)
    return EventResultResponse.from_result(result)


@events_router.post("", response_model=EventResultResponse)
async def apply_event(event: ReconciliationEvent, engine: EngineDep) -> EventResultResponse:
    """Apply one normalised reconciliation event."""
    result = await engine.reconciler.apply(event)
    _count(event.event_type.value, result)
    return EventResultResponse.from_result(result)
