"""Processor used when billing is switched off.

Every operation fails with a non-retryable :class:`ProcessorError`, so
plan changes are refused cleanly while quota enforcement keeps working.
"""

from __future__ import annotations

from datetime import datetime

from talkah_engine.errors import ProcessorError
from talkah_engine.models.plan import BillingInterval, Plan
from talkah_engine.processor.base import PaymentProcessor, ProcessorConfirmation


class DisabledProcessor(PaymentProcessor):
    """Rejects every call with ``billing is disabled``."""

    def _refuse(self, operation: str) -> ProcessorError:
        return ProcessorError(f"Billing is disabled; cannot {operation}")

    async def create_customer(self, user_id: str, email: str | None = None) -> str:
        raise self._refuse("create a customer")

    async def create_or_update_subscription(
        self,
        customer_ref: str,
        plan: Plan,
        interval: BillingInterval,
        prorate: bool = True,
    ) -> ProcessorConfirmation:
        raise self._refuse("change the subscription")

    async def schedule_cancellation_at_period_end(self, customer_ref: str) -> None:
        raise self._refuse("schedule a cancellation")

    async def undo_scheduled_cancellation(self, customer_ref: str) -> None:
        raise self._refuse("undo a cancellation")

    async def schedule_subscription_update(
        self,
        customer_ref: str,
        plan: Plan,
        interval: BillingInterval,
        effective_at: datetime,
    ) -> None:
        raise self._refuse("schedule a plan change")

    async def release_scheduled_update(self, customer_ref: str) -> None:
        raise self._refuse("release a scheduled change")

    async def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        raise self._refuse("open the billing portal")
