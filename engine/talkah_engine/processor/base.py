"""Payment processor interface used by the plan change state machine.

The engine never talks to a processor SDK directly.  Implementations
translate their own failures into :class:`~talkah_engine.errors.ProcessorError`
so callers can tell processor trouble from local validation errors.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from talkah_engine.models.plan import BillingInterval, Plan
from talkah_engine.models.subscription import SubscriptionStatus


class ProcessorConfirmation(BaseModel):
    """What the processor reports after an immediate subscription change."""

    model_config = ConfigDict(frozen=True)

    subscription_ref: str
    status: SubscriptionStatus
    period_start: datetime
    period_end: datetime
    confirmed_at: datetime


class PaymentProcessor(ABC):
    """Subscription operations offered by the external payment processor."""

    @abstractmethod
    async def create_customer(self, user_id: str, email: str | None = None) -> str:
        """Create a processor customer for *user_id* and return its reference."""

    @abstractmethod
    async def create_or_update_subscription(
        self,
        customer_ref: str,
        plan: Plan,
        interval: BillingInterval,
        prorate: bool = True,
    ) -> ProcessorConfirmation:
        """Put the customer on *plan*/*interval* now.

        Any scheduled cancellation or scheduled update is cleared.
        """

    @abstractmethod
    async def schedule_cancellation_at_period_end(self, customer_ref: str) -> None:
        """Cancel the paid subscription when the current period ends."""

    @abstractmethod
    async def undo_scheduled_cancellation(self, customer_ref: str) -> None:
        """Keep the paid subscription running past the current period."""

    @abstractmethod
    async def schedule_subscription_update(
        self,
        customer_ref: str,
        plan: Plan,
        interval: BillingInterval,
        effective_at: datetime,
    ) -> None:
        """Switch to *plan*/*interval* at *effective_at* without proration."""

    @abstractmethod
    async def release_scheduled_update(self, customer_ref: str) -> None:
        """Drop a change previously registered with :meth:`schedule_subscription_update`."""

    @abstractmethod
    async def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Return a URL to the processor's self-service portal."""
