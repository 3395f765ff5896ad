"""Shared fixtures for engine tests.

Every test gets its own in-memory SQLite store seeded with the default
catalog, a controllable clock and an in-memory payment processor that
records calls and can be told to fail or stall.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from talkah_engine.engine import SubscriptionEngine
from talkah_engine.errors import ProcessorError
from talkah_engine.models import (
    BillingInterval,
    Plan,
    ReconciliationEvent,
    ReconciliationEventType,
    SubscriptionStatus,
)
from talkah_engine.periods import add_intervals
from talkah_engine.processor.base import PaymentProcessor, ProcessorConfirmation
from talkah_engine.state.sqlite_adapter import create_local_tables, get_local_engine

START = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)

PRICE_IDS = {
    "pro_monthly": "price_pro_monthly",
    "pro_yearly": "price_pro_yearly",
    "premium_monthly": "price_premium_monthly",
    "premium_yearly": "price_premium_yearly",
}


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


class FakeProcessor(PaymentProcessor):
    """In-memory processor.

    ``fail_on`` maps an operation name to the error it raises; ``delay``
    makes every call sleep first (used to trigger deadlines).
    """

    def __init__(self, clock: FrozenClock) -> None:
        self.clock = clock
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail_on: dict[str, ProcessorError] = {}
        self.delay = 0.0
        self._customers = 0

    @property
    def names(self) -> list[str]:
        return [name for name, _args in self.calls]

    async def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self.delay:
            await asyncio.sleep(self.delay)
        error = self.fail_on.get(name)
        if error is not None:
            raise error

    async def create_customer(self, user_id: str, email: str | None = None) -> str:
        await self._record("create_customer", user_id, email)
        self._customers += 1
        return f"cus_{self._customers}"

    async def create_or_update_subscription(
        self,
        customer_ref: str,
        plan: Plan,
        interval: BillingInterval,
        prorate: bool = True,
    ) -> ProcessorConfirmation:
        await self._record("create_or_update_subscription", customer_ref, plan.id, interval, prorate)
        now = self.clock()
        return ProcessorConfirmation(
            subscription_ref=f"sub_{customer_ref}",
            status=SubscriptionStatus.ACTIVE,
            period_start=now,
            period_end=add_intervals(now, interval),
            confirmed_at=now,
        )

    async def schedule_cancellation_at_period_end(self, customer_ref: str) -> None:
        await self._record("schedule_cancellation_at_period_end", customer_ref)

    async def undo_scheduled_cancellation(self, customer_ref: str) -> None:
        await self._record("undo_scheduled_cancellation", customer_ref)

    async def schedule_subscription_update(
        self,
        customer_ref: str,
        plan: Plan,
        interval: BillingInterval,
        effective_at: datetime,
    ) -> None:
        await self._record("schedule_subscription_update", customer_ref, plan.id, interval, effective_at)

    async def release_scheduled_update(self, customer_ref: str) -> None:
        await self._record("release_scheduled_update", customer_ref)

    async def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        await self._record("create_portal_session", customer_ref, return_url)
        return f"https://billing.example.test/{customer_ref}"


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest_asyncio.fixture()
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture()
def processor(clock: FrozenClock) -> FakeProcessor:
    return FakeProcessor(clock)


@pytest_asyncio.fixture()
async def engine(
    session_factory: async_sessionmaker[AsyncSession],
    processor: FakeProcessor,
    clock: FrozenClock,
) -> SubscriptionEngine:
    """A subscription engine over a seeded catalog."""
    subscription_engine = SubscriptionEngine(session_factory, processor, clock=clock, processor_timeout=0.2)
    await subscription_engine.catalog.seed_defaults(PRICE_IDS)
    return subscription_engine


@pytest.fixture()
def make_event(clock: FrozenClock) -> Callable[..., ReconciliationEvent]:
    """Build a reconciliation event; ``occurred_at`` defaults to the clock."""

    def _make(
        event_type: ReconciliationEventType,
        user_id: str,
        payload: dict[str, Any],
        event_id: str = "evt_1",
        occurred_at: datetime | None = None,
    ) -> ReconciliationEvent:
        return ReconciliationEvent.model_validate(
            {
                "external_event_id": event_id,
                "event_type": event_type,
                "user_id": user_id,
                "occurred_at": occurred_at or clock(),
                "payload": payload,
            }
        )

    return _make
