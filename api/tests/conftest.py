"""Shared fixtures for Talkah API tests.

Every test gets an application whose engine runs on an in-memory SQLite
store seeded with the default catalog, and a payment processor stub that
can be told to fail.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from talkah_engine.engine import SubscriptionEngine
from talkah_engine.errors import ProcessorError
from talkah_engine.models import BillingInterval, Plan, SubscriptionStatus
from talkah_engine.periods import add_intervals
from talkah_engine.processor.base import PaymentProcessor, ProcessorConfirmation
from talkah_engine.state.sqlite_adapter import create_local_tables, get_local_engine

from talkah_api.config import APISettings
from talkah_api.dependencies import get_db_session, get_settings, get_subscription_engine
from talkah_api.main import create_app

SERVICE_TOKEN = "test-service-token"

PRICE_IDS = {
    "pro_monthly": "price_pro_monthly",
    "pro_yearly": "price_pro_yearly",
    "premium_monthly": "price_premium_monthly",
    "premium_yearly": "price_premium_yearly",
}


class StubProcessor(PaymentProcessor):
    """Processor that confirms everything unless ``error`` is set."""

    def __init__(self) -> None:
        self.error: ProcessorError | None = None
        self.calls: list[str] = []

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if self.error is not None:
            raise self.error

    async def create_customer(self, user_id: str, email: str | None = None) -> str:
        self._check("create_customer")
        return f"cus_{user_id}"

    async def create_or_update_subscription(
        self,
        customer_ref: str,
        plan: Plan,
        interval: BillingInterval,
        prorate: bool = True,
    ) -> ProcessorConfirmation:
        self._check("create_or_update_subscription")
        now = datetime.now(UTC)
        return ProcessorConfirmation(
            subscription_ref=f"sub_{customer_ref}",
            status=SubscriptionStatus.ACTIVE,
            period_start=now,
            period_end=add_intervals(now, interval),
            confirmed_at=now,
        )

    async def schedule_cancellation_at_period_end(self, customer_ref: str) -> None:
        self._check("schedule_cancellation_at_period_end")

    async def undo_scheduled_cancellation(self, customer_ref: str) -> None:
        self._check("undo_scheduled_cancellation")

    async def schedule_subscription_update(
        self,
        customer_ref: str,
        plan: Plan,
        interval: BillingInterval,
        effective_at: datetime,
    ) -> None:
        self._check("schedule_subscription_update")

    async def release_scheduled_update(self, customer_ref: str) -> None:
        self._check("release_scheduled_update")

    async def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        self._check("create_portal_session")
        return f"https://billing.example.test/{customer_ref}?return={return_url}"


def make_settings(**overrides: Any) -> APISettings:
    values: dict[str, Any] = {
        "database_url": "sqlite+aiosqlite:///:memory:",
        "platform_env": "dev",
        "service_token": SERVICE_TOKEN,
        "billing_enabled": False,
        "portal_return_url": "https://app.example.test/account",
    }
    values.update(overrides)
    return APISettings(**values)


@pytest.fixture()
def settings() -> APISettings:
    return make_settings()


@pytest.fixture()
def processor() -> StubProcessor:
    return StubProcessor()


@pytest_asyncio.fixture()
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def subscription_engine(db_engine: AsyncEngine, processor: StubProcessor) -> SubscriptionEngine:
    engine = SubscriptionEngine(async_sessionmaker(db_engine, expire_on_commit=False), processor, processor_timeout=1.0)
    await engine.catalog.seed_defaults(PRICE_IDS)
    return engine


@pytest.fixture()
def app(settings: APISettings, subscription_engine: SubscriptionEngine) -> Any:
    application = create_app()

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with subscription_engine.session_factory() as session:
            yield session

    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_subscription_engine] = lambda: subscription_engine
    application.dependency_overrides[get_db_session] = _override_session
    return application


@pytest_asyncio.fixture()
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Client that sends the service token on every request."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Service-Token": SERVICE_TOKEN},
    ) as ac:
        yield ac


@pytest_asyncio.fixture()
async def anonymous_client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
