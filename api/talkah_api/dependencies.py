"""FastAPI dependency injection for settings, sessions and the subscription engine."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from talkah_engine.engine import SubscriptionEngine
from talkah_engine.processor.base import PaymentProcessor
from talkah_engine.processor.disabled import DisabledProcessor
from talkah_engine.processor.stripe_processor import StripeProcessor
from talkah_engine.state.database import get_engine
from talkah_engine.state.database import get_session_factory as _factory_for

from talkah_api.config import APISettings, load_api_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = _factory_for(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error.

    Only infrastructure endpoints use raw sessions; everything else goes
    through the engine, which owns its transactions.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Subscription engine
# ---------------------------------------------------------------------------

_subscription_engine: SubscriptionEngine | None = None


def build_processor(settings: APISettings) -> PaymentProcessor:
    """Return the Stripe processor when billing is enabled, else a refusing stub."""
    if settings.billing_enabled:
        return StripeProcessor(
            settings.stripe_secret_key.get_secret_value(),
            timeout_seconds=settings.processor_timeout_seconds,
        )
    logger.warning("Billing is disabled; plan changes will be rejected")
    return DisabledProcessor()


def init_subscription_engine(settings: APISettings) -> SubscriptionEngine:
    """Create and cache the global :class:`SubscriptionEngine`."""
    global _subscription_engine  # noqa: PLW0603
    _subscription_engine = SubscriptionEngine(
        get_session_factory(),
        build_processor(settings),
        processor_timeout=settings.processor_timeout_seconds,
    )
    return _subscription_engine


def dispose_subscription_engine() -> None:
    global _subscription_engine  # noqa: PLW0603
    _subscription_engine = None


def get_subscription_engine() -> SubscriptionEngine:
    """Return the cached :class:`SubscriptionEngine` singleton."""
    if _subscription_engine is None:
        raise RuntimeError(
            "Subscription engine has not been initialised. "
            "Ensure init_subscription_engine() is called during application startup."
        )
    return _subscription_engine


EngineDep = Annotated[SubscriptionEngine, Depends(get_subscription_engine)]

# ---------------------------------------------------------------------------
# Service authentication
# ---------------------------------------------------------------------------


async def require_service_token(
    settings: SettingsDep,
    x_service_token: Annotated[str | None, Header()] = None,
) -> None:
    """Reject requests whose ``X-Service-Token`` does not match the configured secret.

    An empty configured token disables the check; settings validation
    only allows that in dev.
    """
    expected = settings.service_token.get_secret_value()
    if not expected:
        return
    if x_service_token is None or not hmac.compare_digest(x_service_token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid or missing service token")
