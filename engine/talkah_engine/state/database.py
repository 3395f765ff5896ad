"""Engine construction and per-user advisory locking for the state store.

Production runs on PostgreSQL through asyncpg; local runs and tests use
SQLite through aiosqlite.  The URL scheme picks the backend.
"""

from __future__ import annotations

import hashlib
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Quota checks sit on the request path of every call, text and email, so
# a stuck statement or lock wait must fail fast rather than pile up.
_POSTGRES_SERVER_SETTINGS = {
    "statement_timeout": "5000",
    "lock_timeout": "3000",
}

# Factories are keyed by engine id; the engine is kept alongside so that a
# recycled id never hands out a factory bound to a disposed engine.
_session_factories: dict[int, tuple[AsyncEngine, async_sessionmaker[AsyncSession]]] = {}


def sqlite_path_from_url(database_url: str) -> str:
    """Return the file path of a ``sqlite+aiosqlite:///`` URL, or ``:memory:``."""
    _, sep, path = database_url.partition("///")
    return path if sep and path else ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``postgresql+asyncpg://...`` or ``sqlite+aiosqlite:///path``.
    pool_size, max_overflow:
        Connection pool bounds for PostgreSQL; ignored for SQLite.
    """
    if database_url.startswith("sqlite"):
        from talkah_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(sqlite_path_from_url(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_timeout=5,
        connect_args={"server_settings": dict(_POSTGRES_SERVER_SETTINGS)},
    )
    logger.info("Created PostgreSQL engine pool_size=%d max_overflow=%d", pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the session factory bound to *engine*, creating it once."""
    cached = _session_factories.get(id(engine))
    if cached is not None and cached[0] is engine:
        return cached[1]
    factory = async_sessionmaker(engine, expire_on_commit=False)
    _session_factories[id(engine)] = (engine, factory)
    return factory


def dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


def advisory_lock_key(scope: str) -> int:
    """Map *scope* (e.g. ``talkah:user:<id>``) to a non-negative 63-bit lock key.

    ``hash()`` is salted per process, so a digest is used to make every
    worker agree on the key.
    """
    digest = hashlib.sha256(scope.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") & 0x7FFFFFFFFFFFFFFF


async def acquire_advisory_lock(session: AsyncSession, scope: str) -> None:
    """Take a transaction-scoped PostgreSQL advisory lock on *scope*.

    Released when the surrounding transaction ends.  No-op on SQLite,
    where the database file lock already serialises writers.
    """
    if dialect_name(session) != "postgresql":
        return
    await session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": advisory_lock_key(scope)})
