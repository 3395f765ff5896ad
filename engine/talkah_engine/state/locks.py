"""Per-user serialisation of state mutations.

Two layers cooperate:

* an in-process registry of :class:`asyncio.Lock` objects, so coroutines
  of one worker queue up instead of racing inside the database, and
* a PostgreSQL transaction-scoped advisory lock keyed on the user, so
  separate worker processes serialise as well.

Work for different users never contends.  The lock is not re-entrant:
code running inside :func:`serialized_transaction` must use the session it
was given rather than opening another serialised transaction.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talkah_engine.state.database import acquire_advisory_lock

logger = logging.getLogger(__name__)


class UserLockRegistry:
    """Hands out one :class:`asyncio.Lock` per user id.

    Locks are held in a weak-value mapping so idle users do not accumulate.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncGenerator[None, None]:
        lock = self.lock_for(user_id)
        async with lock:
            yield


@asynccontextmanager
async def locked_session(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: str,
) -> AsyncGenerator[AsyncSession, None]:
    """Open a transaction holding the cross-process advisory lock for *user_id*.

    Callers must already hold the in-process lock from
    :meth:`UserLockRegistry.hold`.  Commits on normal exit and rolls back if
    an exception propagates.
    """
    async with session_factory() as session:
        async with session.begin():
            await acquire_advisory_lock(session, f"talkah:user:{user_id}")
            yield session


@asynccontextmanager
async def serialized_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    locks: UserLockRegistry,
    user_id: str,
) -> AsyncGenerator[AsyncSession, None]:
    """Open a transaction that holds both per-user locks for its whole lifetime."""
    async with locks.hold(user_id):
        async with locked_session(session_factory, user_id) as session:
            yield session
