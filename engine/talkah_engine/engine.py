"""Composition root wiring the engine components to one state store."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talkah_engine.catalog import PlanCatalog
from talkah_engine.changes.state_machine import PlanChangeStateMachine
from talkah_engine.facade import SubscriptionQueryFacade
from talkah_engine.periods import Clock, utcnow
from talkah_engine.processor.base import PaymentProcessor
from talkah_engine.processor.stripe_events import StripeEventTranslator
from talkah_engine.provisioning import UserProvisioner
from talkah_engine.reconciler import EventReconciler
from talkah_engine.state.locks import UserLockRegistry
from talkah_engine.usage.ledger import UsageLedger


class SubscriptionEngine:
    """All engine components sharing one session factory, lock registry and clock.

    Parameters
    ----------
    session_factory:
        Factory producing sessions bound to the state store.
    processor:
        Payment processor adapter used for plan changes.
    clock:
        Returns the current UTC time; injectable for tests.
    processor_timeout:
        Deadline in seconds for each processor call made by the state machine.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: PaymentProcessor,
        clock: Clock = utcnow,
        processor_timeout: float = 15.0,
    ) -> None:
        self.session_factory = session_factory
        self.locks = UserLockRegistry()
        self.catalog = PlanCatalog(session_factory)
        self.ledger = UsageLedger(session_factory, self.locks, clock)
        self.changes = PlanChangeStateMachine(
            session_factory,
            self.locks,
            processor,
            clock=clock,
            processor_timeout=processor_timeout,
        )
        self.reconciler = EventReconciler(session_factory, self.locks, clock)
        self.facade = SubscriptionQueryFacade(session_factory, self.locks, clock)
        self.provisioner = UserProvisioner(session_factory, self.locks, clock)
        self.stripe_events = StripeEventTranslator(session_factory)
