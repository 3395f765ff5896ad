"""Plan catalog: read-only access to subscription tiers.

The catalog is the single source of plan limits and prices for the rest of
the engine.  The only write path is :meth:`PlanCatalog.seed_defaults`,
an idempotent operator action used by dev startup and the CLI.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talkah_engine.errors import PlanNotFoundError
from talkah_engine.models.plan import UNLIMITED, BillingInterval, Feature, Limited, Plan
from talkah_engine.state.repository import PlanRepository, plan_from_row

logger = logging.getLogger(__name__)

FREE_PLAN_ID = "free"

DEFAULT_PLANS: tuple[Plan, ...] = (
    Plan(
        id="free",
        name="Free",
        description="Try Talkah with a small monthly allowance.",
        features=["10 AI calls per month", "10 texts per month", "10 emails per month"],
        limits={Feature.CALLS: Limited(10), Feature.TEXTS: Limited(10), Feature.EMAILS: Limited(10)},
        rank=0,
    ),
    Plan(
        id="pro",
        name="Pro",
        description="For regular senders.",
        features=["15 AI calls per month", "20 texts per month", "Unlimited emails"],
        limits={Feature.CALLS: Limited(15), Feature.TEXTS: Limited(20), Feature.EMAILS: UNLIMITED},
        price_monthly_cents=899,
        price_yearly_cents=7999,
        rank=1,
    ),
    Plan(
        id="premium",
        name="Premium",
        description="No limits on any channel.",
        features=["Unlimited AI calls", "Unlimited texts", "Unlimited emails"],
        limits={Feature.CALLS: UNLIMITED, Feature.TEXTS: UNLIMITED, Feature.EMAILS: UNLIMITED},
        price_monthly_cents=1499,
        price_yearly_cents=11999,
        rank=2,
    ),
)


async def load_plan(session: AsyncSession, plan_id: str) -> Plan:
    """Load *plan_id* inside an existing session, raising if it is unknown."""
    row = await PlanRepository(session).get(plan_id)
    if row is None:
        raise PlanNotFoundError(plan_id)
    return plan_from_row(row)


class PlanCatalog:
    """Read access to the plan catalog.

    Parameters
    ----------
    session_factory:
        Factory producing sessions bound to the state store.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_active_plans(self) -> list[Plan]:
        """Return active plans ordered by rank."""
        async with self._session_factory() as session:
            rows = await PlanRepository(session).list_plans(active_only=True)
            return [plan_from_row(row) for row in rows]

    async def get_plan(self, plan_id: str) -> Plan:
        """Return a plan by id, active or not.

        Raises
        ------
        PlanNotFoundError
            When no plan with *plan_id* exists.
        """
        async with self._session_factory() as session:
            return await load_plan(session, plan_id)

    async def resolve_price_id(self, price_id: str) -> tuple[Plan, BillingInterval] | None:
        """Map a processor price id back to ``(plan, interval)``."""
        async with self._session_factory() as session:
            match = await PlanRepository(session).get_by_stripe_price_id(price_id)
            if match is None:
                return None
            row, interval = match
            return plan_from_row(row), interval

    async def seed_defaults(self, price_ids: Mapping[str, str] | None = None) -> list[Plan]:
        """Upsert the default catalog.

        Parameters
        ----------
        price_ids:
            Optional processor price ids keyed ``"<plan>_<interval>"``,
            e.g. ``{"pro_monthly": "price_123"}``.  Plans without an entry
            keep no price id for that interval.

        Returns
        -------
        list[Plan]
            The seeded plans, ordered by rank.
        """
        price_ids = price_ids or {}
        seeded: list[Plan] = []
        async with self._session_factory() as session:
            async with session.begin():
                repo = PlanRepository(session)
                for plan in DEFAULT_PLANS:
                    plan = plan.model_copy(
                        update={
                            "stripe_price_id_monthly": price_ids.get(f"{plan.id}_monthly"),
                            "stripe_price_id_yearly": price_ids.get(f"{plan.id}_yearly"),
                        }
                    )
                    await repo.upsert(plan)
                    seeded.append(plan)
        logger.info("Seeded %d plans: %s", len(seeded), ", ".join(p.id for p in seeded))
        return seeded
