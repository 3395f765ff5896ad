"""Plan catalog models.

A plan's per-feature allowance is a :data:`Limit`, which is either
:class:`Limited` (a real, possibly zero, count) or :data:`UNLIMITED`.
Nothing inside the engine encodes "unlimited" as ``-1`` or a large
integer; :func:`limit_from_legacy` converts such values at the edge.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer


class Feature(str, Enum):
    """Metered capabilities of the communication product."""

    CALLS = "calls"
    TEXTS = "texts"
    EMAILS = "emails"


class BillingInterval(str, Enum):
    """Recurring billing cadence of a paid subscription."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


# ---------------------------------------------------------------------------
# Limit sum type
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Limited:
    """A finite allowance of ``count`` units per billing period."""

    count: int

    def __post_init__(self) -> None:
        if self.count < 0:
            raise ValueError(f"Limit count must be >= 0, got {self.count}")

    def allows(self, used: int, amount: int) -> bool:
        return used + amount <= self.count

    def remaining(self, used: int) -> int:
        """Units left in the period, floored at zero for display."""
        return max(self.count - used, 0)


@dataclass(frozen=True)
class Unlimited:
    """No cap on the feature."""

    def allows(self, used: int, amount: int) -> bool:
        return True

    def remaining(self, used: int) -> Unlimited:
        return self

    def __repr__(self) -> str:
        return "UNLIMITED"


UNLIMITED = Unlimited()

Limit = Limited | Unlimited


def limit_from_column(value: int | None) -> Limited | Unlimited:
    """Decode a nullable limit column (``NULL`` means unlimited)."""
    if value is None:
        return UNLIMITED
    return Limited(value)


def limit_to_column(limit: Limited | Unlimited) -> int | None:
    """Encode a limit for storage (``NULL`` means unlimited)."""
    if isinstance(limit, Limited):
        return limit.count
    return None


def limit_from_legacy(value: int) -> Limited | Unlimited:
    """Convert an imported legacy limit where ``-1`` meant unlimited."""
    if value == -1:
        return UNLIMITED
    if value < 0:
        raise ValueError(f"Invalid legacy limit value: {value}")
    return Limited(value)


def _limit_from_json(value: Any) -> Any:
    if value is None or (isinstance(value, int) and not isinstance(value, bool)):
        return limit_from_column(value)
    return value


def _remaining_from_json(value: Any) -> Any:
    return UNLIMITED if value is None else value


def _remaining_to_json(value: int | Unlimited) -> int | None:
    return None if isinstance(value, Unlimited) else value


# In JSON a limit is its count, with ``null`` for unlimited.
LimitValue = Annotated[
    Limited | Unlimited,
    BeforeValidator(_limit_from_json),
    PlainSerializer(limit_to_column, return_type=int | None, when_used="json"),
]

RemainingValue = Annotated[
    int | Unlimited,
    BeforeValidator(_remaining_from_json),
    PlainSerializer(_remaining_to_json, return_type=int | None, when_used="json"),
]


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class Plan(BaseModel):
    """An immutable catalog entry.

    Prices are kept in minor units (cents) so that storage and comparisons
    stay exact; :meth:`price` returns a :class:`~decimal.Decimal`.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=32)
    name: str
    description: str = ""
    features: list[str] = Field(default_factory=list, description="Marketing bullet points, display only.")
    limits: dict[Feature, LimitValue]
    price_monthly_cents: int = Field(default=0, ge=0)
    price_yearly_cents: int = Field(default=0, ge=0)
    stripe_price_id_monthly: str | None = None
    stripe_price_id_yearly: str | None = None
    rank: int = Field(..., ge=0, description="Tier ordering used to classify plan changes.")
    active: bool = True

    @property
    def is_free(self) -> bool:
        return self.rank == 0

    def limit_for(self, feature: Feature) -> Limited | Unlimited:
        """Return the allowance for *feature*; a missing entry means zero."""
        return self.limits.get(feature, Limited(0))

    def price(self, interval: BillingInterval) -> Decimal:
        cents = self.price_yearly_cents if interval == BillingInterval.YEARLY else self.price_monthly_cents
        return (Decimal(cents) / 100).quantize(Decimal("0.01"))

    def stripe_price_id(self, interval: BillingInterval) -> str | None:
        if interval == BillingInterval.YEARLY:
            return self.stripe_price_id_yearly
        return self.stripe_price_id_monthly
