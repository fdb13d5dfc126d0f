"""
Entry types for the crochet reference tables.

Every entry is frozen and built once by CrochetRegistry from the YAML files in
``data/``.  Tier is the only enum: the other tables are open vocabularies
keyed by plain strings (stitch tokens, yarn ids, template ids).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from crochetkit.safety.types import SafeVector
from crochetkit.schemas.piece import RoundSpec


class Tier(str, Enum):
    """Subscription tiers, lowest first."""

    FREEMIUM = "freemium"
    PRO = "pro"
    STUDIO = "studio"

    @property
    def rank(self) -> int:
        return list(Tier).index(self)


@dataclass(frozen=True)
class StitchEntry:
    """Per-token stitch data (counting, consumption, difficulty, chart symbol)."""

    id: str
    name: str
    abbr: str
    count_delta: int
    consumption_cm: float
    difficulty: int  # 1 beginner, 2 intermediate, 3 advanced
    minutes: int
    time_factor: float
    round_delimiter: bool
    symbol: str | None = None
    unicode: str | None = None
    svg: str | None = None
    color: str | None = None


@dataclass(frozen=True)
class TierEntry:
    """
    Limits of one tier.

    custom_pieces: None means unlimited.
    overage_rate:  price per piece beyond max_pieces; None means overage is refused.
    """

    id: Tier
    name: str
    max_pieces: int
    max_saves: int
    custom_pieces: int | None
    overage_rate: float | None
    monthly_price: float

    def __post_init__(self) -> None:
        if self.max_pieces < 0 or self.max_saves < 0:
            raise ValueError(f"tier {self.id.value}: limits must be non-negative")
        if self.custom_pieces is not None and self.custom_pieces < 0:
            raise ValueError(f"tier {self.id.value}: custom_pieces must be non-negative")

    @property
    def allows_overage(self) -> bool:
        return self.overage_rate is not None


@dataclass(frozen=True)
class YarnWeightEntry:
    id: int
    name: str
    meters_100g: float
    yards_100g: float
    hook_mm: tuple[float, float]
    gauge_4in: tuple[int, int]
    consumption_factor: float

    @property
    def hook_mid(self) -> float:
        return (self.hook_mm[0] + self.hook_mm[1]) / 2


@dataclass(frozen=True)
class YarnEntry:
    id: str
    name: str
    weight: int
    fiber: str
    grams_per_skein: float
    meters_per_skein: float
    price_per_skein: float
    colors: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConnectionTypeEntry:
    id: str
    description: str


@dataclass(frozen=True)
class PointTemplate:
    name: str
    type: str
    position: SafeVector
    compatible: tuple[str, ...]


@dataclass(frozen=True)
class PieceTemplateEntry:
    """A reusable piece blueprint available from ``tier`` upward."""

    id: str
    name: str
    type: str
    tier: Tier
    size: int
    default_color: str
    custom: bool
    connection_points: tuple[PointTemplate, ...]
    rounds: tuple[RoundSpec, ...]
