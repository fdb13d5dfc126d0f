"""
Yarn, cost and time derivations for a stitch pattern.

All functions are pure: they read the tables on an EngineConfig (consumption
per stitch, yarn weights, yarn catalog, prices, crafting speeds) and return
frozen result records.  Rounding happens only when a result is built, so
chained calculations always start from unrounded figures.

Consumption model::

    cm     = Σ consumption_cm[token] × weight factor × (1 + waste)
    meters = cm / 100        yards  = meters × 1.09361
    grams  = meters × 0.5    ounces = grams × 0.035274
    skeins needed = ceil(meters / meters per 100 g of the weight)
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from crochetkit.config import EngineConfig, default_config
from crochetkit.registry import YarnEntry, YarnWeightEntry

logger = logging.getLogger(__name__)

YARDS_PER_METER = 1.09361
GRAMS_PER_METER = 0.5
OUNCES_PER_GRAM = 0.035274
CURRENCY = "USD"


def _cfg(config: EngineConfig | None) -> EngineConfig:
    return config if config is not None else default_config()


def _weight(config: EngineConfig, weight: int) -> YarnWeightEntry:
    try:
        return config.yarn_weights[weight]
    except KeyError:
        raise ValueError(f"Unknown yarn weight {weight!r}; expected 0-7") from None


def _money(value: float) -> float:
    return round(value, 2)


# ── Requirement ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class YarnRequirement:
    """How much yarn a pattern consumes, waste included."""

    yarn_weight: int
    stitch_count: int
    unique_stitches: int
    centimeters: float
    meters: float
    yards: float
    grams: float
    ounces: float
    skeins_needed: int
    skeins_recommended: int
    meters_per_skein: float
    waste_factor: float
    waste_meters: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "yarnWeight": self.yarn_weight,
            "pattern": {"stitchCount": self.stitch_count, "uniqueStitches": self.unique_stitches},
            "consumption": {
                "centimeters": self.centimeters,
                "meters": self.meters,
                "yards": self.yards,
                "grams": self.grams,
                "ounces": self.ounces,
            },
            "skeins": {
                "needed": self.skeins_needed,
                "recommended": self.skeins_recommended,
                "perSkein": {"meters": self.meters_per_skein, "grams": 100},
            },
            "waste": {
                "included": self.waste_factor > 0,
                "percentage": round(self.waste_factor * 100, 1),
                "meters": self.waste_meters,
            },
        }


def calculate_yarn_requirement(
    pattern: Sequence[str],
    *,
    yarn_weight: int | None = None,
    waste_factor: float | None = None,
    gauge: float | None = None,
    config: EngineConfig | None = None,
) -> YarnRequirement:
    """
    Yarn consumed by *pattern*.

    Parameters
    ----------
    pattern:
        Stitch tokens.
    yarn_weight:
        Craft Yarn Council weight 0-7; ``config.default_yarn_weight`` when None.
    waste_factor:
        Fractional allowance for waste (0.1 = 10 %); ``config.waste_factor`` when None.
    gauge:
        Measured stitches per 4 in.  When given, consumption scales by the
        weight's standard gauge over the measured one.

    Raises
    ------
    ValueError
        If the weight is unknown, or the waste factor or gauge is not positive.
    """
    cfg = _cfg(config)
    weight = _weight(cfg, cfg.default_yarn_weight if yarn_weight is None else yarn_weight)
    waste = cfg.waste_factor if waste_factor is None else waste_factor
    if waste < 0:
        raise ValueError(f"waste_factor must be non-negative, got {waste}")

    cm = sum(cfg.consumption(token) for token in pattern) * weight.consumption_factor
    if gauge is not None:
        if gauge <= 0:
            raise ValueError(f"gauge must be positive, got {gauge}")
        cm *= weight.gauge_4in[0] / gauge
    cm *= 1 + waste

    meters = cm / 100
    grams = meters * GRAMS_PER_METER
    needed = math.ceil(meters / weight.meters_100g)
    return YarnRequirement(
        yarn_weight=weight.id,
        stitch_count=len(pattern),
        unique_stitches=len(set(pattern)),
        centimeters=round(cm, 1),
        meters=round(meters, 2),
        yards=round(meters * YARDS_PER_METER, 2),
        grams=round(grams, 1),
        ounces=round(grams * OUNCES_PER_GRAM, 2),
        skeins_needed=needed,
        skeins_recommended=needed + 1,
        meters_per_skein=weight.meters_100g,
        waste_factor=waste,
        waste_meters=round(meters * waste / (1 + waste), 2),
    )


# ── Cost ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProjectCost:
    yarn_id: str
    yarn_name: str
    skeins: int
    price_per_skein: float
    yarn_total: float
    hook: float
    notions: float
    tools_total: float
    subtotal: float
    tax: float
    total: float
    breakdown: Mapping[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "yarn": {
                "id": self.yarn_id,
                "type": self.yarn_name,
                "skeins": self.skeins,
                "pricePerSkein": self.price_per_skein,
                "total": self.yarn_total,
            },
            "tools": {"hook": self.hook, "notions": self.notions, "total": self.tools_total},
            "summary": {
                "subtotal": self.subtotal,
                "tax": self.tax,
                "total": self.total,
                "currency": CURRENCY,
            },
            "priceBreakdown": dict(self.breakdown),
        }


def calculate_project_cost(
    requirement: YarnRequirement,
    yarn_id: str | None = None,
    *,
    include_hook: bool = True,
    include_notions: bool = True,
    include_tax: bool = True,
    config: EngineConfig | None = None,
) -> ProjectCost:
    """
    Price the recommended skeins plus tools and tax.

    An unknown *yarn_id* falls back to ``config.default_yarn``.  The
    percentage breakdown covers yarn, tools and tax and sums to 100 within
    rounding.
    """
    cfg = _cfg(config)
    yarn_id = yarn_id or cfg.default_yarn
    yarn = cfg.yarn_catalog.get(yarn_id)
    if yarn is None:
        logger.warning("unknown yarn %r, pricing with %s", yarn_id, cfg.default_yarn)
        yarn = cfg.yarn_catalog[cfg.default_yarn]

    yarn_cost = requirement.skeins_recommended * yarn.price_per_skein
    hook = cfg.hook_price if include_hook else 0.0
    notions = cfg.notions_price if include_notions else 0.0
    tools = hook + notions
    subtotal = yarn_cost + tools
    tax = subtotal * cfg.tax_rate if include_tax else 0.0
    total = subtotal + tax

    def share(part: float) -> float:
        return round(part / total * 100, 1) if total else 0.0

    return ProjectCost(
        yarn_id=yarn.id,
        yarn_name=yarn.name,
        skeins=requirement.skeins_recommended,
        price_per_skein=yarn.price_per_skein,
        yarn_total=_money(yarn_cost),
        hook=hook,
        notions=notions,
        tools_total=_money(tools),
        subtotal=_money(subtotal),
        tax=_money(tax),
        total=_money(total),
        breakdown={"yarn": share(yarn_cost), "tools": share(tools), "tax": share(tax)},
    )


# ── Time ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TimeEstimate:
    skill_level: str
    speed: float  # stitches per minute
    total_minutes: int
    hours: int
    remaining_minutes: int
    stitching_minutes: float
    setup_minutes: float
    finishing_minutes: float
    break_minutes: float
    sessions: int
    sessions_per_day: int
    days: int

    @property
    def formatted(self) -> str:
        return f"{self.hours}h {self.remaining_minutes}m"

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": {
                "minutes": self.total_minutes,
                "hours": self.hours,
                "remainingMinutes": self.remaining_minutes,
                "formatted": self.formatted,
            },
            "speed": self.speed,
            "skillLevel": self.skill_level,
            "sessions": {"count": self.sessions, "perDay": self.sessions_per_day, "days": self.days},
            "breakdown": {
                "stitching": self.stitching_minutes,
                "setup": self.setup_minutes,
                "finishing": self.finishing_minutes,
                "breaks": self.break_minutes,
            },
        }


def estimate_project_time(
    pattern: Sequence[str],
    *,
    skill_level: str = "intermediate",
    stitches_per_minute: float | None = None,
    include_breaks: bool = True,
    sessions_per_day: int = 1,
    config: EngineConfig | None = None,
) -> TimeEstimate:
    """
    Hands-on time to work *pattern*.

    Each token takes ``time_factor / speed`` minutes, where the speed comes from
    *skill_level* unless *stitches_per_minute* overrides it.  Setup and
    finishing are added once, then a break per started hour when
    *include_breaks* is set.  Sessions last ``config.session_minutes``.

    Raises
    ------
    ValueError
        If the skill level is unknown or the speed or sessions per day is not positive.
    """
    cfg = _cfg(config)
    if stitches_per_minute is None:
        if skill_level not in cfg.skill_speeds:
            raise ValueError(
                f"Unknown skill level {skill_level!r}; expected one of {sorted(cfg.skill_speeds)}"
            )
        speed = cfg.skill_speeds[skill_level]
    else:
        speed = stitches_per_minute
    if speed <= 0:
        raise ValueError(f"stitching speed must be positive, got {speed}")
    if sessions_per_day < 1:
        raise ValueError(f"sessions_per_day must be >= 1, got {sessions_per_day}")

    stitching = 0.0
    for token in pattern:
        entry = cfg.stitches.get(token)
        stitching += (entry.time_factor if entry else 1.0) / speed
    worked = stitching + cfg.setup_minutes + cfg.finishing_minutes
    breaks = math.ceil(worked / 60) * cfg.break_minutes_per_hour if include_breaks else 0.0
    total = worked + breaks

    hours = int(total // 60)
    session_hours = cfg.session_minutes / 60
    return TimeEstimate(
        skill_level=skill_level if stitches_per_minute is None else "custom",
        speed=speed,
        total_minutes=round(total),
        hours=hours,
        remaining_minutes=round(total % 60),
        stitching_minutes=round(stitching, 1),
        setup_minutes=cfg.setup_minutes,
        finishing_minutes=cfg.finishing_minutes,
        break_minutes=breaks,
        sessions=math.ceil(total / cfg.session_minutes),
        sessions_per_day=sessions_per_day,
        days=math.ceil(hours / (sessions_per_day * session_hours)),
    )


# ── Comparison and substitution ───────────────────────────────────────────────


@dataclass(frozen=True)
class YarnOption:
    id: str
    name: str
    fiber: str
    weight: int
    skeins_needed: int
    total_cost: float
    cost_per_meter: float
    meters_per_skein: float
    price_per_skein: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "fiber": self.fiber,
            "weight": self.weight,
            "skeinsNeeded": self.skeins_needed,
            "totalCost": self.total_cost,
            "costPerMeter": self.cost_per_meter,
            "metersPerSkein": self.meters_per_skein,
            "pricePerSkein": self.price_per_skein,
        }


@dataclass(frozen=True)
class YarnComparison:
    options: tuple[YarnOption, ...]
    recommendation: YarnOption | None

    @property
    def cheapest(self) -> YarnOption | None:
        return self.options[0] if self.options else None

    @property
    def most_expensive(self) -> YarnOption | None:
        return self.options[-1] if self.options else None

    def to_dict(self) -> dict[str, Any]:
        def opt(o: YarnOption | None) -> dict[str, Any] | None:
            return o.to_dict() if o else None

        return {
            "options": [o.to_dict() for o in self.options],
            "cheapest": opt(self.cheapest),
            "mostExpensive": opt(self.most_expensive),
            "recommendation": opt(self.recommendation),
        }


def _option(yarn: YarnEntry, meters: float) -> YarnOption:
    skeins = math.ceil(meters / yarn.meters_per_skein)
    cost = skeins * yarn.price_per_skein
    return YarnOption(
        id=yarn.id,
        name=yarn.name,
        fiber=yarn.fiber,
        weight=yarn.weight,
        skeins_needed=skeins,
        total_cost=_money(cost),
        cost_per_meter=_money(cost / meters) if meters > 0 else 0.0,
        meters_per_skein=yarn.meters_per_skein,
        price_per_skein=yarn.price_per_skein,
    )


def compare_yarn_options(
    meters: float,
    *,
    max_budget: float | None = None,
    preferred_weight: int | None = None,
    config: EngineConfig | None = None,
) -> YarnComparison:
    """
    Cost of *meters* of yarn in every catalog yarn, cheapest first.

    The recommendation is the cheapest option within *max_budget* and of
    *preferred_weight* when those are given, else the cheapest overall.
    """
    cfg = _cfg(config)
    if meters < 0:
        raise ValueError(f"meters must be non-negative, got {meters}")
    options = sorted(
        (_option(yarn, meters) for yarn in cfg.yarn_catalog.values()),
        key=lambda o: (o.total_cost, o.id),
    )
    eligible = [
        o
        for o in options
        if (max_budget is None or o.total_cost <= max_budget)
        and (preferred_weight is None or o.weight == preferred_weight)
    ]
    recommendation = eligible[0] if eligible else (options[0] if options else None)
    return YarnComparison(options=tuple(options), recommendation=recommendation)


@dataclass(frozen=True)
class Substitution:
    original_weight: str
    original_amount: float
    original_hook_mm: float
    new_weight: str
    new_amount: float
    new_hook_mm: float
    adjustment_factor: float
    gauge_ratio: float
    notes: tuple[str, ...]

    @property
    def hook_difference(self) -> float:
        return round(self.new_hook_mm - self.original_hook_mm, 2)

    @property
    def stitch_count_adjustment(self) -> str:
        return "increase" if self.gauge_ratio > 1 else "decrease"

    def to_dict(self) -> dict[str, Any]:
        return {
            "original": {
                "weight": self.original_weight,
                "amount": self.original_amount,
                "hookSize": self.original_hook_mm,
            },
            "substitution": {
                "weight": self.new_weight,
                "amount": self.new_amount,
                "hookSize": self.new_hook_mm,
                "adjustmentFactor": self.adjustment_factor,
            },
            "adjustments": {
                "hookSizeDifference": self.hook_difference,
                "gaugeRatio": self.gauge_ratio,
                "stitchCountAdjustment": self.stitch_count_adjustment,
                "notes": list(self.notes),
            },
        }


def substitution_notes(original: int, new: int) -> list[str]:
    notes: list[str] = []
    if new < original:
        notes += [
            "Using thinner yarn - project will be more delicate",
            "Consider doubling the yarn for similar thickness",
            "May need to increase stitch count for same size",
        ]
    elif new > original:
        notes += [
            "Using thicker yarn - project will be sturdier",
            "May work up faster",
            "May need to decrease stitch count for same size",
        ]
    if abs(new - original) > 2:
        notes += [
            "Significant weight difference - consider pattern adjustments",
            "Test gauge swatch strongly recommended",
        ]
    return notes


def substitute_yarn(
    original_weight: int,
    amount: float,
    new_weight: int,
    *,
    config: EngineConfig | None = None,
) -> Substitution:
    """
    Convert *amount* meters of one yarn weight into the equivalent of another.

    The amount scales by ``original meters per 100 g / new meters per 100 g``.

    Raises
    ------
    ValueError
        If either weight is unknown.
    """
    cfg = _cfg(config)
    old = _weight(cfg, original_weight)
    new = _weight(cfg, new_weight)
    ratio = old.meters_100g / new.meters_100g
    return Substitution(
        original_weight=old.name,
        original_amount=amount,
        original_hook_mm=old.hook_mid,
        new_weight=new.name,
        new_amount=round(amount * ratio, 1),
        new_hook_mm=new.hook_mid,
        adjustment_factor=round(ratio, 4),
        gauge_ratio=round(old.gauge_4in[0] / new.gauge_4in[0], 2),
        notes=tuple(substitution_notes(old.id, new.id)),
    )


# ── Shopping list ─────────────────────────────────────────────────────────────

NOTIONS = ("Yarn Needle", "Stitch Markers", "Scissors")


def generate_shopping_list(requirement: YarnRequirement, cost: ProjectCost | None = None) -> dict[str, Any]:
    """Yarn, tools and notions to buy, with the grand total from *cost*."""
    items: dict[str, Any] = {"yarn": [], "tools": [], "notions": [], "total": 0.0}
    items["yarn"].append(
        {
            "item": cost.yarn_name if cost else "Yarn",
            "quantity": requirement.skeins_recommended,
            "unit": "skeins",
            "price": cost.yarn_total if cost else 0.0,
        }
    )
    if cost is None:
        return items
    if cost.hook > 0:
        items["tools"].append({"item": "Crochet Hook", "quantity": 1, "price": cost.hook})
    if cost.notions > 0:
        items["notions"] = [{"item": name, "quantity": 1} for name in NOTIONS]
    items["total"] = cost.total
    return items
