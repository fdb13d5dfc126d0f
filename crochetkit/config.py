"""
Engine configuration.

Every numeric knob the engine reads lives on one frozen EngineConfig passed
at construction.  ``default_config()`` seeds the tables from the crochet
registry; ``load_config()`` applies a YAML override file on top of the
defaults; ``dataclasses.replace`` derives one-off variants in code and tests.

Override file format (all keys optional)::

    max_history_size: 100
    waste_factor: 0.15
    consumption_cm: {sc: 3.8}
    tiers:
      pro: {max_pieces: 30, overage_rate: 0.03}
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, cast

import yaml

from crochetkit.registry import (
    StitchEntry,
    Tier,
    TierEntry,
    YarnEntry,
    YarnWeightEntry,
    get_registry,
)

CODEC_VERSION = 1


def _empty() -> Mapping[Any, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class EngineConfig:
    """All tunable values of an engine instance. Defaults follow the product rules."""

    # Reference tables
    tiers: Mapping[Tier, TierEntry] = field(default_factory=_empty)
    stitches: Mapping[str, StitchEntry] = field(default_factory=_empty)
    consumption_cm: Mapping[str, float] = field(default_factory=_empty)
    yarn_weights: Mapping[int, YarnWeightEntry] = field(default_factory=_empty)
    yarn_catalog: Mapping[str, YarnEntry] = field(default_factory=_empty)

    # Billing (USD)
    payment_minimum: float = 1.00
    warning_threshold: float = 5.00
    auto_bill_threshold: float = 10.00

    # Command log, backups, caches
    max_history_size: int = 50
    max_backups: int = 5
    suggestion_cache_ttl: float = 3.0  # seconds
    recovery_log_size: int = 100
    connection_history_size: int = 100

    # Placement and validation
    snap_grid: float = 0.0  # 0 disables grid snapping
    snap_distance: float = 1.0
    max_size_gap: int = 2
    root_piece_types: tuple[str, ...] = ("body",)

    # Timeline
    session_idle_minutes: float = 30.0
    group_window_ms: int = 5000
    milestones: tuple[int, ...] = (10, 50, 100, 500)

    # Patterns
    round_window: int = 6

    # Yarn, cost and time
    default_consumption_cm: float = 3.5
    default_yarn_weight: int = 4
    default_yarn: str = "generic-acrylic"
    waste_factor: float = 0.10
    tax_rate: float = 0.08
    hook_price: float = 5.99
    notions_price: float = 8.99
    skill_speeds: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType(
            {"beginner": 15.0, "intermediate": 25.0, "advanced": 35.0, "expert": 45.0}
        )
    )
    setup_minutes: float = 15.0
    finishing_minutes: float = 30.0
    break_minutes_per_hour: float = 10.0
    session_minutes: float = 120.0

    def __post_init__(self) -> None:
        if self.max_history_size < 1:
            raise ValueError(f"max_history_size must be >= 1, got {self.max_history_size}")
        if self.max_backups < 1:
            raise ValueError(f"max_backups must be >= 1, got {self.max_backups}")
        if self.suggestion_cache_ttl < 0:
            raise ValueError("suggestion_cache_ttl must be non-negative")
        if self.waste_factor < 0:
            raise ValueError(f"waste_factor must be non-negative, got {self.waste_factor}")
        if not self.payment_minimum <= self.warning_threshold <= self.auto_bill_threshold:
            raise ValueError(
                "billing thresholds must satisfy payment_minimum <= warning_threshold "
                "<= auto_bill_threshold"
            )
        if self.round_window < 1:
            raise ValueError(f"round_window must be >= 1, got {self.round_window}")
        if list(self.milestones) != sorted(set(self.milestones)):
            raise ValueError(f"milestones must be strictly increasing, got {self.milestones}")

    def tier(self, tier: Tier | str) -> TierEntry:
        """Return the limits for *tier*. Raises KeyError for an unknown tier."""
        try:
            return self.tiers[Tier(tier)]
        except (KeyError, ValueError):
            raise KeyError(f"Unknown tier {tier!r}") from None

    def consumption(self, token: str) -> float:
        return self.consumption_cm.get(token, self.default_consumption_cm)


def default_config(**overrides: Any) -> EngineConfig:
    """Return an EngineConfig seeded from the registry, with keyword *overrides* applied."""
    registry = get_registry()
    config = EngineConfig(
        tiers=registry.tiers,
        stitches=registry.stitches,
        consumption_cm=MappingProxyType(
            {sid: entry.consumption_cm for sid, entry in registry.stitches.items()}
        ),
        yarn_weights=registry.yarn_weights,
        yarn_catalog=registry.yarn_catalog,
    )
    return dataclasses.replace(config, **overrides) if overrides else config


def load_config(path: Path | str) -> EngineConfig:
    """
    Load a YAML override file on top of :func:`default_config`.

    Parameters
    ----------
    path:
        YAML file holding a mapping of EngineConfig field names to values.

    Returns
    -------
    EngineConfig
        Defaults with the file's overrides applied.

    Raises
    ------
    ValueError
        If the file is not a mapping, names an unknown field or tier, or
        yields an invalid configuration.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(raw).__name__}")
    return apply_overrides(default_config(), cast(dict[str, Any], raw))


def apply_overrides(config: EngineConfig, raw: Mapping[str, Any]) -> EngineConfig:
    """Return *config* with the plain-data overrides in *raw* applied."""
    known = {f.name for f in dataclasses.fields(EngineConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")

    changes: dict[str, Any] = {}
    for key, value in raw.items():
        match key:
            case "tiers":
                changes[key] = _merge_tiers(config.tiers, value)
            case "consumption_cm" | "skill_speeds":
                merged = dict(getattr(config, key))
                merged.update({str(k): float(v) for k, v in value.items()})
                changes[key] = MappingProxyType(merged)
            case "stitches" | "yarn_weights" | "yarn_catalog":
                raise ValueError(f"{key} is reference data; edit the registry YAML instead")
            case "milestones" | "root_piece_types":
                changes[key] = tuple(value)
            case _:
                changes[key] = value
    return dataclasses.replace(config, **changes)


def _merge_tiers(
    current: Mapping[Tier, TierEntry], overrides: Mapping[str, Mapping[str, Any]]
) -> Mapping[Tier, TierEntry]:
    merged = dict(current)
    allowed = {f.name for f in dataclasses.fields(TierEntry)} - {"id"}
    for name, fields in overrides.items():
        try:
            tier = Tier(name)
        except ValueError:
            raise ValueError(f"Unknown tier in config override: {name!r}") from None
        bad = sorted(set(fields) - allowed)
        if bad:
            raise ValueError(f"Unknown fields for tier {name!r}: {', '.join(bad)}")
        merged[tier] = dataclasses.replace(merged[tier], **fields)
    return MappingProxyType(merged)
