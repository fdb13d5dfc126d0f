"""
Crochet registry: loads every reference table from YAML at startup, validates
cross-references, and exposes a read-only query API.

The registry is a module-level singleton; call get_registry() to obtain it.
All tables are loaded and validated once at import time.  Nothing writes to
the registry after startup: engine configuration copies what it needs into
EngineConfig, so overriding a knob never touches these tables.

Tables
------
stitches          token → StitchEntry (count delta, consumption, chart symbol…)
tiers             Tier → TierEntry
yarn_weights      CYC weight 0–7 → YarnWeightEntry
yarn_catalog      yarn id → YarnEntry
connection_types  type id → ConnectionTypeEntry
templates         template id → PieceTemplateEntry
"""

from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Any, cast

import yaml

from crochetkit.safety.types import is_safe_color, to_safe_vector
from crochetkit.schemas.piece import MAX_SIZE, MIN_SIZE, RoundSpec

from .types import (
    ConnectionTypeEntry,
    PieceTemplateEntry,
    PointTemplate,
    StitchEntry,
    Tier,
    TierEntry,
    YarnEntry,
    YarnWeightEntry,
)

_DATA_DIR = Path(__file__).parent / "data"

# Compatibility tokens that are neither connection types nor template point names.
_WILDCARDS = frozenset({"universal", "any"})


class CrochetRegistry:
    """
    Read-only registry of all crochet lookup tables.

    All public dict attributes are wrapped in MappingProxyType after loading
    and are immutable for the lifetime of the registry instance.

    Instantiate directly to use a custom data directory (e.g. in tests);
    otherwise use get_registry() for the module singleton.
    """

    def __init__(self, data_dir: Path = _DATA_DIR) -> None:
        self._data_dir = data_dir

        self.stitches: MappingProxyType[str, StitchEntry]
        self.tiers: MappingProxyType[Tier, TierEntry]
        self.yarn_weights: MappingProxyType[int, YarnWeightEntry]
        self.yarn_catalog: MappingProxyType[str, YarnEntry]
        self.connection_types: MappingProxyType[str, ConnectionTypeEntry]
        self.templates: MappingProxyType[str, PieceTemplateEntry]

        self._load_all()
        self._validate_cross_references()

    # ── Loading ────────────────────────────────────────────────────────────────

    def _load_yaml(self, filename: str) -> dict[str, Any]:
        path = self._data_dir / filename
        try:
            with open(path, encoding="utf-8") as f:
                return cast(dict[str, Any], yaml.safe_load(f))
        except FileNotFoundError:
            raise FileNotFoundError(f"Registry data file not found: {path}") from None
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse registry data file {path}: {exc}") from exc

    def _load_all(self) -> None:
        self._duplicates: list[str] = []
        self._load_stitches()
        self._load_tiers()
        self._load_yarn_weights()
        self._load_yarn_catalog()
        self._load_connection_types()
        self._load_templates()

    def _note_duplicate(self, table: str, key: object, seen: dict[Any, Any]) -> None:
        if key in seen:
            self._duplicates.append(f"{table}: duplicate id {key!r}")

    def _load_stitches(self) -> None:
        data = self._load_yaml("stitches.yaml")
        result: dict[str, StitchEntry] = {}
        for entry in data["entries"]:
            sid = str(entry["id"])
            self._note_duplicate("stitches", sid, result)
            result[sid] = StitchEntry(
                id=sid,
                name=entry["name"],
                abbr=entry.get("abbr", sid),
                count_delta=int(entry["count_delta"]),
                consumption_cm=float(entry["consumption_cm"]),
                difficulty=int(entry.get("difficulty", 1)),
                minutes=int(entry.get("minutes", 2)),
                time_factor=float(entry.get("time_factor", 1.0)),
                round_delimiter=bool(entry.get("round_delimiter", False)),
                symbol=entry.get("symbol"),
                unicode=entry.get("unicode"),
                svg=entry.get("svg"),
                color=entry.get("color"),
            )
        self.stitches = MappingProxyType(result)

    def _load_tiers(self) -> None:
        data = self._load_yaml("tiers.yaml")
        result: dict[Tier, TierEntry] = {}
        for entry in data["entries"]:
            tier = Tier(entry["id"])
            self._note_duplicate("tiers", tier, result)
            custom = entry.get("custom_pieces")
            rate = entry.get("overage_rate")
            result[tier] = TierEntry(
                id=tier,
                name=entry["name"],
                max_pieces=int(entry["max_pieces"]),
                max_saves=int(entry["max_saves"]),
                custom_pieces=None if custom is None else int(custom),
                overage_rate=None if rate is None else float(rate),
                monthly_price=float(entry["monthly_price"]),
            )
        self.tiers = MappingProxyType(result)

    def _load_yarn_weights(self) -> None:
        data = self._load_yaml("yarn_weights.yaml")
        result: dict[int, YarnWeightEntry] = {}
        for entry in data["entries"]:
            wid = int(entry["id"])
            self._note_duplicate("yarn_weights", wid, result)
            hook = entry["hook_mm"]
            gauge = entry["gauge_4in"]
            result[wid] = YarnWeightEntry(
                id=wid,
                name=entry["name"],
                meters_100g=float(entry["meters_100g"]),
                yards_100g=float(entry["yards_100g"]),
                hook_mm=(float(hook[0]), float(hook[1])),
                gauge_4in=(int(gauge[0]), int(gauge[1])),
                consumption_factor=float(entry.get("consumption_factor", 1.0)),
            )
        self.yarn_weights = MappingProxyType(result)

    def _load_yarn_catalog(self) -> None:
        data = self._load_yaml("yarn_catalog.yaml")
        result: dict[str, YarnEntry] = {}
        for entry in data["entries"]:
            yid = str(entry["id"])
            self._note_duplicate("yarn_catalog", yid, result)
            result[yid] = YarnEntry(
                id=yid,
                name=entry["name"],
                weight=int(entry["weight"]),
                fiber=entry.get("fiber", ""),
                grams_per_skein=float(entry.get("grams_per_skein", 100)),
                meters_per_skein=float(entry["meters_per_skein"]),
                price_per_skein=float(entry["price_per_skein"]),
                colors=tuple(entry.get("colors", [])),
            )
        self.yarn_catalog = MappingProxyType(result)

    def _load_connection_types(self) -> None:
        data = self._load_yaml("connection_types.yaml")
        result: dict[str, ConnectionTypeEntry] = {}
        for entry in data["entries"]:
            cid = str(entry["id"])
            self._note_duplicate("connection_types", cid, result)
            result[cid] = ConnectionTypeEntry(id=cid, description=entry.get("description", "").strip())
        self.connection_types = MappingProxyType(result)

    def _load_templates(self) -> None:
        data = self._load_yaml("piece_templates.yaml")
        result: dict[str, PieceTemplateEntry] = {}
        for entry in data["entries"]:
            tid = str(entry["id"])
            self._note_duplicate("piece_templates", tid, result)
            points = tuple(
                PointTemplate(
                    name=p["name"],
                    type=p["type"],
                    position=to_safe_vector(p.get("position")),
                    compatible=tuple(p.get("compatible", [])),
                )
                for p in entry.get("connection_points", [])
            )
            rounds = tuple(
                RoundSpec(round=int(r[0]), stitches=int(r[1]), instruction=str(r[2]))
                for r in entry.get("rounds", [])
            )
            result[tid] = PieceTemplateEntry(
                id=tid,
                name=entry["name"],
                type=entry["type"],
                tier=Tier(entry["tier"]),
                size=int(entry.get("size", 3)),
                default_color=entry["default_color"],
                custom=bool(entry.get("custom", False)),
                connection_points=points,
                rounds=rounds,
            )
        self.templates = MappingProxyType(result)

    # ── Cross-reference validation ─────────────────────────────────────────────

    def _validate_cross_references(self) -> None:
        """
        Run at startup. Raises ValueError listing all problems found if any
        table entry references an id not defined in its master table, or
        violates a structural invariant.
        """
        errors: list[str] = list(self._duplicates)
        self._check_tier_completeness(errors)
        self._check_yarn_catalog(errors)
        self._check_templates(errors)
        self._check_stitch_colors(errors)
        if errors:
            raise ValueError(
                "Crochet registry cross-reference validation failed:\n"
                + "\n".join(f"  • {e}" for e in errors)
            )

    def _check_tier_completeness(self, errors: list[str]) -> None:
        for tier in Tier:
            if tier not in self.tiers:
                errors.append(f"tiers: no entry for tier {tier.value!r}")

    def _check_yarn_catalog(self, errors: list[str]) -> None:
        for yarn in self.yarn_catalog.values():
            if yarn.weight not in self.yarn_weights:
                errors.append(f"yarn_catalog entry {yarn.id!r}: weight {yarn.weight} is not defined")
            if yarn.meters_per_skein <= 0:
                errors.append(f"yarn_catalog entry {yarn.id!r}: meters_per_skein must be positive")

    def _check_templates(self, errors: list[str]) -> None:
        """Template points must use known connection types and accept resolvable tokens.

        A compatibility token resolves when it is a connection type, a wildcard,
        a point name declared by some template, or a piece type declared by
        some template.
        """
        point_names = {p.name for t in self.templates.values() for p in t.connection_points}
        piece_types = {t.type for t in self.templates.values()} | set(self.templates)
        known = set(self.connection_types) | _WILDCARDS | point_names | piece_types
        for template in self.templates.values():
            prefix = f"piece_templates entry {template.id!r}"
            if not MIN_SIZE <= template.size <= MAX_SIZE:
                errors.append(f"{prefix}: size {template.size} outside {MIN_SIZE}..{MAX_SIZE}")
            if not is_safe_color(template.default_color):
                errors.append(f"{prefix}: default_color {template.default_color!r} is not #RRGGBB")
            names = [p.name for p in template.connection_points]
            if len(names) != len(set(names)):
                errors.append(f"{prefix}: connection point names must be unique, got {names}")
            for point in template.connection_points:
                if point.type not in self.connection_types:
                    errors.append(f"{prefix}: point {point.name!r} has unknown type {point.type!r}")
                for token in point.compatible:
                    if token not in known:
                        errors.append(
                            f"{prefix}: point {point.name!r} accepts unknown token {token!r}"
                        )

    def _check_stitch_colors(self, errors: list[str]) -> None:
        for stitch in self.stitches.values():
            if stitch.color is not None and not is_safe_color(stitch.color):
                errors.append(f"stitches entry {stitch.id!r}: color {stitch.color!r} is not #RRGGBB")

    # ── Query API ──────────────────────────────────────────────────────────────

    def get_stitch(self, token: str) -> StitchEntry | None:
        """Return the stitch entry for *token*, or None for an unknown token."""
        return self.stitches.get(token)

    def get_tier(self, tier: Tier | str) -> TierEntry:
        """Return the tier entry.

        Raises KeyError for an unknown tier name.
        """
        try:
            return self.tiers[Tier(tier)]
        except ValueError:
            raise KeyError(f"Unknown tier {tier!r}") from None

    def get_template(self, template_id: str) -> PieceTemplateEntry:
        """Return the template entry.

        Raises KeyError if *template_id* is not defined.
        """
        try:
            return self.templates[template_id]
        except KeyError:
            raise KeyError(f"Unknown piece template {template_id!r}") from None

    def templates_for_tier(self, tier: Tier | str) -> list[PieceTemplateEntry]:
        """Templates usable at *tier*: its own and those of every lower tier, in table order."""
        rank = Tier(tier).rank
        return [t for t in self.templates.values() if t.tier.rank <= rank]


# ── Module-level singleton ─────────────────────────────────────────────────────
#
# Initialized eagerly at import time so there is no lazy-init race condition.
# The registry is read-only after construction, so sharing it is safe.

_registry: CrochetRegistry = CrochetRegistry()


def get_registry() -> CrochetRegistry:
    """Return the module-level registry singleton."""
    return _registry
