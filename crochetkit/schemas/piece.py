"""
Piece schema: the nodes of an assembly graph.

A Piece owns an ordered tuple of ConnectionPoints; points never outlive their
piece.  Both are frozen: the assembly replaces a piece wholesale on every
modification, so snapshots handed to subscribers stay valid.

Occupancy is not stored on a point.  It is derived from the assembly's live
connections (see ``Assembly.is_occupied``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from crochetkit.safety.types import SafeVector, is_safe_color

UNIVERSAL = "universal"
ANY = "any"

MIN_SIZE = 1
MAX_SIZE = 5


class Side(str, Enum):
    """Side tag for mirrored pieces (arms, legs)."""

    LEFT = "left"
    RIGHT = "right"
    NONE = "none"


@dataclass(frozen=True)
class RoundSpec:
    """One summarized round of a piece's pattern, e.g. ``(3, 18, "(sc, inc) x6")``."""

    round: int
    stitches: int
    instruction: str


@dataclass(frozen=True)
class ConnectionPoint:
    """
    A named docking site on a piece.

    position:   piece-local coordinates.
    compatible: names, connection types or piece tags this point accepts.
                ``universal`` (or ``any``) accepts every other point.
    type:       connection type this point presents to others (``neck``…).
    size:       optional size class 1–5 used by the size-gap rule.
    """

    id: str
    name: str
    position: SafeVector = field(default_factory=SafeVector)
    compatible: tuple[str, ...] = ()
    type: str | None = None
    size: int | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("ConnectionPoint id must not be empty")
        if not self.name:
            raise ValueError(f"ConnectionPoint {self.id!r}: name must not be empty")
        if self.size is not None and not MIN_SIZE <= self.size <= MAX_SIZE:
            raise ValueError(
                f"ConnectionPoint {self.id!r}: size must be in {MIN_SIZE}..{MAX_SIZE}, got {self.size}"
            )

    @property
    def tags(self) -> frozenset[str]:
        """Name and type: the labels another point's compatibility set can match."""
        return frozenset(t for t in (self.name, self.type) if t)

    def accepts(self, other: ConnectionPoint, other_piece_type: str | None = None) -> bool:
        """True when this point's compatibility set admits *other*."""
        accepted = set(self.compatible)
        if UNIVERSAL in accepted or ANY in accepted:
            return True
        if other.type == UNIVERSAL:
            return True
        if accepted & other.tags:
            return True
        return other_piece_type is not None and other_piece_type in accepted


@dataclass(frozen=True)
class PieceMetadata:
    stitch_count: int = 0
    round_count: int = 0
    created_at: int = 0  # epoch milliseconds
    side: Side = Side.NONE
    group_id: str | None = None


@dataclass(frozen=True)
class Piece:
    """
    A crochet component placed in an assembly.

    type:    free-form tag (``body``, ``head``, ``arm``…) used by suggestion
             and instruction rules.
    pattern: stitch tokens for the whole piece (may be empty).
    rounds:  summarized round list, typically from a template.
    custom:  True for user-defined pieces, which lower tiers may not connect.
    extras:  fields read from persisted data that this version does not know,
             kept so they are written back unchanged.
    """

    id: str
    type: str
    name: str
    color: str
    connection_points: tuple[ConnectionPoint, ...] = ()
    metadata: PieceMetadata = field(default_factory=PieceMetadata)
    position: SafeVector = field(default_factory=SafeVector)
    pattern: tuple[str, ...] = ()
    rounds: tuple[RoundSpec, ...] = ()
    custom: bool = False
    locked: bool = False
    extras: dict[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Piece id must not be empty")
        if not self.type:
            raise ValueError(f"Piece {self.id!r}: type must not be empty")
        if not is_safe_color(self.color):
            raise ValueError(f"Piece {self.id!r}: color must be #RRGGBB, got {self.color!r}")
        point_ids = [p.id for p in self.connection_points]
        if len(point_ids) != len(set(point_ids)):
            raise ValueError(f"Piece {self.id!r}: connection point ids must be unique, got {point_ids}")

    def point(self, point_id: str) -> ConnectionPoint | None:
        """Return the point with *point_id*, falling back to a name match."""
        for p in self.connection_points:
            if p.id == point_id:
                return p
        for p in self.connection_points:
            if p.name == point_id:
                return p
        return None
