"""
Suggestion rules.

Each rule family is a plain function from an assembly (plus learned state
where it needs it) to a list of Proposals.  A Proposal is a suggestion
before scoring: SuggestionEngine assigns ids, confidence and ordering.

Families and their rules:

  piece         body without head (high), single arm (high), most-used type (low, learned)
  connection    body↔head at neck_joint↔neck (high), unattached piece (medium),
                frequent historical pairs (low, learned)
  pattern       amigurumi piece not starting with MR (medium), unbalanced increases (low)
  structural    left/right imbalance (medium), weak points (high), low integrity (high)
  optimization  consolidate similar connected pieces (low), simplify long or varied patterns (low)
"""

from __future__ import annotations

import random
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from crochetkit.assembly import Assembly, check_connection, rank_point_pairs
from crochetkit.pattern.model import MAGIC_RING
from crochetkit.schemas.piece import Piece, Side


class SuggestionType(str, Enum):
    PIECE = "piece"
    CONNECTION = "connection"
    PATTERN = "pattern"
    STRUCTURAL = "structural"
    OPTIMIZATION = "optimization"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return list(Priority).index(self)


@dataclass(frozen=True)
class Proposal:
    type: SuggestionType
    priority: Priority
    reason: str
    details: Mapping[str, Any] = field(default_factory=dict)
    pattern_context: str | None = None
    learned: bool = False


@dataclass(frozen=True)
class KnownPattern:
    """A recognizable project shape: its piece types and a typical stitch sequence."""

    name: str
    pieces: tuple[str, ...]
    stitches: tuple[str, ...]


KNOWN_PATTERNS: tuple[KnownPattern, ...] = (
    KnownPattern("amigurumi-body", ("body", "head", "arm", "leg"), ("MR", "sc", "inc", "sc", "sc", "inc")),
    KnownPattern("granny-square", ("center", "round1", "round2", "round3"), ("ch", "dc", "ch", "sl")),
    KnownPattern("doily", ("center-ring", "petal", "edge"), ("ch", "sc", "picot", "sc")),
    KnownPattern("scarf", ("row", "fringe"), ("ch", "sc", "hdc", "dc", "hdc", "sc")),
)

AMIGURUMI_TYPES = frozenset({"amigurumi", "head", "body", "arm", "leg", "hand", "foot", "tail"})

# Weak-point thresholds: one connection holds a piece loosely, many concentrate stress.
STRESS_CONNECTIONS = 5
INTEGRITY_FLOOR = 0.7
LONG_PATTERN = 20
VARIED_PATTERN = 6
HISTORY_SUGGESTIONS = 3


def detect_pattern(pieces: Iterable[Piece]) -> KnownPattern | None:
    """First known pattern with at least half of its piece types present."""
    types = {p.type for p in pieces}
    for known in KNOWN_PATTERNS:
        matched = sum(1 for t in known.pieces if t in types)
        if matched and matched >= len(known.pieces) * 0.5:
            return known
    return None


# ── Piece ─────────────────────────────────────────────────────────────────────


def piece_rules(assembly: Assembly, usage: Counter[str], rng: random.Random) -> list[Proposal]:
    pieces = list(assembly.pieces.values())
    types = Counter(p.type for p in pieces)
    known = detect_pattern(pieces)
    proposals: list[Proposal] = []

    def annotate(reason: str, details: dict[str, Any]) -> Proposal:
        if known is None:
            return Proposal(SuggestionType.PIECE, Priority.HIGH, reason, details)
        missing = next((t for t in known.pieces if t not in types), None)
        if missing is not None:
            details = {**details, "next": {"type": missing, "pattern": list(known.stitches)}}
        return Proposal(
            SuggestionType.PIECE,
            Priority.HIGH,
            f"{reason} ({known.name} pattern detected)",
            details,
            pattern_context=known.name,
        )

    if (types["body"] or types["torso"]) and not types["head"]:
        proposals.append(annotate("Body needs a head for complete figure", {"piece": {"type": "head"}}))

    if types["body"] and types["arm"] == 1:
        arm = next(p for p in pieces if p.type == "arm")
        side = {Side.LEFT: Side.RIGHT, Side.RIGHT: Side.LEFT}.get(arm.metadata.side, Side.NONE)
        proposals.append(
            annotate("Add matching arm for symmetry", {"piece": {"type": "arm", "side": side.value}})
        )

    if usage:
        favourite, _ = max(usage.items(), key=lambda item: (item[1], item[0]))
        if rng.random() < 0.3:
            proposals.append(
                Proposal(
                    SuggestionType.PIECE,
                    Priority.LOW,
                    "Frequently used piece type",
                    {"piece": {"type": favourite}},
                    learned=True,
                )
            )
    return proposals


# ── Connection ────────────────────────────────────────────────────────────────


def _endpoint_details(a: Piece, point_a: str, b: Piece, point_b: str, **extra: Any) -> dict[str, Any]:
    return {
        "pieces": [a.id, b.id],
        "from": {"piece": a.id, "point": point_a},
        "to": {"piece": b.id, "point": point_b},
        **extra,
    }


def _valid(assembly: Assembly, a: Piece, point_a: str, b: Piece, point_b: str) -> bool:
    return check_connection(
        assembly, a.id, point_a, b.id, point_b, tier=assembly.tier, max_size_gap=assembly.max_size_gap
    ).valid


def _best_pair(assembly: Assembly, a: Piece, b: Piece) -> tuple[str, str, float] | None:
    for pa, pb in rank_point_pairs(assembly, a, b):
        if _valid(assembly, a, pa.id, b, pb.id):
            return pa.id, pb.id, round(pa.position.distance_to(pb.position), 4)
    return None


def connection_rules(assembly: Assembly, history: Sequence[Mapping[str, Any]]) -> list[Proposal]:
    pieces = list(assembly.pieces.values())
    proposals: list[Proposal] = []
    for i, first in enumerate(pieces):
        for second in pieces[i + 1 :]:
            if assembly.are_connected(first.id, second.id):
                continue
            if {first.type, second.type} == {"body", "head"}:
                body, head = (first, second) if first.type == "body" else (second, first)
                neck_joint, neck = body.point("neck_joint"), head.point("neck")
                if neck_joint and neck and _valid(assembly, body, neck_joint.id, head, neck.id):
                    proposals.append(
                        Proposal(
                            SuggestionType.CONNECTION,
                            Priority.HIGH,
                            "Natural connection point for head and body",
                            _endpoint_details(body, neck_joint.id, head, neck.id),
                        )
                    )
                    continue
            if assembly.connections_for_piece(first.id) and assembly.connections_for_piece(second.id):
                continue
            best = _best_pair(assembly, first, second)
            if best is not None:
                proposals.append(
                    Proposal(
                        SuggestionType.CONNECTION,
                        Priority.MEDIUM,
                        "Connect unattached pieces to main assembly",
                        _endpoint_details(first, best[0], second, best[1], distance=best[2]),
                    )
                )
    proposals.extend(historical_connections(assembly, history))
    return proposals


def historical_connections(assembly: Assembly, history: Sequence[Mapping[str, Any]]) -> list[Proposal]:
    """Re-propose the most frequent past (type, point) pairs where they still fit."""
    frequency = Counter(
        (h["fromType"], h["fromPoint"], h["toType"], h["toPoint"]) for h in history
    )
    proposals: list[Proposal] = []
    pieces = list(assembly.pieces.values())
    for (from_type, from_point, to_type, to_point), count in frequency.most_common():
        if len(proposals) == HISTORY_SUGGESTIONS:
            break
        match = _historical_match(assembly, pieces, from_type, from_point, to_type, to_point)
        if match is None:
            continue
        a, pa, b, pb = match
        proposals.append(
            Proposal(
                SuggestionType.CONNECTION,
                Priority.LOW,
                "Based on historical connection patterns",
                _endpoint_details(a, pa, b, pb, occurrences=count),
                learned=True,
            )
        )
    return proposals


def _historical_match(
    assembly: Assembly, pieces: Sequence[Piece], from_type: str, from_point: str, to_type: str, to_point: str
) -> tuple[Piece, str, Piece, str] | None:
    for a in pieces:
        if a.type != from_type or (pa := a.point(from_point)) is None:
            continue
        for b in pieces:
            if b.id == a.id or b.type != to_type or (pb := b.point(to_point)) is None:
                continue
            if _valid(assembly, a, pa.id, b, pb.id):
                return a, pa.id, b, pb.id
    return None


# ── Pattern ───────────────────────────────────────────────────────────────────


def balance_pattern(pattern: Sequence[str]) -> list[str]:
    """Append decreases until increases no longer outnumber twice the decreases."""
    inc, dec = pattern.count("inc"), pattern.count("dec")
    if inc <= dec * 2:
        return list(pattern)
    return list(pattern) + ["dec"] * ((inc - dec) // 2)


def pattern_rules(assembly: Assembly) -> list[Proposal]:
    proposals: list[Proposal] = []
    for piece in assembly.pieces.values():
        pattern = piece.pattern
        if pattern and piece.type in AMIGURUMI_TYPES and pattern[0] != MAGIC_RING:
            proposals.append(
                Proposal(
                    SuggestionType.PATTERN,
                    Priority.MEDIUM,
                    "Amigurumi typically starts with Magic Ring",
                    {"pieceId": piece.id, "modification": "prepend", "stitches": [MAGIC_RING]},
                )
            )
        if pattern.count("inc") > 2 * pattern.count("dec"):
            proposals.append(
                Proposal(
                    SuggestionType.PATTERN,
                    Priority.LOW,
                    "Consider adding decreases for shaping",
                    {
                        "pieceId": piece.id,
                        "modification": "balance",
                        "recommendedPattern": balance_pattern(pattern),
                    },
                )
            )
    return proposals


# ── Structural ────────────────────────────────────────────────────────────────


def weak_points(assembly: Assembly) -> list[dict[str, str]]:
    found = []
    for piece in assembly.pieces.values():
        degree = len(assembly.connections_for_piece(piece.id))
        if degree == 1:
            found.append({"pieceId": piece.id, "type": "single-connection", "severity": "medium"})
        elif degree >= STRESS_CONNECTIONS:
            found.append({"pieceId": piece.id, "type": "stress-point", "severity": "high"})
    return found


def side_imbalance(assembly: Assembly) -> dict[str, Any]:
    sides = Counter(p.metadata.side for p in assembly.pieces.values())
    left, right = sides[Side.LEFT], sides[Side.RIGHT]
    return {
        "left": left,
        "right": right,
        "center": sides[Side.NONE],
        "imbalanceScore": round(abs(left - right) / (left + right + 1), 4),
    }


def _floating(assembly: Assembly) -> bool:
    ids = list(assembly.pieces)
    if len(ids) <= 1:
        return False
    return any(not assembly.path_exists(ids[0], other) for other in ids[1:])


def structural_integrity(assembly: Assembly) -> tuple[float, list[str]]:
    """
    Score in [0, 1] with the issues that lowered it.

    Floating pieces cost 0.3, a mean connection degree below 1.5 costs 0.2,
    and each weak point costs 0.05.
    """
    score, issues = 1.0, []
    count = len(assembly.pieces)
    if _floating(assembly):
        score -= 0.3
        issues.append("floating-pieces")
    if count and 2 * len(assembly.connections) / count < 1.5:
        score -= 0.2
        issues.append("sparse-connections")
    score -= 0.05 * len(weak_points(assembly))
    return round(max(0.0, score), 4), issues


def structural_rules(assembly: Assembly) -> list[Proposal]:
    proposals: list[Proposal] = []
    imbalance = side_imbalance(assembly)
    if abs(imbalance["left"] - imbalance["right"]) > 1:
        proposals.append(
            Proposal(
                SuggestionType.STRUCTURAL,
                Priority.MEDIUM,
                "Assembly appears asymmetrical",
                {"action": "balance-sides", "imbalance": imbalance},
            )
        )
    weak = weak_points(assembly)
    if weak:
        proposals.append(
            Proposal(
                SuggestionType.STRUCTURAL,
                Priority.HIGH,
                "Some connections may need reinforcement",
                {"action": "reinforce", "weakPoints": weak},
            )
        )
    if len(assembly.pieces) > 1:
        score, issues = structural_integrity(assembly)
        if score < INTEGRITY_FLOOR:
            proposals.append(
                Proposal(
                    SuggestionType.STRUCTURAL,
                    Priority.HIGH,
                    "Overall structural integrity could be improved",
                    {"action": "improve-stability", "score": score, "issues": issues},
                )
            )
    return proposals


# ── Optimization ──────────────────────────────────────────────────────────────


def optimization_rules(assembly: Assembly) -> list[Proposal]:
    proposals: list[Proposal] = []
    pieces = list(assembly.pieces.values())
    pairs = [
        [a.id, b.id]
        for i, a in enumerate(pieces)
        for b in pieces[i + 1 :]
        if a.type == b.type
        and assembly.are_connected(a.id, b.id)
        and abs(len(a.pattern) - len(b.pattern)) <= 2
    ]
    if pairs:
        proposals.append(
            Proposal(
                SuggestionType.OPTIMIZATION,
                Priority.LOW,
                "These pieces could be combined for simpler construction",
                {"action": "consolidate", "pieces": pairs},
            )
        )
    complex_pieces = []
    for piece in pieces:
        unique = len(set(piece.pattern))
        if len(piece.pattern) > LONG_PATTERN or unique > VARIED_PATTERN:
            complex_pieces.append(
                {"pieceId": piece.id, "patternLength": len(piece.pattern), "uniqueStitches": unique}
            )
    if complex_pieces:
        proposals.append(
            Proposal(
                SuggestionType.OPTIMIZATION,
                Priority.LOW,
                "Pattern complexity could be reduced",
                {"action": "simplify-pattern", "pieces": complex_pieces},
            )
        )
    return proposals
