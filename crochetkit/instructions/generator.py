"""
Step-by-step instructions for an assembly.

generate_instructions walks the assembly once and builds an
InstructionDocument whose sections always come in the same order:

  1. overview        piece breakdown, difficulty, time estimate
  2. materials       yarn per color, hook, notions
  3. piece-creation  one step per piece, one sub-step per round
  4. assembly        one step per connection ("Attach head to body")
  5. techniques      only for the ``technique`` document type
  6. tips            derived from the assembly's size and stitches

The document is plain frozen data; exporters live in
:mod:`crochetkit.instructions.render`.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from crochetkit.events import wall_clock
from crochetkit.pattern import Difficulty, group_into_rounds, stitch_count, to_written
from crochetkit.registry import StitchEntry, get_registry
from crochetkit.schemas.connection import Connection
from crochetkit.schemas.piece import Piece
from crochetkit.yarn import calculate_yarn_requirement

logger = logging.getLogger(__name__)

MINUTES_PER_PIECE = 30
MINUTES_PER_CONNECTION = 5
JOIN_METHOD = "whip stitch"

NOTIONS = ("Yarn needle", "Scissors", "Stitch markers", "Row counter (optional)")
OPTIONAL = ("Blocking mats and pins", "Safety eyes (if making amigurumi)", "Fiberfill stuffing")


class InstructionType(str, Enum):
    ASSEMBLY = "assembly"
    PATTERN = "pattern"
    TECHNIQUE = "technique"


class AssemblyReader(Protocol):
    """Read side of an assembly used by the generator."""

    id: str
    name: str

    @property
    def pieces(self) -> Mapping[str, Piece]: ...

    @property
    def connections(self) -> Mapping[str, Connection]: ...


@dataclass(frozen=True)
class Step:
    number: int
    title: str
    description: str = ""
    pattern: tuple[str, ...] = ()
    details: Mapping[str, Any] = field(default_factory=dict)
    tips: tuple[str, ...] = ()
    substeps: tuple[Mapping[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "stepNumber": self.number,
            "title": self.title,
            "description": self.description,
            "details": dict(self.details),
            "tips": list(self.tips),
        }
        if self.pattern:
            data["pattern"] = list(self.pattern)
        if self.substeps:
            data["substeps"] = [dict(s) for s in self.substeps]
        return data


@dataclass(frozen=True)
class Section:
    """
    One document section.

    content is either a mapping of labelled values (strings, numbers or
    lists) or a list of strings; steps is empty for content-only sections.
    """

    type: str
    title: str
    content: Mapping[str, Any] | tuple[str, ...] = ()
    steps: tuple[Step, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        content = dict(self.content) if isinstance(self.content, Mapping) else list(self.content)
        data: dict[str, Any] = {"type": self.type, "title": self.title, "content": content}
        if self.steps:
            data["steps"] = [s.to_dict() for s in self.steps]
        return data


@dataclass(frozen=True)
class InstructionDocument:
    id: str
    assembly_id: str
    assembly_name: str
    type: InstructionType
    difficulty: Difficulty
    language: str
    generated: str  # ISO-8601, UTC
    metadata: Mapping[str, Any]
    sections: tuple[Section, ...]

    def section(self, section_type: str) -> Section | None:
        return next((s for s in self.sections if s.type == section_type), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "assemblyId": self.assembly_id,
            "assemblyName": self.assembly_name,
            "type": self.type.value,
            "difficulty": self.difficulty.value,
            "language": self.language,
            "generated": self.generated,
            "metadata": dict(self.metadata),
            "sections": [s.to_dict() for s in self.sections],
        }


# ── Estimates ─────────────────────────────────────────────────────────────────


def estimate_minutes(piece_count: int, connection_count: int) -> int:
    return piece_count * MINUTES_PER_PIECE + connection_count * MINUTES_PER_CONNECTION


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def format_time(minutes: int) -> str:
    """
    Human-readable duration.

    ``45`` → "45 minutes", ``65`` → "1 hour 5 minutes", ``600`` →
    "10 hours (multiple sessions)".
    """
    if minutes < 60:
        return _plural(minutes, "minute")
    hours, mins = divmod(minutes, 60)
    if minutes >= 480:
        return f"{_plural(hours, 'hour')} (multiple sessions)"
    if mins:
        return f"{_plural(hours, 'hour')} {_plural(mins, 'minute')}"
    return _plural(hours, "hour")


def skill_level(
    pieces: Sequence[Piece], connection_count: int, stitches: Mapping[str, StitchEntry]
) -> Difficulty:
    """Hardest stitch used, raised for large assemblies (>10 pieces, >15 connections)."""
    level = 1
    for piece in pieces:
        for token in piece.pattern:
            entry = stitches.get(token)
            if entry is not None:
                level = max(level, entry.difficulty)
    if len(pieces) > 10:
        level = max(level, 2)
    if connection_count > 15:
        level = 3
    return Difficulty.from_level(level)


# ── Sections ──────────────────────────────────────────────────────────────────


def _overview(name: str, pieces: Sequence[Piece], difficulty: Difficulty, minutes: int) -> Section:
    by_type = Counter(p.type for p in pieces)
    return Section(
        type="overview",
        title="Project Overview",
        content={
            "description": f"This project consists of {len(pieces)} pieces forming a {name or 'crochet assembly'}.",
            "difficulty": difficulty.value,
            "estimatedTime": format_time(minutes),
            "pieceBreakdown": [f"{t}: {n} pieces" for t, n in sorted(by_type.items())],
        },
    )


def _materials(pieces: Sequence[Piece]) -> Section:
    patterns_by_color: dict[str, list[str]] = {}
    for piece in pieces:
        patterns_by_color.setdefault(piece.color, []).extend(piece.pattern)
    yarn = []
    for color, tokens in patterns_by_color.items():
        meters = calculate_yarn_requirement(tokens).meters if tokens else 0.0
        yarn.append(f"{color}: {meters:.1f} m worsted weight (4)")
    tips = ["Buy extra yarn from the same dye lot"]
    if len(patterns_by_color) > 1:
        tips.insert(0, "Keep consistent tension when changing colors")
    return Section(
        type="materials",
        title="Materials & Tools",
        content={
            "yarn": yarn,
            "hook": "Size H/8 (5.0mm) crochet hook",
            "notions": list(NOTIONS),
            "optional": list(OPTIONAL),
            "tips": tips,
        },
    )


def _round_tip(tokens: Sequence[str], number: int) -> str | None:
    if number == 1 and "inc" in tokens:
        return "Place a stitch marker at the beginning of the round"
    if "dec" in tokens:
        return "Decrease evenly around for best shaping"
    return None


def _piece_rounds(piece: Piece, stitches: Mapping[str, StitchEntry], window: int) -> list[dict[str, Any]]:
    if piece.pattern:
        rows = []
        for number, tokens in enumerate(group_into_rounds(piece.pattern, window=window, stitches=stitches), 1):
            rows.append(
                {
                    "round": number,
                    "instruction": f"Round {number}: {to_written(tokens)}",
                    "stitchCount": stitch_count(tokens, stitches),
                    "tip": _round_tip(tokens, number),
                }
            )
        return rows
    return [
        {
            "round": row.round,
            "instruction": f"Round {row.round}: {row.instruction}",
            "stitchCount": row.stitches,
            "tip": None,
        }
        for row in piece.rounds
    ]


def _piece_tips(piece: Piece) -> tuple[str, ...]:
    tips = []
    if "MR" in piece.pattern or any(r.instruction.startswith("MR") for r in piece.rounds):
        tips.append("Pull magic ring tight before continuing")
    if piece.type in {"head", "body"}:
        tips.append("Stuff firmly before closing")
    if piece.custom:
        tips.append("Check the custom piece's measurements against its neighbours")
    return tuple(tips)


def _piece_creation(pieces: Sequence[Piece], stitches: Mapping[str, StitchEntry], window: int) -> Section:
    steps = []
    for number, piece in enumerate(pieces, 1):
        origin = "using the pattern provided" if piece.pattern else f"following standard {piece.type} construction"
        steps.append(
            Step(
                number=number,
                title=f"Make {piece.name}",
                description=f"Create a {piece.type} piece {origin}",
                pattern=piece.pattern,
                details={"color": piece.color, "side": piece.metadata.side.value},
                tips=_piece_tips(piece),
                substeps=tuple(_piece_rounds(piece, stitches, window)),
            )
        )
    return Section(type="piece-creation", title="Part 1: Creating the Pieces", steps=tuple(steps))


def _assembly_steps(pieces: Mapping[str, Piece], connections: Sequence[Connection]) -> Section:
    steps = []
    for number, conn in enumerate(connections, 1):
        first = pieces.get(conn.a.piece_id)
        second = pieces.get(conn.b.piece_id)
        if first is None or second is None:
            logger.warning("skipping connection %s with a missing piece", conn.id)
            continue
        point_a = first.point(conn.a.point_id)
        point_b = second.point(conn.b.point_id)
        name_a = point_a.name if point_a else conn.a.point_id
        name_b = point_b.name if point_b else conn.b.point_id
        steps.append(
            Step(
                number=number,
                title=f"Attach {first.type} to {second.type}",
                description=f"Attach the {name_a} of the {first.name} to the {name_b} of the {second.name}",
                details={"fromPoint": name_a, "toPoint": name_b, "method": JOIN_METHOD},
                tips=(
                    "Ensure pieces are aligned before sewing",
                    "Use matching yarn color for invisible seams",
                ),
            )
        )
    return Section(type="assembly", title="Part 2: Assembly", steps=tuple(steps))


def _techniques(pieces: Sequence[Piece], stitches: Mapping[str, StitchEntry]) -> Section:
    used = sorted({t for p in pieces for t in p.pattern if t in stitches}, key=lambda t: stitches[t].name)
    return Section(
        type="techniques",
        title="Techniques Used",
        content=tuple(f"{stitches[t].abbr} = {stitches[t].name}" for t in used),
    )


def _tips(
    pieces: Sequence[Piece], connection_count: int, difficulty: Difficulty, stitches: Mapping[str, StitchEntry]
) -> Section:
    tips: list[str] = []
    if difficulty == Difficulty.BEGINNER:
        tips += [
            "Count your stitches at the end of each round",
            "Use stitch markers to mark important points",
        ]
    advanced = any(
        (entry := stitches.get(t)) is not None and entry.difficulty >= 3
        for p in pieces
        for t in p.pattern
    )
    if advanced:
        tips += ["Keep a row counter handy", "Make notes as you go"]
    if len(pieces) > 10:
        tips += ["Label pieces as you complete them", "Store completed pieces in separate bags"]
    if connection_count >= 5:
        tips.append("Pin all pieces in place before sewing any of them")
    if any(p.custom for p in pieces):
        tips.append("Test-fit custom pieces before the final assembly")
    tips.append("Take breaks to avoid hand fatigue")
    return Section(type="tips", title="Tips & Tricks", content=tuple(tips))


# ── Entry point ───────────────────────────────────────────────────────────────


def generate_instructions(
    assembly: AssemblyReader,
    kind: InstructionType | str = InstructionType.ASSEMBLY,
    *,
    language: str = "en",
    clock: Callable[[], int] = wall_clock,
    stitches: Mapping[str, StitchEntry] | None = None,
    window: int = 6,
) -> InstructionDocument:
    """
    Build the instruction document for *assembly*.

    Parameters
    ----------
    assembly:
        Any object exposing ``id``, ``name``, ``pieces`` and ``connections``.
    kind:
        Document type.  ``technique`` adds a techniques section.
    clock:
        Epoch-ms time source for the document id and ``generated`` stamp.

    Raises
    ------
    ValueError
        If *kind* is not a known document type.
    """
    kind = InstructionType(kind)
    table = stitches if stitches is not None else get_registry().stitches
    pieces = list(assembly.pieces.values())
    connections = list(assembly.connections.values())
    difficulty = skill_level(pieces, len(connections), table)
    minutes = estimate_minutes(len(pieces), len(connections))

    sections = [
        _overview(assembly.name, pieces, difficulty, minutes),
        _materials(pieces),
        _piece_creation(pieces, table, window),
        _assembly_steps(assembly.pieces, connections),
    ]
    if kind == InstructionType.TECHNIQUE:
        sections.append(_techniques(pieces, table))
    sections.append(_tips(pieces, len(connections), difficulty, table))

    now = clock()
    logger.debug("generated %s instructions for %s (%d sections)", kind.value, assembly.id, len(sections))
    return InstructionDocument(
        id=f"instructions_{now}",
        assembly_id=assembly.id,
        assembly_name=assembly.name,
        type=kind,
        difficulty=difficulty,
        language=language,
        generated=datetime.fromtimestamp(now / 1000, tz=timezone.utc).isoformat(),
        metadata={
            "pieceCount": len(pieces),
            "connectionCount": len(connections),
            "estimatedTime": minutes,
            "estimatedTimeText": format_time(minutes),
            "skillLevel": difficulty.value,
        },
        sections=tuple(sections),
    )
