"""Tests for suggestions — rule families, scoring, caching and learned preferences."""

from __future__ import annotations

import random

import pytest

from crochetkit.assembly import Assembly, create_piece_from_template
from crochetkit.registry import Tier
from crochetkit.schemas.piece import ConnectionPoint, Piece, Side
from crochetkit.suggestions import (
    Priority,
    Proposal,
    SuggestionEngine,
    SuggestionType,
    balance_pattern,
    detect_pattern,
    score,
    structural_integrity,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 1_700_000_000_000

    def __call__(self) -> int:
        return self.now


class _AlwaysLucky(random.Random):
    def random(self) -> float:
        return 0.0


def _make_assembly(*templates: tuple[str, str], tier: Tier = Tier.PRO, **sides: Side) -> Assembly:
    asm = Assembly("doll", "Doll", tier, clock=lambda: 1)
    for template_id, piece_id in templates:
        piece = create_piece_from_template(
            template_id, tier, piece_id=piece_id, created_at=1, side=sides.get(piece_id, Side.NONE)
        ).value
        asm.add_piece(piece)
    return asm


def _make_patterned(piece_id: str, piece_type: str, pattern: tuple[str, ...]) -> Piece:
    return Piece(
        id=piece_id,
        type=piece_type,
        name=piece_id,
        color="#00FF00",
        connection_points=(ConnectionPoint(id=f"{piece_id}_u", name="u", compatible=("universal",)),),
        pattern=pattern,
    )


def _make_engine(**kw) -> tuple[SuggestionEngine, _Clock]:
    clock = _Clock()
    kw.setdefault("rng", random.Random(7))
    return SuggestionEngine(clock=clock, **kw), clock


def _reasons(suggestions) -> list[str]:
    return [s.reason for s in suggestions]


# ── Scoring ────────────────────────────────────────────────────────────────────


class TestScore:
    @pytest.mark.parametrize(
        ("proposal", "pieces", "expected"),
        [
            (Proposal(SuggestionType.PIECE, Priority.HIGH, "r"), 1, 0.7),
            (Proposal(SuggestionType.PIECE, Priority.MEDIUM, "r"), 1, 0.6),
            (Proposal(SuggestionType.PIECE, Priority.LOW, "r"), 1, 0.5),
            (Proposal(SuggestionType.PIECE, Priority.HIGH, "r", pattern_context="scarf"), 1, 0.85),
            (Proposal(SuggestionType.PIECE, Priority.HIGH, "r", pattern_context="x", learned=True), 1, 0.95),
            (Proposal(SuggestionType.PIECE, Priority.LOW, "r"), 21, 0.4),
        ],
    )
    def test_confidence(self, proposal, pieces, expected):
        assert score(proposal, pieces) == pytest.approx(expected)


# ── Rule families ──────────────────────────────────────────────────────────────


class TestPieceRules:
    def test_body_needs_head(self):
        engine, _ = _make_engine()
        suggestions = engine.generate(_make_assembly(("body", "b1")), {"type": "piece"})
        assert _reasons(suggestions) == ["Body needs a head for complete figure"]
        assert suggestions[0].priority is Priority.HIGH

    def test_known_pattern_annotates(self):
        engine, _ = _make_engine()
        asm = _make_assembly(("body", "b1"), ("arm", "a1"), a1=Side.LEFT)
        suggestions = engine.generate(asm, {"type": "piece"})
        head = next(s for s in suggestions if s.reason.startswith("Body needs a head"))
        assert head.pattern_context == "amigurumi-body"
        assert head.details["next"]["type"] == "head"
        arm = next(s for s in suggestions if s.reason == "Add matching arm for symmetry (amigurumi-body pattern detected)")
        assert arm.details["piece"]["side"] == "right"

    def test_learned_favourite(self):
        engine, _ = _make_engine(rng=_AlwaysLucky(1))
        engine.record_piece_usage("arm")
        engine.record_piece_usage("arm")
        engine.record_piece_usage("leg")
        suggestions = engine.generate(_make_assembly(("head", "h1")), {"type": "piece"})
        learned = [s for s in suggestions if s.learned]
        assert learned[0].details["piece"]["type"] == "arm"

    def test_detect_pattern(self):
        pieces = [_make_patterned("r", "row", ()), _make_patterned("f", "fringe", ())]
        assert detect_pattern(pieces).name == "scarf"
        assert detect_pattern([_make_patterned("x", "teapot", ())]) is None


class TestConnectionRules:
    def test_head_and_body_neck(self):
        engine, _ = _make_engine()
        asm = _make_assembly(("body", "b1"), ("head", "h1"))
        suggestions = engine.generate(asm, {"type": "connection"})
        natural = suggestions[0]
        assert natural.reason == "Natural connection point for head and body"
        assert natural.details["from"] == {"piece": "b1", "point": "b1_neck_joint"}
        assert natural.details["to"] == {"piece": "h1", "point": "h1_neck"}

    def test_connected_pair_not_proposed(self):
        engine, _ = _make_engine()
        asm = _make_assembly(("body", "b1"), ("head", "h1"))
        asm.connect("b1", "neck_joint", "h1", "neck")
        assert engine.generate(asm, {"type": "connection"}) == []

    def test_historical_pairs(self):
        engine, _ = _make_engine()
        done = _make_assembly(("body", "b1"), ("head", "h1"))
        engine.record_connection(done.get_piece("b1"), "b1_neck_joint", done.get_piece("h1"), "h1_neck")
        assert engine.connection_history[0]["fromPoint"] == "neck_joint"

        fresh = _make_assembly(("body", "b2"), ("head", "h2"))
        suggestions = engine.generate(fresh, {"type": "connection"})
        learned = [s for s in suggestions if s.learned]
        assert learned and learned[0].details["occurrences"] == 1
        assert learned[0].details["pieces"] == ["b2", "h2"]


class TestPatternRules:
    def test_magic_ring_and_balance(self):
        engine, _ = _make_engine()
        asm = Assembly("p", tier=Tier.PRO)
        asm.add_piece(_make_patterned("h", "head", ("sc", "inc", "inc", "inc")))
        suggestions = engine.generate(asm, {"type": "pattern"})
        assert _reasons(suggestions) == [
            "Amigurumi typically starts with Magic Ring",
            "Consider adding decreases for shaping",
        ]
        assert suggestions[1].details["recommendedPattern"] == ["sc", "inc", "inc", "inc", "dec"]

    def test_balance_pattern(self):
        assert balance_pattern(["inc"] * 5 + ["dec"]) == ["inc"] * 5 + ["dec"] * 3
        assert balance_pattern(["inc", "inc", "dec"]) == ["inc", "inc", "dec"]


class TestStructuralRules:
    def test_weak_points_and_integrity(self):
        engine, _ = _make_engine()
        asm = _make_assembly(("body", "b1"), ("head", "h1"), ("leg", "l1"))
        asm.connect("b1", "neck_joint", "h1", "neck")
        integrity, issues = structural_integrity(asm)
        assert issues == ["floating-pieces", "sparse-connections"]
        assert integrity == pytest.approx(0.4)
        reasons = _reasons(engine.generate(asm, {"type": "structural"}))
        assert reasons == [
            "Some connections may need reinforcement",
            "Overall structural integrity could be improved",
        ]

    def test_asymmetry(self):
        engine, _ = _make_engine()
        asm = _make_assembly(("arm", "a1"), ("arm", "a2"), a1=Side.LEFT, a2=Side.LEFT)
        reasons = _reasons(engine.generate(asm, {"type": "structural"}))
        assert "Assembly appears asymmetrical" in reasons


class TestOptimizationRules:
    def test_long_pattern(self):
        engine, _ = _make_engine()
        asm = Assembly("p", tier=Tier.PRO)
        asm.add_piece(_make_patterned("s", "scarf", ("sc",) * 25))
        suggestions = engine.generate(asm, {"type": "optimization"})
        assert suggestions[0].details["pieces"][0]["patternLength"] == 25


# ── Engine behaviour ───────────────────────────────────────────────────────────


class TestEngine:
    def test_ordered_by_priority_then_confidence(self):
        engine, _ = _make_engine()
        asm = _make_assembly(("body", "b1"), ("arm", "a1"), a1=Side.LEFT)
        suggestions = engine.generate(asm)
        ranks = [s.priority.rank for s in suggestions]
        assert ranks == sorted(ranks)

    def test_cached_until_version_changes(self):
        engine, _ = _make_engine()
        asm = _make_assembly(("body", "b1"))
        first = engine.generate(asm)
        assert [s.id for s in engine.generate(asm)] == [s.id for s in first]
        asm.add_piece(create_piece_from_template("head", Tier.PRO, piece_id="h1", created_at=1).value)
        assert _reasons(engine.generate(asm)) != _reasons(first)

    def test_cache_expires(self):
        engine, clock = _make_engine(ttl_seconds=3)
        asm = _make_assembly(("body", "b1"))
        first = engine.generate(asm)
        clock.now += 3000
        assert engine.generate(asm)[0].id != first[0].id

    def test_ids(self):
        engine, clock = _make_engine()
        suggestion = engine.generate(_make_assembly(("body", "b1")))[0]
        prefix, stamp, token = suggestion.id.split("-")
        assert prefix == "piece" and int(stamp) == clock.now and len(token) == 5

    def test_unknown_type(self):
        engine, _ = _make_engine()
        with pytest.raises(ValueError):
            engine.generate(_make_assembly(), {"type": "magic"})

    def test_export(self):
        engine, _ = _make_engine()
        suggestions = engine.generate(_make_assembly(("body", "b1")))
        exported = engine.export_suggestions(suggestions)
        assert exported["count"] == len(suggestions)
        assert exported["byType"]["piece"] == 1
        assert exported["timestamp"].startswith("2023-11-14T22:13:20")
