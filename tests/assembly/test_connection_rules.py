"""Tests for assembly.validator — check_connection, confidence, ranking, invariants."""

from __future__ import annotations

from crochetkit.assembly import (
    Assembly,
    check_connection,
    check_invariants,
    connection_confidence,
    rank_point_pairs,
)
from crochetkit.errors import ErrorKind
from crochetkit.registry import Tier
from crochetkit.schemas.connection import Connection, Endpoint
from crochetkit.schemas.piece import ConnectionPoint, Piece


def _point(pid: str, name: str, compatible: tuple[str, ...], ptype: str | None = None, size: int | None = None):
    return ConnectionPoint(id=f"{pid}_{name}", name=name, compatible=compatible, type=ptype, size=size)


def _make_piece(pid: str, *points: ConnectionPoint, piece_type: str = "part", custom: bool = False) -> Piece:
    return Piece(id=pid, type=piece_type, name=pid, color="#123456", connection_points=points, custom=custom)


def _make_assembly(*pieces: Piece, tier: Tier = Tier.PRO) -> Assembly:
    asm = Assembly("v", tier=tier, clock=lambda: 1)
    for p in pieces:
        asm.add_piece(p)
    return asm


class TestCheckConnection:
    def test_valid(self):
        a = _make_piece("a", _point("a", "top", ("bottom",)))
        b = _make_piece("b", _point("b", "bottom", ("top",)))
        check = check_connection(_make_assembly(a, b), "a", "top", "b", "bottom")
        assert check.valid and check.reason is None

    def test_acceptance_must_be_mutual(self):
        a = _make_piece("a", _point("a", "top", ("bottom",)))
        b = _make_piece("b", _point("b", "bottom", ("side",)))
        check = check_connection(_make_assembly(a, b), "a", "top", "b", "bottom")
        assert check.reason is ErrorKind.INCOMPATIBLE

    def test_piece_type_is_accepted_tag(self):
        a = _make_piece("a", _point("a", "wrist", ("hand",)))
        b = _make_piece("b", _point("b", "cuff", ("wrist",)), piece_type="hand")
        assert check_connection(_make_assembly(a, b), "a", "wrist", "b", "cuff").valid

    def test_universal_accepts_everything(self):
        a = _make_piece("a", _point("a", "x", ("nothing",)))
        b = _make_piece("b", _point("b", "universal", ("universal",), ptype="universal"), custom=True)
        assert check_connection(_make_assembly(a, b), "a", "x", "b", "universal").valid

    def test_first_failure_wins(self):
        # Self connection is checked before compatibility.
        a = _make_piece("a", _point("a", "x", ()), _point("a", "y", ()))
        check = check_connection(_make_assembly(a), "a", "x", "a", "y")
        assert check.reason is ErrorKind.SELF_CONNECTION

    def test_tier_rule_skipped_without_tier(self):
        a = _make_piece("a", _point("a", "x", ("any",)))
        b = _make_piece("b", _point("b", "y", ("any",)), custom=True)
        asm = _make_assembly(a, b, tier=Tier.FREEMIUM)
        assert check_connection(asm, "a", "x", "b", "y").valid
        assert check_connection(asm, "a", "x", "b", "y", tier=Tier.FREEMIUM).reason is (
            ErrorKind.TIER_RESTRICTED_CUSTOM_PIECE
        )

    def test_size_gap_is_configurable(self):
        a = _make_piece("a", _point("a", "x", ("any",), size=1))
        b = _make_piece("b", _point("b", "y", ("any",), size=4))
        asm = _make_assembly(a, b)
        assert check_connection(asm, "a", "x", "b", "y").reason is ErrorKind.SIZE_MISMATCH
        assert check_connection(asm, "a", "x", "b", "y", max_size_gap=3).valid


class TestConfidence:
    def test_exact_name(self):
        a = _make_piece("a", _point("a", "top", ("bottom",)))
        b = _make_piece("b", _point("b", "bottom", ("top",)))
        assert connection_confidence(a, a.connection_points[0], b, b.connection_points[0]) == 1.0

    def test_type_tag(self):
        a = _make_piece("a", _point("a", "l", ("neck",), ptype="neck"))
        b = _make_piece("b", _point("b", "r", ("neck",), ptype="neck"))
        assert connection_confidence(a, a.connection_points[0], b, b.connection_points[0]) == 0.8

    def test_universal(self):
        a = _make_piece("a", _point("a", "l", ("neck",), ptype="neck"))
        b = _make_piece("b", _point("b", "universal", ("universal",), ptype="universal"))
        assert connection_confidence(a, a.connection_points[0], b, b.connection_points[0]) == 0.6

    def test_size_penalty(self):
        a = _make_piece("a", _point("a", "top", ("bottom",), size=2))
        b = _make_piece("b", _point("b", "bottom", ("top",), size=4))
        assert connection_confidence(a, a.connection_points[0], b, b.connection_points[0]) == 0.8

    def test_incompatible_is_zero(self):
        a = _make_piece("a", _point("a", "top", ("x",)))
        b = _make_piece("b", _point("b", "bottom", ("y",)))
        assert connection_confidence(a, a.connection_points[0], b, b.connection_points[0]) == 0.0


class TestRankPointPairs:
    def test_exact_before_typed_and_skips_occupied(self):
        a = _make_piece("a", _point("a", "l", ("neck",), ptype="neck"), _point("a", "top", ("bottom",)))
        b = _make_piece("b", _point("b", "r", ("neck",), ptype="neck"), _point("b", "bottom", ("top",)))
        asm = _make_assembly(a, b)
        pairs = rank_point_pairs(asm, a, b)
        assert [(pa.name, pb.name) for pa, pb in pairs] == [("top", "bottom"), ("l", "r")]

        c = _make_piece("c", _point("c", "bottom", ("top",)))
        asm.add_piece(c)
        asm.connect("a", "top", "c", "bottom")
        assert [(pa.name, pb.name) for pa, pb in rank_point_pairs(asm, a, b)] == [("l", "r")]


class TestCheckInvariants:
    def _pieces(self) -> dict[str, Piece]:
        return {
            pid: _make_piece(pid, _point(pid, "x", ("any",)), _point(pid, "y", ("any",)))
            for pid in ("p1", "p2", "p3")
        }

    def test_detects_cycle(self):
        conns = [
            Connection("c1", Endpoint("p1", "x"), Endpoint("p2", "x")),
            Connection("c2", Endpoint("p2", "y"), Endpoint("p3", "x")),
            Connection("c3", Endpoint("p3", "y"), Endpoint("p1", "y")),
        ]
        report = check_invariants(self._pieces(), conns)
        assert not report.valid
        assert [e.code for e in report.errors] == ["cycle"]

    def test_detects_dangling_endpoint(self):
        conns = [Connection("c1", Endpoint("p1", "x"), Endpoint("ghost", "x"))]
        report = check_invariants(self._pieces(), conns)
        assert "dangling_endpoint" in [e.code for e in report.errors]

    def test_detects_point_reuse(self):
        conns = [
            Connection("c1", Endpoint("p1", "x"), Endpoint("p2", "x")),
            Connection("c2", Endpoint("p1", "x"), Endpoint("p3", "x")),
        ]
        assert "point_reused" in [e.code for e in check_invariants(self._pieces(), conns).errors]

    def test_detects_multi_edge(self):
        conns = [
            Connection("c1", Endpoint("p1", "x"), Endpoint("p2", "x")),
            Connection("c2", Endpoint("p1", "y"), Endpoint("p2", "y")),
        ]
        assert "multi_edge" in [e.code for e in check_invariants(self._pieces(), conns).errors]

    def test_earliest_piece_is_root_when_no_body(self):
        conns = [Connection("c1", Endpoint("p1", "x"), Endpoint("p2", "x"))]
        report = check_invariants(self._pieces(), conns)
        assert report.valid
        assert [w.subject_id for w in report.warnings] == ["p3"]
