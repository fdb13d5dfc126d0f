"""Tests for assembly.graph — Assembly mutations, occupancy, versions and events."""

from __future__ import annotations

import random

import pytest

from crochetkit.assembly import Assembly
from crochetkit.errors import ErrorKind
from crochetkit.events import EventBus, EventType
from crochetkit.registry import Tier
from crochetkit.safety.types import SafeVector
from crochetkit.schemas.piece import ConnectionPoint, Piece

_T0 = 1_700_000_000_000


def _make_piece(
    piece_id: str,
    piece_type: str = "part",
    points: tuple[str, ...] = ("a", "b", "c"),
    *,
    compatible: tuple[str, ...] = ("link",),
    size: int | None = None,
    custom: bool = False,
    locked: bool = False,
) -> Piece:
    return Piece(
        id=piece_id,
        type=piece_type,
        name=piece_id.title(),
        color="#FFFFFF",
        connection_points=tuple(
            ConnectionPoint(id=f"{piece_id}_{name}", name=name, compatible=compatible, type="link", size=size)
            for name in points
        ),
        custom=custom,
        locked=locked,
    )


def _make_assembly(tier: Tier = Tier.PRO, **kwargs) -> Assembly:
    return Assembly("asm", "Test", tier, clock=lambda: _T0, rng=random.Random(1), **kwargs)


def _events(assembly: Assembly) -> list:
    seen: list = []
    assembly.bus.subscribe(None, seen.append)
    return seen


# ── Pieces ─────────────────────────────────────────────────────────────────────


class TestAddPiece:
    def test_bumps_version_once(self):
        asm = _make_assembly()
        assert asm.add_piece(_make_piece("p1")).ok
        assert asm.version == 1

    def test_emits_piece_added_then_version(self):
        asm = _make_assembly()
        seen = _events(asm)
        asm.add_piece(_make_piece("p1"))
        assert [e.type for e in seen] == [EventType.PIECE_ADDED, EventType.VERSION_BUMPED]
        assert seen[1].payload["version"] == 1

    def test_duplicate_id_rejected_without_version_change(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1"))
        result = asm.add_piece(_make_piece("p1"))
        assert result.kind is ErrorKind.VALIDATION_FAILED
        assert asm.version == 1

    def test_plain_data_gets_generated_ids(self):
        asm = _make_assembly()
        result = asm.add_piece({"type": "head", "connectionPoints": [{"name": "neck"}]})
        assert result.ok
        piece = result.value
        assert piece.id.startswith("piece_")
        assert piece.connection_points[0].id == f"{piece.id}_pt0"
        assert piece.metadata.created_at == _T0

    def test_malformed_data_is_validation_failure(self):
        asm = _make_assembly()
        assert asm.add_piece({"name": "no type"}).kind is ErrorKind.VALIDATION_FAILED
        assert asm.version == 0

    def test_snap_grid_applies_to_position(self):
        asm = _make_assembly(snap_grid=1.0)
        piece = asm.add_piece({"id": "p", "type": "x", "position": {"x": 0.6, "y": 1.4}}).value
        assert piece.position == SafeVector(1.0, 1.0, 0.0)


class TestRemovePiece:
    def test_removes_touching_connections(self):
        asm = _make_assembly()
        for pid in ("p1", "p2"):
            asm.add_piece(_make_piece(pid))
        asm.connect("p1", "a", "p2", "a")
        result = asm.remove_piece("p1")
        assert result.ok
        assert len(result.value["connections"]) == 1
        assert not asm.connections
        assert not asm.is_occupied("p2", "a")

    def test_remove_is_one_version_step(self):
        asm = _make_assembly()
        for pid in ("p1", "p2"):
            asm.add_piece(_make_piece(pid))
        asm.connect("p1", "a", "p2", "a")
        before = asm.version
        asm.remove_piece("p1")
        assert asm.version == before + 1

    def test_missing_piece(self):
        assert _make_assembly().remove_piece("nope").kind is ErrorKind.NOT_FOUND

    def test_locked_piece_refused_unless_forced(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1", locked=True))
        assert asm.remove_piece("p1").kind is ErrorKind.LOCKED
        assert asm.remove_piece("p1", force=True).ok


# ── Connections ────────────────────────────────────────────────────────────────


class TestConnect:
    def test_compatible_points_connect(self):
        asm = _make_assembly()
        top = ConnectionPoint(id="A_top", name="top", compatible=("bottom", "neck"))
        bottom = ConnectionPoint(id="B_bottom", name="bottom", compatible=("top",))
        asm.add_piece(Piece(id="A", type="head", name="A", color="#000000", connection_points=(top,)))
        asm.add_piece(Piece(id="B", type="body", name="B", color="#000000", connection_points=(bottom,)))
        first = asm.connect("A", "top", "B", "bottom")
        assert first.ok
        second = asm.connect("A", "top", "B", "bottom")
        assert second.kind is ErrorKind.OCCUPIED

    def test_occupancy_matches_connections(self):
        asm = _make_assembly()
        for pid in ("p1", "p2"):
            asm.add_piece(_make_piece(pid))
        conn = asm.connect("p1", "a", "p2", "b").value
        assert asm.is_occupied("p1", "a") and asm.is_occupied("p2", "p2_b")
        assert asm.connection_at("p1", "p1_a") == conn
        asm.disconnect(conn.id)
        assert not asm.is_occupied("p1", "a")

    def test_cycle_refused(self):
        asm = _make_assembly()
        for pid in ("p1", "p2", "p3"):
            asm.add_piece(_make_piece(pid))
        assert asm.connect("p1", "a", "p2", "a").ok
        assert asm.connect("p2", "b", "p3", "a").ok
        before = asm.version
        result = asm.connect("p1", "b", "p3", "b")
        assert result.kind is ErrorKind.WOULD_CYCLE
        assert asm.version == before

    def test_multi_edge_refused(self):
        asm = _make_assembly()
        for pid in ("p1", "p2"):
            asm.add_piece(_make_piece(pid))
        asm.connect("p1", "a", "p2", "a")
        assert asm.connect("p1", "b", "p2", "b").kind is ErrorKind.MULTI_EDGE

    def test_self_connection_refused(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1"))
        assert asm.connect("p1", "a", "p1", "b").kind is ErrorKind.SELF_CONNECTION

    def test_missing_point(self):
        asm = _make_assembly()
        for pid in ("p1", "p2"):
            asm.add_piece(_make_piece(pid))
        assert asm.connect("p1", "zz", "p2", "a").kind is ErrorKind.MISSING_POINTS

    def test_incompatible_points(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1"))
        asm.add_piece(_make_piece("p2", compatible=("nothing",)))
        assert asm.connect("p1", "a", "p2", "a").kind is ErrorKind.INCOMPATIBLE

    def test_size_gap(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1", size=1))
        asm.add_piece(_make_piece("p2", size=5))
        assert asm.connect("p1", "a", "p2", "a").kind is ErrorKind.SIZE_MISMATCH

    def test_freemium_refuses_custom_pieces(self):
        asm = _make_assembly(Tier.FREEMIUM)
        asm.add_piece(_make_piece("p1"))
        asm.add_piece(_make_piece("p2", custom=True))
        assert asm.connect("p1", "a", "p2", "a").kind is ErrorKind.TIER_RESTRICTED_CUSTOM_PIECE

    def test_pro_allows_custom_pieces(self):
        asm = _make_assembly(Tier.PRO)
        asm.add_piece(_make_piece("p1"))
        asm.add_piece(_make_piece("p2", custom=True))
        assert asm.connect("p1", "a", "p2", "a").ok

    def test_replayed_identity_is_kept(self):
        asm = _make_assembly()
        for pid in ("p1", "p2"):
            asm.add_piece(_make_piece(pid))
        conn = asm.connect("p1", "a", "p2", "a", connection_id="c-1", created_at=42).value
        assert (conn.id, conn.created_at) == ("c-1", 42)

    def test_graph_stays_valid(self):
        asm = _make_assembly()
        for pid in ("p1", "p2", "p3", "p4"):
            asm.add_piece(_make_piece(pid))
        asm.connect("p1", "a", "p2", "a")
        asm.connect("p2", "b", "p3", "a")
        asm.connect("p1", "b", "p3", "b")  # refused: cycle
        asm.connect("p3", "c", "p4", "a")
        assert asm.validate().valid


# ── Modification and locks ─────────────────────────────────────────────────────


class TestModify:
    def test_position_update_returns_old_and_new(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1"))
        old, new = asm.update_piece_position("p1", [1, 2, 3]).value
        assert old == SafeVector()
        assert new == SafeVector(1, 2, 3)

    def test_bad_position(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1"))
        assert asm.update_piece_position("p1", "left").kind is ErrorKind.VALIDATION_FAILED

    def test_modify_name(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1"))
        old, new = asm.modify_piece("p1", {"name": "Renamed"}).value
        assert old.name == "P1"
        assert new.name == "Renamed"

    def test_id_cannot_change(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1"))
        assert asm.modify_piece("p1", {"id": "p9"}).kind is ErrorKind.VALIDATION_FAILED

    def test_locked_piece_refuses_geometry_but_moves(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1"))
        asm.lock_piece("p1")
        assert asm.modify_piece("p1", {"type": "head"}).kind is ErrorKind.LOCKED
        assert asm.modify_piece("p1", {"name": "ok"}).ok
        assert asm.update_piece_position("p1", {"x": 1}).ok
        assert asm.locked_ids() == ["p1"]

    def test_cannot_drop_occupied_point(self):
        asm = _make_assembly()
        for pid in ("p1", "p2"):
            asm.add_piece(_make_piece(pid))
        asm.connect("p1", "a", "p2", "a")
        result = asm.modify_piece("p1", {"connectionPoints": [{"id": "p1_b", "name": "b"}]})
        assert result.kind is ErrorKind.OCCUPIED

    def test_occupied_point_must_stay_compatible(self):
        asm = _make_assembly()
        for pid in ("p1", "p2"):
            asm.add_piece(_make_piece(pid))
        asm.connect("p1", "a", "p2", "a")
        version = asm.version

        result = asm.modify_piece("p1", {"connectionPoints": [{"id": "p1_a", "name": "a", "compatible": ["nothing"]}]})

        assert result.kind is ErrorKind.INCOMPATIBLE
        assert asm.version == version
        assert asm.get_piece("p1").point("p1_a").compatible == ("link",)
        assert asm.validate().valid

    def test_occupied_point_must_stay_within_size_gap(self):
        asm = _make_assembly()
        for pid in ("p1", "p2"):
            asm.add_piece(_make_piece(pid, size=1))
        asm.connect("p1", "a", "p2", "a")
        version = asm.version

        result = asm.modify_piece(
            "p2",
            {"connectionPoints": [{"id": "p2_a", "name": "a", "compatible": ["link"], "type": "link", "size": 5}]},
        )

        assert result.kind is ErrorKind.SIZE_MISMATCH
        assert asm.version == version
        assert asm.validate().valid

    def test_type_change_checked_against_partner(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1", compatible=("part",)))
        asm.add_piece(_make_piece("p2"))
        assert asm.connect("p1", "a", "p2", "a").ok

        assert asm.modify_piece("p2", {"type": "head"}).kind is ErrorKind.INCOMPATIBLE
        assert asm.get_piece("p2").type == "part"
        assert asm.validate().valid

    def test_free_point_may_change(self):
        asm = _make_assembly()
        for pid in ("p1", "p2"):
            asm.add_piece(_make_piece(pid, points=("a", "b")))
        asm.connect("p1", "a", "p2", "a")

        result = asm.modify_piece(
            "p1",
            {
                "connectionPoints": [
                    {"id": "p1_a", "name": "a", "compatible": ["link"], "type": "link"},
                    {"id": "p1_b", "name": "b", "compatible": ["nothing"]},
                ]
            },
        )

        assert result.ok
        assert asm.validate().valid

    def test_lock_twice_is_single_change(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("p1"))
        asm.lock_piece("p1")
        version = asm.version
        assert asm.lock_piece("p1").ok
        assert asm.version == version


class TestVersionSteps:
    def test_coalesce_counts_once(self):
        asm = _make_assembly()
        with asm.coalesce():
            asm.add_piece(_make_piece("p1"))
            asm.add_piece(_make_piece("p2"))
        assert asm.version == 1

    def test_empty_coalesce_does_not_bump(self):
        asm = _make_assembly()
        with asm.coalesce():
            pass
        assert asm.version == 0

    def test_release_without_hold_raises(self):
        with pytest.raises(RuntimeError):
            _make_assembly().release()

    def test_set_tier(self):
        asm = _make_assembly(Tier.FREEMIUM)
        assert asm.set_tier("studio").ok
        assert asm.tier is Tier.STUDIO
        assert asm.set_tier("gold").kind is ErrorKind.VALIDATION_FAILED

    def test_clear(self):
        asm = _make_assembly()
        for pid in ("p1", "p2"):
            asm.add_piece(_make_piece(pid))
        asm.connect("p1", "a", "p2", "a")
        asm.clear()
        assert not asm.pieces and not asm.connections
        assert asm.version == 4


class TestReadSide:
    def test_pieces_view_is_read_only(self):
        asm = _make_assembly()
        with pytest.raises(TypeError):
            asm.pieces["x"] = _make_piece("x")  # type: ignore[index]

    def test_neighbors_and_paths(self):
        asm = _make_assembly()
        for pid in ("p1", "p2", "p3"):
            asm.add_piece(_make_piece(pid))
        asm.connect("p1", "a", "p2", "a")
        asm.connect("p2", "b", "p3", "a")
        assert asm.neighbors("p2") == ["p1", "p3"]
        assert asm.path_exists("p1", "p3")
        assert asm.are_connected("p1", "p2")
        assert not asm.are_connected("p1", "p3")

    def test_orphans_are_warnings(self):
        asm = _make_assembly()
        asm.add_piece(_make_piece("body", "body"))
        asm.add_piece(_make_piece("loose"))
        report = asm.validate()
        assert report.valid
        assert [w.code for w in report.warnings] == ["orphan"]

    def test_uses_private_bus_when_none_given(self):
        asm = _make_assembly()
        assert isinstance(asm.bus, EventBus)
