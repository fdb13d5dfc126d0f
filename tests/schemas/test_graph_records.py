"""Tests for schemas — piece, connection and command records and their plain-data form."""

from __future__ import annotations

import pytest

from crochetkit.safety.types import DEFAULT_COLOR, SafeVector
from crochetkit.schemas.command import Command, CommandType, command_from_dict
from crochetkit.schemas.connection import Connection, Endpoint
from crochetkit.schemas.convert import (
    connection_from_dict,
    connection_to_dict,
    piece_from_dict,
    piece_to_dict,
)
from crochetkit.schemas.piece import ConnectionPoint, Piece, Side


def _make_piece(**overrides) -> Piece:
    fields = {
        "id": "b1",
        "type": "body",
        "name": "Body",
        "color": "#60A5FA",
        "connection_points": (
            ConnectionPoint(id="b1_neck", name="neck", position=SafeVector(0, 1, 0), compatible=("neck",), size=4),
        ),
    }
    fields.update(overrides)
    return Piece(**fields)


class TestPieceValidation:
    def test_empty_id_rejected(self):
        with pytest.raises(ValueError, match="id"):
            _make_piece(id="")

    def test_bad_color_rejected(self):
        with pytest.raises(ValueError, match="color"):
            _make_piece(color="blue")

    def test_duplicate_point_ids_rejected(self):
        point = ConnectionPoint(id="p", name="p")
        with pytest.raises(ValueError, match="unique"):
            _make_piece(connection_points=(point, point))

    def test_point_size_range(self):
        with pytest.raises(ValueError, match="size"):
            ConnectionPoint(id="p", name="p", size=9)

    def test_point_lookup_by_id_or_name(self):
        piece = _make_piece()
        assert piece.point("b1_neck") is piece.point("neck")
        assert piece.point("tail") is None

    def test_frozen(self):
        piece = _make_piece()
        with pytest.raises(AttributeError):
            piece.name = "Other"  # type: ignore[misc]


class TestPieceData:
    def test_canonical_keys(self):
        data = piece_to_dict(_make_piece())
        assert data["connectionPoints"][0] == {
            "id": "b1_neck",
            "name": "neck",
            "position": {"x": 0, "y": 1, "z": 0},
            "compatible": ["neck"],
            "size": 4,
        }
        assert data["metadata"]["side"] == "none"
        assert "locked" not in data

    def test_lock_only_on_request(self):
        assert piece_to_dict(_make_piece(locked=True), include_lock=True)["locked"] is True

    def test_round_trip_keeps_unknown_fields(self):
        data = piece_to_dict(_make_piece())
        data["sparkle"] = {"level": 3}

        piece = piece_from_dict(data)

        assert piece.extras == {"sparkle": {"level": 3}}
        assert piece_to_dict(piece)["sparkle"] == {"level": 3}

    def test_partial_data_gets_defaults(self):
        piece = piece_from_dict(
            {"type": "arm", "color": "#abc", "connectionPoints": [{"name": "wrist"}]},
            id_factory=lambda prefix: f"{prefix}_1",
            created_at=42,
        )
        assert piece.id == "piece_1"
        assert piece.name == "arm"
        assert piece.color == "#AABBCC"
        assert piece.connection_points[0].id == "piece_1_pt0"
        assert piece.metadata.created_at == 42
        assert piece.metadata.side is Side.NONE

    def test_unreadable_color_falls_back(self):
        piece = piece_from_dict({"id": "x", "type": "arm", "color": "teal"})
        assert piece.color == DEFAULT_COLOR

    def test_missing_id_without_factory(self):
        with pytest.raises(ValueError, match="no id"):
            piece_from_dict({"type": "arm"})

    def test_missing_type(self):
        with pytest.raises(ValueError, match="no type"):
            piece_from_dict({"id": "x"})


class TestConnectionRecords:
    def test_distinct_pieces_required(self):
        with pytest.raises(ValueError, match="distinct"):
            Connection(id="c1", a=Endpoint("b1", "p"), b=Endpoint("b1", "q"))

    def test_round_trip(self):
        conn = Connection(id="c1", a=Endpoint("b1", "b1_neck"), b=Endpoint("h1", "h1_neck"), created_at=7)
        assert connection_from_dict(connection_to_dict(conn)) == conn

    def test_malformed(self):
        with pytest.raises(KeyError):
            connection_from_dict({"id": "c1", "pieceA": "b1"})


class TestCommandRecords:
    def test_default_description(self):
        command = command_from_dict({"id": "a1", "type": "connect"})
        assert command.description == "Connect pieces"
        assert not command.bound

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            command_from_dict({"id": "a1", "type": "teleport"})

    def test_batch_children(self):
        child = Command(id="a1", type=CommandType.ADD_PIECE, data={}, description="Add piece", timestamp=1)
        batch = Command(
            id="b1",
            type=CommandType.BATCH,
            data={"commands": [child.to_dict()]},
            description="Multiple actions",
            timestamp=2,
        )
        assert [c.id for c in batch.children] == ["a1"]
        assert child.children == []
