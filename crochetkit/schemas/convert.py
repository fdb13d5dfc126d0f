"""
Plain-data conversion for pieces and connections.

These functions define the canonical JSON shape of the two graph records
(camelCase keys, positions as ``{x, y, z}``, colors as ``#RRGGBB``).  They are
shared by the persistence codec and by command payloads, which must carry
pieces and connections as plain data so a command log can be stored and
replayed.

Unknown keys on a piece are kept in ``Piece.extras`` and written back
unchanged.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from crochetkit.safety.types import to_safe_color, to_safe_vector
from crochetkit.schemas.connection import Connection, Endpoint
from crochetkit.schemas.piece import ConnectionPoint, Piece, PieceMetadata, RoundSpec, Side

_PIECE_KEYS = frozenset(
    {
        "id",
        "name",
        "type",
        "color",
        "connectionPoints",
        "metadata",
        "rounds",
        "position",
        "pattern",
        "custom",
        "locked",
    }
)


def require_mapping(value: Any, what: str) -> Mapping[str, Any]:
    """Return *value* unchanged, or raise TypeError naming *what* when it is not a mapping."""
    if not isinstance(value, Mapping):
        raise TypeError(f"{what} must be an object, got {type(value).__name__}")
    return value


def point_to_dict(point: ConnectionPoint) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": point.id,
        "name": point.name,
        "position": point.position.to_dict(),
        "compatible": list(point.compatible),
    }
    if point.type is not None:
        data["type"] = point.type
    if point.size is not None:
        data["size"] = point.size
    return data


def point_from_dict(data: Mapping[str, Any], fallback_id: str) -> ConnectionPoint:
    data = require_mapping(data, "connection point")
    size = data.get("size")
    return ConnectionPoint(
        id=str(data.get("id") or fallback_id),
        name=str(data.get("name") or data.get("id") or fallback_id),
        position=to_safe_vector(data.get("position")),
        compatible=tuple(str(c) for c in data.get("compatible", ())),
        type=data.get("type"),
        size=None if size is None else int(size),
    )


def piece_to_dict(piece: Piece, include_lock: bool = False) -> dict[str, Any]:
    """
    Return the canonical dict for *piece*.

    The lock flag is stored at assembly level in persisted documents; pass
    ``include_lock=True`` for command payloads, which carry a piece on its own.
    """
    meta = piece.metadata
    metadata: dict[str, Any] = {
        "stitchCount": meta.stitch_count,
        "roundCount": meta.round_count,
        "createdAt": meta.created_at,
        "side": meta.side.value,
    }
    if meta.group_id is not None:
        metadata["groupId"] = meta.group_id
    data: dict[str, Any] = dict(piece.extras)
    data.update(
        {
            "id": piece.id,
            "name": piece.name,
            "type": piece.type,
            "color": piece.color,
            "connectionPoints": [point_to_dict(p) for p in piece.connection_points],
            "metadata": metadata,
            "position": piece.position.to_dict(),
            "custom": piece.custom,
        }
    )
    if piece.rounds:
        data["rounds"] = [
            {"round": r.round, "stitches": r.stitches, "instruction": r.instruction}
            for r in piece.rounds
        ]
    if piece.pattern:
        data["pattern"] = list(piece.pattern)
    if include_lock:
        data["locked"] = piece.locked
    return data


def piece_from_dict(
    data: Mapping[str, Any],
    id_factory: Callable[[str], str] | None = None,
    created_at: int = 0,
) -> Piece:
    """
    Build a Piece from canonical (or partial) plain data.

    Missing piece ids are drawn from *id_factory* (called with ``"piece"``);
    missing point ids are derived from the piece id and point index.  Colors
    are normalized through the safe-color conversion.

    Raises
    ------
    TypeError
        If *data*, its metadata or a connection point is not a mapping.
    ValueError
        If a required field is missing or a value fails validation.
    """
    data = require_mapping(data, "piece")
    piece_id = data.get("id")
    if not piece_id:
        if id_factory is None:
            raise ValueError("piece data has no id")
        piece_id = id_factory("piece")
    piece_id = str(piece_id)
    piece_type = data.get("type")
    if not piece_type:
        raise ValueError(f"piece {piece_id!r} has no type")

    points = tuple(
        point_from_dict(p, f"{piece_id}_pt{i}") for i, p in enumerate(data.get("connectionPoints", ()))
    )
    raw_meta = require_mapping(data.get("metadata") or {}, f"piece {piece_id!r} metadata")
    rounds = tuple(
        RoundSpec(round=int(r["round"]), stitches=int(r["stitches"]), instruction=str(r.get("instruction", "")))
        for r in data.get("rounds") or ()
    )
    pattern = tuple(str(t) for t in data.get("pattern") or ())
    metadata = PieceMetadata(
        stitch_count=int(raw_meta.get("stitchCount", sum(r.stitches for r in rounds))),
        round_count=int(raw_meta.get("roundCount", len(rounds))),
        created_at=int(raw_meta.get("createdAt") or created_at),
        side=Side(raw_meta.get("side") or Side.NONE.value),
        group_id=raw_meta.get("groupId"),
    )
    return Piece(
        id=piece_id,
        type=str(piece_type),
        name=str(data.get("name") or piece_type),
        color=to_safe_color(data.get("color")),
        connection_points=points,
        metadata=metadata,
        position=to_safe_vector(data.get("position")),
        pattern=pattern,
        rounds=rounds,
        custom=bool(data.get("custom", False)),
        locked=bool(data.get("locked", False)),
        extras={k: v for k, v in data.items() if k not in _PIECE_KEYS},
    )


def connection_to_dict(connection: Connection) -> dict[str, Any]:
    return {
        "id": connection.id,
        "pieceA": connection.a.piece_id,
        "pointA": connection.a.point_id,
        "pieceB": connection.b.piece_id,
        "pointB": connection.b.point_id,
        "createdAt": connection.created_at,
    }


def connection_from_dict(data: Mapping[str, Any]) -> Connection:
    """Raises KeyError, TypeError or ValueError on malformed data."""
    data = require_mapping(data, "connection")
    return Connection(
        id=str(data["id"]),
        a=Endpoint(str(data["pieceA"]), str(data["pointA"])),
        b=Endpoint(str(data["pieceB"]), str(data["pointB"])),
        created_at=int(data.get("createdAt", 0)),
    )
