"""
Magnetic placement: find the nearest attachable point pair for a dragged piece.

World coordinates of a point are its piece's position plus the point's
piece-local position.  Only free, mutually compatible pairs within the snap
distance qualify.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from crochetkit.assembly.graph import Assembly
from crochetkit.assembly.validator import connection_confidence, points_compatible
from crochetkit.safety.types import SafeVector, to_safe_vector
from crochetkit.schemas.piece import ConnectionPoint, Piece


@dataclass(frozen=True)
class SnapCandidate:
    piece_id: str
    point_id: str
    target_piece_id: str
    target_point_id: str
    distance: float
    confidence: float
    # Position that would place the two points exactly on top of each other.
    snapped_position: SafeVector


def world_position(piece: Piece, point: ConnectionPoint, origin: SafeVector | None = None) -> SafeVector:
    return (origin if origin is not None else piece.position) + point.position


def find_snap_candidate(
    assembly: Assembly,
    piece_id: str,
    position: Any = None,
    snap_distance: float = 1.0,
) -> SnapCandidate | None:
    """
    Return the closest compatible free point pair within *snap_distance*.

    Parameters
    ----------
    assembly:
        Assembly containing the moving piece.
    piece_id:
        The piece being placed.
    position:
        Proposed position of the moving piece; its current position when None.
    snap_distance:
        Largest world-space distance that still snaps.

    Returns
    -------
    SnapCandidate | None
        Ties on distance are broken by higher confidence.
    """
    moving = assembly.get_piece(piece_id)
    if moving is None:
        return None
    origin = to_safe_vector(position) if position is not None else moving.position

    best: SnapCandidate | None = None
    for other in assembly.pieces.values():
        if other.id == moving.id or assembly.are_connected(moving.id, other.id):
            continue
        for point in moving.connection_points:
            if assembly.is_occupied(moving.id, point.id):
                continue
            here = world_position(moving, point, origin)
            for target in other.connection_points:
                if assembly.is_occupied(other.id, target.id):
                    continue
                if not points_compatible(moving, point, other, target):
                    continue
                there = world_position(other, target)
                distance = here.distance_to(there)
                if distance > snap_distance:
                    continue
                confidence = connection_confidence(moving, point, other, target)
                if best is None or (distance, -confidence) < (best.distance, -best.confidence):
                    offset = SafeVector(there.x - here.x, there.y - here.y, there.z - here.z)
                    best = SnapCandidate(
                        piece_id=moving.id,
                        point_id=point.id,
                        target_piece_id=other.id,
                        target_point_id=target.id,
                        distance=round(distance, 4),
                        confidence=confidence,
                        snapped_position=origin + offset,
                    )
    return best
