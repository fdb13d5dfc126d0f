"""
Connection schema: the undirected edges of an assembly graph.

A Connection joins exactly two endpoints on two distinct pieces.  Endpoint
order carries no meaning; ``pair`` gives the unordered piece pair used by the
multi-edge and cycle checks.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Endpoint:
    piece_id: str
    point_id: str


@dataclass(frozen=True)
class Connection:
    id: str
    a: Endpoint
    b: Endpoint
    created_at: int = 0  # epoch milliseconds

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Connection id must not be empty")
        if self.a.piece_id == self.b.piece_id:
            raise ValueError(
                f"Connection {self.id!r}: endpoints must be on distinct pieces, "
                f"got {self.a.piece_id!r} twice"
            )

    @property
    def endpoints(self) -> tuple[Endpoint, Endpoint]:
        return (self.a, self.b)

    @property
    def pair(self) -> frozenset[str]:
        return frozenset((self.a.piece_id, self.b.piece_id))

    def touches(self, piece_id: str) -> bool:
        return piece_id in (self.a.piece_id, self.b.piece_id)

    def other(self, piece_id: str) -> Endpoint:
        """Return the endpoint on the opposite side from *piece_id*."""
        if self.a.piece_id == piece_id:
            return self.b
        if self.b.piece_id == piece_id:
            return self.a
        raise KeyError(f"Connection {self.id!r} does not touch piece {piece_id!r}")
