"""
Assembly graph: pieces (nodes) joined by connections (undirected edges).

The Assembly owns all piece and connection state and is the only object that
mutates it.  Every accepted mutation bumps ``version`` exactly once and emits
its event on the bus; rejected mutations leave both untouched and return a
failure :class:`~crochetkit.errors.Result`.

Tier gating (piece quotas, overage) happens before the graph is reached, in
the engine.  The one tier rule the graph enforces itself is the freemium
refusal to connect custom pieces, because it is part of connection validity.

Occupancy is derived: ``_occupied`` indexes every endpoint of every live
connection, so a point is occupied exactly when some connection holds it.

``coalesce()`` groups several mutations into one version step.  Batches and
undo/redo of batches run inside it.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import replace
from types import MappingProxyType
from typing import Any

from crochetkit.assembly.validator import (
    AssemblyReport,
    check_connection,
    check_invariants,
    check_point_pair,
)
from crochetkit.errors import ErrorKind, Result
from crochetkit.events import EventBus, EventType, wall_clock
from crochetkit.registry import Tier
from crochetkit.safety.types import to_safe_vector
from crochetkit.schemas.connection import Connection, Endpoint
from crochetkit.schemas.convert import piece_from_dict, piece_to_dict
from crochetkit.schemas.piece import Piece
from crochetkit.utilities.ids import make_id

logger = logging.getLogger(__name__)

# Fields a lock protects.  Position, name and color stay editable.
_GEOMETRY_FIELDS = frozenset({"connectionPoints", "rounds", "pattern", "type", "custom"})


class Assembly:
    """
    A typed graph of pieces and connections.

    Parameters
    ----------
    assembly_id:
        Stable identity, used for storage keys and cache keys.
    name:
        Display name.
    tier:
        Account tier of the assembly's owner.
    bus:
        Event bus mutations are announced on.  A private bus is created when
        omitted.
    clock, rng:
        Time source (epoch ms) and randomness for generated ids.
    snap_grid:
        Grid size positions are rounded to; 0 disables snapping.
    max_size_gap, root_types:
        Connection size rule and reachability roots, see
        :mod:`crochetkit.assembly.validator`.
    """

    def __init__(
        self,
        assembly_id: str,
        name: str = "Untitled Assembly",
        tier: Tier = Tier.FREEMIUM,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], int] = wall_clock,
        rng: random.Random | None = None,
        snap_grid: float = 0.0,
        max_size_gap: int = 2,
        root_types: tuple[str, ...] = ("body",),
    ) -> None:
        if not assembly_id:
            raise ValueError("Assembly id must not be empty")
        self.id = assembly_id
        self.name = name
        self.tier = Tier(tier)
        self.bus = bus if bus is not None else EventBus(clock)
        self.clock = clock
        self.rng = rng if rng is not None else random.Random()
        self.snap_grid = snap_grid
        self.max_size_gap = max_size_gap
        self.root_types = root_types
        # Unknown top-level fields from persisted data, written back on save.
        self.extras: dict[str, Any] = {}

        self._pieces: dict[str, Piece] = {}
        self._connections: dict[str, Connection] = {}
        self._occupied: dict[tuple[str, str], str] = {}
        self._version = 0
        self._hold_depth = 0
        self._held_change = False

    # ── Read side ─────────────────────────────────────────────────────────────

    @property
    def version(self) -> int:
        return self._version

    @property
    def pieces(self) -> Mapping[str, Piece]:
        return MappingProxyType(self._pieces)

    @property
    def connections(self) -> Mapping[str, Connection]:
        return MappingProxyType(self._connections)

    def get_piece(self, piece_id: str) -> Piece | None:
        return self._pieces.get(piece_id)

    def get_connection(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def is_occupied(self, piece_id: str, point_id: str) -> bool:
        piece = self._pieces.get(piece_id)
        point = piece.point(point_id) if piece else None
        return point is not None and (piece_id, point.id) in self._occupied

    def connection_at(self, piece_id: str, point_id: str) -> Connection | None:
        """Return the connection holding this endpoint, if any."""
        conn_id = self._occupied.get((piece_id, point_id))
        return self._connections.get(conn_id) if conn_id else None

    def connections_for_piece(self, piece_id: str) -> list[Connection]:
        return [c for c in self._connections.values() if c.touches(piece_id)]

    def neighbors(self, piece_id: str) -> list[str]:
        return [c.other(piece_id).piece_id for c in self.connections_for_piece(piece_id)]

    def are_connected(self, piece_a: str, piece_b: str) -> bool:
        pair = frozenset((piece_a, piece_b))
        return any(c.pair == pair for c in self._connections.values())

    def path_exists(self, piece_a: str, piece_b: str) -> bool:
        """Depth-first search over the undirected connection graph."""
        if piece_a == piece_b:
            return True
        stack, seen = [piece_a], {piece_a}
        while stack:
            current = stack.pop()
            for nxt in self.neighbors(current):
                if nxt == piece_b:
                    return True
                if nxt not in seen:
                    seen.add(nxt)
                    stack.append(nxt)
        return False

    def pieces_by_type(self, piece_type: str) -> list[Piece]:
        return [p for p in self._pieces.values() if p.type == piece_type]

    def custom_piece_count(self) -> int:
        return sum(1 for p in self._pieces.values() if p.custom)

    def locked_ids(self) -> list[str]:
        return [pid for pid, p in self._pieces.items() if p.locked]

    def validate(self) -> AssemblyReport:
        """Re-derive every graph invariant and report violations."""
        return check_invariants(
            self._pieces,
            self._connections.values(),
            max_size_gap=self.max_size_gap,
            root_types=self.root_types,
        )

    def new_id(self, prefix: str) -> str:
        return make_id(prefix, self.clock(), self.rng)

    # ── Version control ───────────────────────────────────────────────────────

    @contextmanager
    def coalesce(self) -> Iterator[None]:
        """Count every mutation made inside the block as a single version step."""
        self.hold()
        try:
            yield
        finally:
            self.release()

    def hold(self) -> None:
        """Open a version step spanning several calls (batches); pair with :meth:`release`."""
        self._hold_depth += 1

    def release(self) -> None:
        if self._hold_depth == 0:
            raise RuntimeError("release() without a matching hold()")
        self._hold_depth -= 1
        if self._hold_depth == 0 and self._held_change:
            self._held_change = False
            self._bump()

    def _changed(self) -> None:
        if self._hold_depth:
            self._held_change = True
        else:
            self._bump()

    def _bump(self) -> None:
        self._version += 1
        self.bus.emit(EventType.VERSION_BUMPED, assembly_id=self.id, version=self._version)

    # ── Mutations ─────────────────────────────────────────────────────────────

    def add_piece(self, piece: Piece | Mapping[str, Any]) -> Result:
        """
        Insert a piece.

        Plain-data pieces are converted (ids generated for the piece and for
        any point lacking one, colors normalized).  Fails with
        ``validation_failed`` on malformed data or a duplicate id.
        """
        if not isinstance(piece, Piece):
            try:
                piece = piece_from_dict(piece, id_factory=self.new_id, created_at=self.clock())
            except (KeyError, TypeError, ValueError) as exc:
                return Result.failure(ErrorKind.VALIDATION_FAILED, f"invalid piece data: {exc}")
        if piece.id in self._pieces:
            return Result.failure(ErrorKind.VALIDATION_FAILED, f"piece id {piece.id!r} already exists")
        if piece.metadata.created_at == 0:
            piece = replace(piece, metadata=replace(piece.metadata, created_at=self.clock()))
        if self.snap_grid > 0:
            piece = replace(piece, position=piece.position.snapped(self.snap_grid))

        self._pieces[piece.id] = piece
        logger.debug("added piece %s (%s) to %s", piece.id, piece.type, self.id)
        self.bus.emit(EventType.PIECE_ADDED, assembly_id=self.id, piece_id=piece.id, piece_type=piece.type)
        self._changed()
        return Result.success(piece)

    def remove_piece(self, piece_id: str, force: bool = False) -> Result:
        """
        Remove a piece and every connection touching it.

        Locked pieces are refused with ``locked`` unless *force* is set (used
        when undoing the piece's own creation).  The result value is a dict
        with the removed ``piece`` and its ``connections``.
        """
        piece = self._pieces.get(piece_id)
        if piece is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"piece {piece_id!r} not found")
        if piece.locked and not force:
            return Result.failure(ErrorKind.LOCKED, f"piece {piece_id!r} is locked")

        with self.coalesce():
            removed = self.connections_for_piece(piece_id)
            for conn in removed:
                self._drop_connection(conn)
            del self._pieces[piece_id]
            self.bus.emit(
                EventType.PIECE_REMOVED,
                assembly_id=self.id,
                piece_id=piece_id,
                connection_ids=tuple(c.id for c in removed),
            )
            self._changed()
        logger.debug("removed piece %s and %d connection(s)", piece_id, len(removed))
        return Result.success({"piece": piece, "connections": removed})

    def connect(
        self,
        piece1_id: str,
        point1_id: str,
        piece2_id: str,
        point2_id: str,
        *,
        connection_id: str | None = None,
        created_at: int | None = None,
    ) -> Result:
        """
        Join two points after validating the proposed edge.

        *connection_id* and *created_at* are supplied when a connection is
        replayed (redo, history rebuild) so it keeps its identity.
        """
        check = check_connection(
            self,
            piece1_id,
            point1_id,
            piece2_id,
            point2_id,
            tier=self.tier,
            max_size_gap=self.max_size_gap,
        )
        if not check.valid:
            assert check.reason is not None
            logger.debug("connect refused: %s", check.detail)
            return Result.failure(check.reason, check.detail)
        if connection_id is not None and connection_id in self._connections:
            return Result.failure(ErrorKind.VALIDATION_FAILED, f"connection id {connection_id!r} already exists")

        point1 = self._pieces[piece1_id].point(point1_id)
        point2 = self._pieces[piece2_id].point(point2_id)
        assert point1 is not None and point2 is not None
        conn = Connection(
            id=connection_id or self.new_id("conn"),
            a=Endpoint(piece1_id, point1.id),
            b=Endpoint(piece2_id, point2.id),
            created_at=self.clock() if created_at is None else created_at,
        )
        self._connections[conn.id] = conn
        self._occupied[(conn.a.piece_id, conn.a.point_id)] = conn.id
        self._occupied[(conn.b.piece_id, conn.b.point_id)] = conn.id
        self.bus.emit(
            EventType.CONNECTED,
            assembly_id=self.id,
            connection_id=conn.id,
            piece_a=piece1_id,
            point_a=point1.id,
            piece_b=piece2_id,
            point_b=point2.id,
        )
        self._changed()
        return Result.success(conn)

    def disconnect(self, connection_id: str) -> Result:
        conn = self._connections.get(connection_id)
        if conn is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"connection {connection_id!r} not found")
        self._drop_connection(conn)
        self._changed()
        return Result.success(conn)

    def _drop_connection(self, conn: Connection) -> None:
        del self._connections[conn.id]
        for end in conn.endpoints:
            self._occupied.pop((end.piece_id, end.point_id), None)
        self.bus.emit(EventType.DISCONNECTED, assembly_id=self.id, connection_id=conn.id)

    def update_piece_position(self, piece_id: str, position: Any) -> Result:
        """
        Move a piece.  Allowed on locked pieces.

        *position* is anything the safe-vector conversion accepts.  The result
        value is ``(old_position, new_position)``.
        """
        piece = self._pieces.get(piece_id)
        if piece is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"piece {piece_id!r} not found")
        try:
            target = to_safe_vector(position).snapped(self.snap_grid)
        except ValueError as exc:
            return Result.failure(ErrorKind.VALIDATION_FAILED, str(exc))
        old = piece.position
        self._pieces[piece_id] = replace(piece, position=target)
        self.bus.emit(
            EventType.PIECE_MODIFIED, assembly_id=self.id, piece_id=piece_id, fields=("position",)
        )
        self._changed()
        return Result.success((old, target))

    def modify_piece(self, piece_id: str, changes: Mapping[str, Any]) -> Result:
        """
        Apply a partial update given in the canonical plain-data shape.

        The piece id cannot change.  Locked pieces refuse geometry fields
        (points, rounds, pattern, type, custom flag).  A change that would
        delete an occupied connection point fails with ``occupied``.  The
        result value is ``(old_piece, new_piece)``.
        """
        piece = self._pieces.get(piece_id)
        if piece is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"piece {piece_id!r} not found")
        if "id" in changes and changes["id"] != piece_id:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "piece id cannot be modified")
        if piece.locked and _GEOMETRY_FIELDS & set(changes):
            return Result.failure(ErrorKind.LOCKED, f"piece {piece_id!r} is locked")

        data = piece_to_dict(piece, include_lock=True)
        data.update(changes)
        try:
            updated = piece_from_dict(data, created_at=piece.metadata.created_at)
        except (KeyError, TypeError, ValueError) as exc:
            return Result.failure(ErrorKind.VALIDATION_FAILED, f"invalid piece data: {exc}")
        return self.replace_piece(updated, fields=tuple(sorted(changes)))

    def replace_piece(self, piece: Piece, fields: tuple[str, ...] = ()) -> Result:
        """
        Swap in a new version of an existing piece, ignoring the lock.

        Used by :meth:`modify_piece` and by undo/redo to restore an earlier
        version verbatim.  Occupied points must survive the swap and still
        satisfy the compatibility and size-gap rules against their partners
        (``incompatible`` or ``size_mismatch`` otherwise).
        """
        old = self._pieces.get(piece.id)
        if old is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"piece {piece.id!r} not found")
        if self.snap_grid > 0:
            piece = replace(piece, position=piece.position.snapped(self.snap_grid))
        kept = {p.id for p in piece.connection_points}
        for (pid, point_id) in self._occupied:
            if pid == piece.id and point_id not in kept:
                return Result.failure(
                    ErrorKind.OCCUPIED, f"point {pid}.{point_id} is connected and cannot be removed"
                )
        for conn in self.connections_for_piece(piece.id):
            own, other = (conn.a, conn.b) if conn.a.piece_id == piece.id else (conn.b, conn.a)
            partner = self._pieces[other.piece_id]
            point = piece.point(own.point_id)
            partner_point = partner.point(other.point_id)
            assert point is not None and partner_point is not None
            check = check_point_pair(piece, point, partner, partner_point, self.max_size_gap)
            if not check.valid:
                assert check.reason is not None
                return Result.failure(check.reason, f"connection {conn.id}: {check.detail}")
        self._pieces[piece.id] = piece
        self.bus.emit(EventType.PIECE_MODIFIED, assembly_id=self.id, piece_id=piece.id, fields=fields)
        self._changed()
        return Result.success((old, piece))

    def set_locked(self, piece_id: str, locked: bool) -> Result:
        piece = self._pieces.get(piece_id)
        if piece is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"piece {piece_id!r} not found")
        if piece.locked == locked:
            return Result.success(piece)
        updated = replace(piece, locked=locked)
        self._pieces[piece_id] = updated
        self.bus.emit(EventType.PIECE_MODIFIED, assembly_id=self.id, piece_id=piece_id, fields=("locked",))
        self._changed()
        return Result.success(updated)

    def lock_piece(self, piece_id: str) -> Result:
        return self.set_locked(piece_id, True)

    def unlock_piece(self, piece_id: str) -> Result:
        return self.set_locked(piece_id, False)

    def set_tier(self, tier: Tier | str) -> Result:
        try:
            new_tier = Tier(tier)
        except ValueError:
            return Result.failure(ErrorKind.VALIDATION_FAILED, f"unknown tier {tier!r}")
        if new_tier != self.tier:
            self.tier = new_tier
            self._changed()
        return Result.success(new_tier)

    def clear(self) -> None:
        """Drop every piece and connection (one version step)."""
        if not self._pieces and not self._connections:
            return
        with self.coalesce():
            for conn in list(self._connections.values()):
                self._drop_connection(conn)
            for piece_id in list(self._pieces):
                del self._pieces[piece_id]
                self.bus.emit(EventType.PIECE_REMOVED, assembly_id=self.id, piece_id=piece_id, connection_ids=())
            self._changed()

    def load_state(
        self, pieces: Iterable[Piece], connections: Iterable[Connection], version: int = 0
    ) -> None:
        """
        Install decoded state verbatim, without validation or events.

        Used by the persistence codec.  Callers run :meth:`validate`
        afterwards; recovery does exactly that to decide whether a candidate
        is usable.
        """
        self._pieces = {p.id: p for p in pieces}
        self._connections = {c.id: c for c in connections}
        self._occupied = {}
        for conn in self._connections.values():
            for end in conn.endpoints:
                piece = self._pieces.get(end.piece_id)
                point = piece.point(end.point_id) if piece else None
                self._occupied[(end.piece_id, point.id if point else end.point_id)] = conn.id
        self._version = max(0, int(version))
