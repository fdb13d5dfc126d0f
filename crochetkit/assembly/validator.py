"""
Connection validation and assembly invariant checks.

check_connection is a pure predicate over two endpoints and a read-only view
of the assembly.  Checks run in a fixed order and the first failure wins:

  1. missing_points                both pieces and both points exist
  2. self_connection               the endpoints are on distinct pieces
  3. tier_restricted_custom_piece  freemium assemblies may not connect custom pieces
  4. occupied                      neither point is already in a connection
  5. incompatible                  each point's compatibility set admits the other
  6. size_mismatch                 sized points differ by at most ``max_size_gap``
  7. multi_edge                    the two pieces are not already connected
  8. would_cycle                   the new edge would not close an undirected cycle

check_invariants re-derives the graph invariants of a whole assembly and
reports every violation.  Orphaned pieces (not reachable from a root) are
reported as warnings only, so staged construction stays possible.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from crochetkit.errors import ErrorKind
from crochetkit.registry import Tier
from crochetkit.schemas.connection import Connection
from crochetkit.schemas.piece import UNIVERSAL, ConnectionPoint, Piece


class AssemblyView(Protocol):
    """Read-only graph queries the validator needs."""

    def get_piece(self, piece_id: str) -> Piece | None: ...

    def is_occupied(self, piece_id: str, point_id: str) -> bool: ...

    def are_connected(self, piece_a: str, piece_b: str) -> bool: ...

    def path_exists(self, piece_a: str, piece_b: str) -> bool: ...


@dataclass(frozen=True)
class ConnectionCheck:
    """Outcome of check_connection. ``reason`` is None when valid."""

    valid: bool
    reason: ErrorKind | None = None
    detail: str = ""


_OK = ConnectionCheck(valid=True)


def _fail(reason: ErrorKind, detail: str) -> ConnectionCheck:
    return ConnectionCheck(valid=False, reason=reason, detail=detail)


def points_compatible(
    piece_a: Piece, point_a: ConnectionPoint, piece_b: Piece, point_b: ConnectionPoint
) -> bool:
    """Symmetric acceptance: each point's compatibility set admits the other."""
    return point_a.accepts(point_b, piece_b.type) and point_b.accepts(point_a, piece_a.type)


def check_point_pair(
    piece_a: Piece,
    point_a: ConnectionPoint,
    piece_b: Piece,
    point_b: ConnectionPoint,
    max_size_gap: int = 2,
) -> ConnectionCheck:
    """Compatibility and size-gap rules for two joined points, in that order."""
    if not points_compatible(piece_a, point_a, piece_b, point_b):
        return _fail(
            ErrorKind.INCOMPATIBLE,
            f"{piece_a.id}.{point_a.name} and {piece_b.id}.{point_b.name} do not accept each other",
        )
    if point_a.size is not None and point_b.size is not None:
        gap = abs(point_a.size - point_b.size)
        if gap > max_size_gap:
            return _fail(
                ErrorKind.SIZE_MISMATCH,
                f"size gap {gap} exceeds {max_size_gap} ({point_a.size} vs {point_b.size})",
            )
    return _OK


def check_connection(
    view: AssemblyView,
    piece1_id: str,
    point1_id: str,
    piece2_id: str,
    point2_id: str,
    *,
    tier: Tier | None = None,
    max_size_gap: int = 2,
) -> ConnectionCheck:
    """
    Validate a proposed connection against the current assembly.

    Parameters
    ----------
    view:
        The assembly (or any object satisfying :class:`AssemblyView`).
    piece1_id, point1_id, piece2_id, point2_id:
        The two endpoints.  Point ids fall back to point names.
    tier:
        Assembly tier; freemium refuses custom pieces.  None skips the tier rule.
    max_size_gap:
        Largest allowed difference between two sized points.

    Returns
    -------
    ConnectionCheck
        ``valid=True``, or the first failing reason from the closed set.
    """
    piece1 = view.get_piece(piece1_id)
    piece2 = view.get_piece(piece2_id)
    point1 = piece1.point(point1_id) if piece1 else None
    point2 = piece2.point(point2_id) if piece2 else None
    if piece1 is None or piece2 is None or point1 is None or point2 is None:
        return _fail(
            ErrorKind.MISSING_POINTS,
            f"endpoint not found: {piece1_id}.{point1_id} / {piece2_id}.{point2_id}",
        )

    if piece1.id == piece2.id:
        return _fail(ErrorKind.SELF_CONNECTION, f"piece {piece1.id!r} cannot connect to itself")

    if tier == Tier.FREEMIUM and (piece1.custom or piece2.custom):
        return _fail(
            ErrorKind.TIER_RESTRICTED_CUSTOM_PIECE,
            "custom pieces require the pro tier or higher",
        )

    for piece, point in ((piece1, point1), (piece2, point2)):
        if view.is_occupied(piece.id, point.id):
            return _fail(ErrorKind.OCCUPIED, f"point {piece.id}.{point.name} is already connected")

    joined = check_point_pair(piece1, point1, piece2, point2, max_size_gap)
    if not joined.valid:
        return joined

    if view.are_connected(piece1.id, piece2.id):
        return _fail(ErrorKind.MULTI_EDGE, f"pieces {piece1.id!r} and {piece2.id!r} are already connected")

    if view.path_exists(piece1.id, piece2.id):
        return _fail(
            ErrorKind.WOULD_CYCLE,
            f"connecting {piece1.id!r} and {piece2.id!r} would close a cycle",
        )

    return _OK


# ── Point-pair ranking ─────────────────────────────────────────────────────────


def connection_confidence(
    piece_a: Piece, point_a: ConnectionPoint, piece_b: Piece, point_b: ConnectionPoint
) -> float:
    """
    Score how naturally two points fit, in [0, 1].

    1.0 when each side names the other exactly, 0.8 when acceptance relies on
    type tags, 0.6 when it relies on the universal wildcard; 0.0 when
    incompatible.  Reduced by 10% per size step between sized points.
    """
    if not points_compatible(piece_a, point_a, piece_b, point_b):
        return 0.0
    if point_b.name in point_a.compatible or point_a.name in point_b.compatible:
        score = 1.0
    elif point_a.type == UNIVERSAL or point_b.type == UNIVERSAL or UNIVERSAL in (
        set(point_a.compatible) | set(point_b.compatible)
    ):
        score = 0.6
    else:
        score = 0.8
    if point_a.size is not None and point_b.size is not None:
        score *= max(0.0, 1 - 0.1 * abs(point_a.size - point_b.size))
    return round(score, 4)


def _pair_rank(
    piece_a: Piece, point_a: ConnectionPoint, piece_b: Piece, point_b: ConnectionPoint
) -> tuple[int, int, float]:
    exact = point_b.name in point_a.compatible or point_a.name in point_b.compatible
    typed = bool(
        (point_a.type and point_a.type in point_b.compatible)
        or (point_b.type and point_b.type in point_a.compatible)
    )
    return (0 if exact else 1, 0 if typed else 1, point_a.position.distance_to(point_b.position))


def rank_point_pairs(
    view: AssemblyView, piece_a: Piece, piece_b: Piece
) -> list[tuple[ConnectionPoint, ConnectionPoint]]:
    """
    Return every free, compatible point pair between two pieces, best first.

    Preference: exact name acceptance, then matching type tag, then the
    smaller distance between the points' piece-local positions.
    """
    candidates = [
        (pa, pb)
        for pa in piece_a.connection_points
        if not view.is_occupied(piece_a.id, pa.id)
        for pb in piece_b.connection_points
        if not view.is_occupied(piece_b.id, pb.id) and points_compatible(piece_a, pa, piece_b, pb)
    ]
    candidates.sort(key=lambda pair: _pair_rank(piece_a, pair[0], piece_b, pair[1]))
    return candidates


# ── Whole-assembly invariants ──────────────────────────────────────────────────


@dataclass(frozen=True)
class AssemblyIssue:
    """A single invariant violation (severity ``"error"``) or orphan report (``"warning"``)."""

    code: str
    message: str
    severity: str  # "error" | "warning"
    subject_id: str = ""


@dataclass(frozen=True)
class AssemblyReport:
    valid: bool
    issues: tuple[AssemblyIssue, ...]

    @property
    def errors(self) -> tuple[AssemblyIssue, ...]:
        return tuple(i for i in self.issues if i.severity == "error")

    @property
    def warnings(self) -> tuple[AssemblyIssue, ...]:
        return tuple(i for i in self.issues if i.severity == "warning")


def check_invariants(
    pieces: dict[str, Piece],
    connections: Iterable[Connection],
    *,
    max_size_gap: int = 2,
    root_types: tuple[str, ...] = ("body",),
) -> AssemblyReport:
    """
    Re-derive all graph invariants from scratch.

    Parameters
    ----------
    pieces:
        Piece id → Piece, in insertion order.
    connections:
        Live connections.
    max_size_gap:
        Size rule applied to every connection.
    root_types:
        Piece types treated as roots for the reachability report.  When no
        piece has a root type, the earliest-created piece is the root.

    Returns
    -------
    AssemblyReport
        ``valid`` is False when any issue has severity ``"error"``.
    """
    issues: list[AssemblyIssue] = []
    used_endpoints: dict[tuple[str, str], str] = {}
    seen_pairs: set[frozenset[str]] = set()
    parent: dict[str, str] = {pid: pid for pid in pieces}

    def find(x: str) -> str:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for conn in connections:
        resolved = True
        for end in conn.endpoints:
            piece = pieces.get(end.piece_id)
            if piece is None or piece.point(end.point_id) is None:
                issues.append(
                    AssemblyIssue(
                        "dangling_endpoint",
                        f"connection {conn.id} references missing {end.piece_id}.{end.point_id}",
                        "error",
                        conn.id,
                    )
                )
                resolved = False
                continue
            key = (end.piece_id, piece.point(end.point_id).id)  # type: ignore[union-attr]
            if key in used_endpoints:
                issues.append(
                    AssemblyIssue(
                        "point_reused",
                        f"point {key[0]}.{key[1]} is in connections {used_endpoints[key]} and {conn.id}",
                        "error",
                        conn.id,
                    )
                )
            used_endpoints[key] = conn.id
        if conn.a.piece_id == conn.b.piece_id:
            issues.append(AssemblyIssue("self_connection", f"connection {conn.id} is a self-loop", "error", conn.id))
            continue
        if not resolved:
            continue

        if conn.pair in seen_pairs:
            issues.append(
                AssemblyIssue("multi_edge", f"connection {conn.id} duplicates an existing pair", "error", conn.id)
            )
            continue
        seen_pairs.add(conn.pair)

        root_a, root_b = find(conn.a.piece_id), find(conn.b.piece_id)
        if root_a == root_b:
            issues.append(AssemblyIssue("cycle", f"connection {conn.id} closes a cycle", "error", conn.id))
        else:
            parent[root_a] = root_b

        piece_a, piece_b = pieces[conn.a.piece_id], pieces[conn.b.piece_id]
        point_a = piece_a.point(conn.a.point_id)
        point_b = piece_b.point(conn.b.point_id)
        assert point_a is not None and point_b is not None
        if not points_compatible(piece_a, point_a, piece_b, point_b):
            issues.append(
                AssemblyIssue("incompatible", f"connection {conn.id} joins incompatible points", "error", conn.id)
            )
        if (
            point_a.size is not None
            and point_b.size is not None
            and abs(point_a.size - point_b.size) > max_size_gap
        ):
            issues.append(
                AssemblyIssue("size_mismatch", f"connection {conn.id} exceeds the size gap", "error", conn.id)
            )

    if len(pieces) >= 2:
        roots = [pid for pid, p in pieces.items() if p.type in root_types]
        if not roots:
            roots = [min(pieces.values(), key=lambda p: p.metadata.created_at).id]
        root_sets = {find(r) for r in roots}
        for pid in pieces:
            if find(pid) not in root_sets:
                issues.append(
                    AssemblyIssue("orphan", f"piece {pid} is not reachable from a root piece", "warning", pid)
                )

    valid = not any(i.severity == "error" for i in issues)
    return AssemblyReport(valid=valid, issues=tuple(issues))
