"""
Result values and the closed error taxonomy shared by every engine component.

Expected failures never raise: operations return a :class:`Result` whose
``kind`` names one member of :class:`ErrorKind`.  Exceptions are reserved for
programmer errors and corrupted reference data, plus two internal signals:

  CommandReplayError   — raised by an undo/redo handler when the mutation port
                         rejects a replayed mutation
  UnsafeObjectError    — raised by safe cloning when a renderer object or
                         other non-plain value is found
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of failure kinds returned in :class:`Result` values."""

    VALIDATION_FAILED = "validation_failed"
    TIER_LIMIT_EXCEEDED = "tier_limit_exceeded"
    TIER_RESTRICTED_CUSTOM_PIECE = "tier_restricted_custom_piece"
    MISSING_POINTS = "missing_points"
    OCCUPIED = "occupied"
    INCOMPATIBLE = "incompatible"
    SIZE_MISMATCH = "size_mismatch"
    WOULD_CYCLE = "would_cycle"
    MULTI_EDGE = "multi_edge"
    SELF_CONNECTION = "self_connection"
    LOCKED = "locked"
    NOT_FOUND = "not_found"
    SAVE_LIMIT_EXCEEDED = "save_limit_exceeded"
    PAYMENT_BELOW_MINIMUM = "payment_below_minimum"
    PAYMENT_FAILED = "payment_failed"
    UNDO_BROKEN = "undo_broken"
    RECOVERY_EXHAUSTED = "recovery_exhausted"
    UNSAFE_OBJECT_REFUSED = "unsafe_object_refused"
    VERSION_UNSUPPORTED = "version_unsupported"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Result:
    """
    Outcome of an engine operation.

    ok:     True when the operation was accepted.
    kind:   Failure kind; None on success.
    detail: Human-readable description of the failure (empty on success).
    value:  Operation payload on success (a piece, a connection, a chart…).
    """

    ok: bool
    kind: ErrorKind | None = None
    detail: str = ""
    value: Any = None

    def __post_init__(self) -> None:
        if self.ok and self.kind is not None:
            raise ValueError(f"successful Result must not carry a kind, got {self.kind!r}")
        if not self.ok and self.kind is None:
            raise ValueError("failed Result must carry a kind")

    @classmethod
    def success(cls, value: Any = None) -> Result:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: str = "") -> Result:
        return cls(ok=False, kind=kind, detail=detail or kind.value)

    def to_dict(self) -> dict[str, Any]:
        """Return the ``{ok, kind, detail}`` view used by external callers."""
        return {
            "ok": self.ok,
            "kind": self.kind.value if self.kind else None,
            "detail": self.detail,
        }


class CommandReplayError(Exception):
    """Raised when an undo or redo handler cannot apply its mutation."""

    def __init__(self, command_id: str, kind: ErrorKind | None, detail: str) -> None:
        super().__init__(f"command {command_id}: {detail}")
        self.command_id = command_id
        self.kind = kind
        self.detail = detail


class UnsafeObjectError(ValueError):
    """Raised when a renderer object or other non-plain value is found in engine data."""

    def __init__(self, path: str) -> None:
        super().__init__(f"unsafe object at {path}")
        self.path = path
