"""
Canonical JSON codec for assemblies.

Document layout (version 1)::

    {
      "version": 1, "type": "assembly", "id", "name", "tier",
      "pieces": [Piece], "connections": [Connection],
      "usage": UsageLedger, "history": [Command], "historyIndex": int,
      "locked": [pieceId], "revision": int, "recoveryInfo"?: {...}
    }

``dumps`` sorts keys so equal documents serialize byte-for-byte equal.
Unknown top-level fields are carried on ``Assembly.extras`` and unknown
piece fields on ``Piece.extras``; both are written back unchanged.  Decoding
refuses documents holding renderer objects and documents whose major version
is newer than this codec.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from crochetkit.assembly.graph import Assembly
from crochetkit.config import CODEC_VERSION
from crochetkit.errors import ErrorKind, Result, UnsafeObjectError
from crochetkit.registry import Tier
from crochetkit.safety.guard import find_unsafe
from crochetkit.schemas.convert import (
    connection_from_dict,
    connection_to_dict,
    piece_from_dict,
    piece_to_dict,
)
from crochetkit.schemas.usage import UsageLedger

logger = logging.getLogger(__name__)

_KNOWN_KEYS = frozenset(
    {
        "version",
        "type",
        "id",
        "name",
        "tier",
        "pieces",
        "connections",
        "usage",
        "history",
        "historyIndex",
        "locked",
        "revision",
        "recoveryInfo",
    }
)


def storage_key(assembly_id: str) -> str:
    return f"assembly_{assembly_id}"


@dataclass
class DecodedAssembly:
    """Everything a canonical document restores besides the graph itself."""

    assembly: Assembly
    usage: UsageLedger = field(default_factory=UsageLedger)
    history: list[dict[str, Any]] = field(default_factory=list)
    history_index: int = -1
    recovery_info: dict[str, Any] | None = None


def to_safe_data(
    assembly: Assembly,
    *,
    usage: UsageLedger | None = None,
    history: Sequence[Mapping[str, Any]] = (),
    history_index: int | None = None,
    recovery_info: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Encode an assembly and its side records as a canonical document.

    Raises
    ------
    UnsafeObjectError
        If any value (typically an unknown field carried through) is a
        renderer object, a callable or a circular reference.
    """
    data: dict[str, Any] = dict(assembly.extras)
    data.update(
        {
            "version": CODEC_VERSION,
            "type": "assembly",
            "id": assembly.id,
            "name": assembly.name,
            "tier": assembly.tier.value,
            "pieces": [piece_to_dict(p) for p in assembly.pieces.values()],
            "connections": [connection_to_dict(c) for c in assembly.connections.values()],
            "usage": (usage or UsageLedger()).to_dict(),
            "history": [dict(h) for h in history],
            "historyIndex": len(history) - 1 if history_index is None else history_index,
            "locked": assembly.locked_ids(),
            "revision": assembly.version,
        }
    )
    if recovery_info is not None:
        data["recoveryInfo"] = dict(recovery_info)
    unsafe = find_unsafe(data)
    if unsafe is not None:
        raise UnsafeObjectError(unsafe)
    return data


def dumps(data: Mapping[str, Any]) -> str:
    """Canonical text form: sorted keys, compact separators."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), allow_nan=False)


def _major(version: Any) -> int:
    if isinstance(version, bool):
        raise ValueError(f"invalid version {version!r}")
    if isinstance(version, (int, float)):
        return int(version)
    return int(str(version).split(".", 1)[0])


def from_safe_data(data: Any, **assembly_kwargs: Any) -> Result:
    """
    Decode a canonical document into a :class:`DecodedAssembly`.

    *assembly_kwargs* go to the Assembly constructor (bus, clock, rng,
    snap_grid…).  The graph is installed verbatim; callers that need
    structural guarantees run ``assembly.validate()`` on the result.

    Returns
    -------
    Result
        ``unsafe_object_refused`` for renderer objects, ``version_unsupported``
        for a newer major version, ``validation_failed`` for anything else
        malformed.
    """
    if not isinstance(data, Mapping):
        return Result.failure(ErrorKind.VALIDATION_FAILED, "document must be a JSON object")
    unsafe = find_unsafe(data)
    if unsafe is not None:
        return Result.failure(ErrorKind.UNSAFE_OBJECT_REFUSED, f"unsafe value at {unsafe}")
    try:
        major = _major(data.get("version", CODEC_VERSION))
    except (TypeError, ValueError):
        return Result.failure(ErrorKind.VALIDATION_FAILED, f"invalid version {data.get('version')!r}")
    if major > CODEC_VERSION:
        return Result.failure(
            ErrorKind.VERSION_UNSUPPORTED,
            f"document version {major} is newer than supported version {CODEC_VERSION}",
        )
    if data.get("type", "assembly") != "assembly":
        return Result.failure(ErrorKind.VALIDATION_FAILED, f"not an assembly document: {data.get('type')!r}")

    try:
        locked = {str(pid) for pid in data.get("locked") or ()}
        pieces = []
        for raw in data.get("pieces") or ():
            piece = piece_from_dict(raw)
            if piece.id in locked and not piece.locked:
                piece = replace(piece, locked=True)
            pieces.append(piece)
        connections = [connection_from_dict(c) for c in data.get("connections") or ()]
        assembly = Assembly(
            str(data["id"]),
            str(data.get("name") or "Untitled Assembly"),
            Tier(data.get("tier", Tier.FREEMIUM.value)),
            **assembly_kwargs,
        )
        assembly.load_state(pieces, connections, version=int(data.get("revision", 0)))
        usage = UsageLedger.from_dict(data.get("usage") or {})
        history = [dict(h) for h in data.get("history") or ()]
        history_index = int(data.get("historyIndex", len(history) - 1))
    except (KeyError, TypeError, ValueError) as exc:
        logger.debug("document rejected: %s", exc)
        return Result.failure(ErrorKind.VALIDATION_FAILED, f"malformed assembly document: {exc}")

    assembly.extras = {k: v for k, v in data.items() if k not in _KNOWN_KEYS}
    recovery = data.get("recoveryInfo")
    return Result.success(
        DecodedAssembly(
            assembly=assembly,
            usage=usage,
            history=history,
            history_index=history_index,
            recovery_info=dict(recovery) if isinstance(recovery, Mapping) else None,
        )
    )


def loads(text: str, **assembly_kwargs: Any) -> Result:
    """Parse canonical text; invalid JSON is ``validation_failed``."""
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as exc:
        return Result.failure(ErrorKind.VALIDATION_FAILED, f"invalid JSON: {exc}")
    return from_safe_data(data, **assembly_kwargs)
