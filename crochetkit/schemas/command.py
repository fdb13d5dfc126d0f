"""
Command schema: one entry of the undo/redo log.

The persisted part of a command is ``(id, type, data, description,
timestamp)``; ``data`` is plain JSON.  The undo and redo closures are bound at
record or load time by :mod:`crochetkit.history.dispatch`, keyed on ``type``,
and never serialized.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CommandType(str, Enum):
    ADD_PIECE = "add_piece"
    REMOVE_PIECE = "remove_piece"
    MOVE_PIECE = "move_piece"
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    MODIFY_PIECE = "modify_piece"
    BATCH = "batch"
    # Synthetic entry written by a clean-slate recovery; undo/redo are no-ops.
    RECOVERY = "recovery"


DEFAULT_DESCRIPTIONS: Mapping[CommandType, str] = {
    CommandType.ADD_PIECE: "Add piece",
    CommandType.REMOVE_PIECE: "Remove piece",
    CommandType.MOVE_PIECE: "Move piece",
    CommandType.CONNECT: "Connect pieces",
    CommandType.DISCONNECT: "Disconnect pieces",
    CommandType.MODIFY_PIECE: "Modify piece",
    CommandType.BATCH: "Multiple actions",
    CommandType.RECOVERY: "Recovered assembly",
}


@dataclass(frozen=True)
class Command:
    id: str
    type: CommandType
    data: Mapping[str, Any]
    description: str
    timestamp: int  # epoch milliseconds
    undo: Callable[[], None] | None = field(default=None, compare=False, repr=False)
    redo: Callable[[], None] | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Command id must not be empty")

    @property
    def bound(self) -> bool:
        return self.undo is not None and self.redo is not None

    @property
    def children(self) -> list[Command]:
        """Child commands of a batch, rebuilt from ``data``; empty otherwise."""
        if self.type is not CommandType.BATCH:
            return []
        return [command_from_dict(c) for c in self.data.get("commands", ())]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "data": self.data,
            "description": self.description,
            "timestamp": self.timestamp,
        }


def command_from_dict(data: Mapping[str, Any]) -> Command:
    """Raises KeyError or ValueError on malformed data."""
    command_type = CommandType(data["type"])
    return Command(
        id=str(data["id"]),
        type=command_type,
        data=dict(data.get("data") or {}),
        description=str(data.get("description") or DEFAULT_DESCRIPTIONS[command_type]),
        timestamp=int(data.get("timestamp", 0)),
    )
