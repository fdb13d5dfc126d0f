"""
Undo/redo dispatch: rebuild a command's closures from its type and data.

Closures are never persisted.  ``bind`` reconstructs them against a
:class:`MutationPort`, so the command log never holds the assembly itself,
and a log loaded from storage is as undoable as one recorded live.

Every handler raises :class:`~crochetkit.errors.CommandReplayError` when the
port refuses a replayed mutation.  Batch handlers replay children in reverse
(undo) or forward (redo) order inside one version step.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Mapping
from contextlib import AbstractContextManager
from typing import Any, Protocol

from crochetkit.errors import CommandReplayError, ErrorKind, Result
from crochetkit.schemas.command import Command, CommandType
from crochetkit.schemas.connection import Connection
from crochetkit.schemas.convert import connection_from_dict, piece_from_dict
from crochetkit.schemas.piece import Piece


class MutationPort(Protocol):
    """The mutations undo and redo are allowed to perform."""

    def add_piece(self, piece: Piece | Mapping[str, Any]) -> Result: ...

    def remove_piece(self, piece_id: str, force: bool = False) -> Result: ...

    def connect(
        self,
        piece1_id: str,
        point1_id: str,
        piece2_id: str,
        point2_id: str,
        *,
        connection_id: str | None = None,
        created_at: int | None = None,
    ) -> Result: ...

    def disconnect(self, connection_id: str) -> Result: ...

    def update_piece_position(self, piece_id: str, position: Any) -> Result: ...

    def replace_piece(self, piece: Piece, fields: tuple[str, ...] = ()) -> Result: ...

    def coalesce(self) -> AbstractContextManager[None]: ...

    def hold(self) -> None: ...

    def release(self) -> None: ...


Step = Callable[[], None]


def _check(command: Command, result: Result) -> None:
    if not result.ok:
        raise CommandReplayError(command.id, result.kind, result.detail)


def _reconnect(port: MutationPort, command: Command, conn: Connection) -> None:
    _check(
        command,
        port.connect(
            conn.a.piece_id,
            conn.a.point_id,
            conn.b.piece_id,
            conn.b.point_id,
            connection_id=conn.id,
            created_at=conn.created_at,
        ),
    )


def _steps(command: Command, port: MutationPort) -> tuple[Step, Step]:
    data = command.data
    match command.type:
        case CommandType.ADD_PIECE:
            piece = piece_from_dict(data["piece"])

            def undo() -> None:
                _check(command, port.remove_piece(piece.id, force=True))

            def redo() -> None:
                _check(command, port.add_piece(piece))

        case CommandType.REMOVE_PIECE:
            piece = piece_from_dict(data["piece"])
            connections = [connection_from_dict(c) for c in data.get("connections", ())]

            def undo() -> None:
                with port.coalesce():
                    _check(command, port.add_piece(piece))
                    for conn in connections:
                        _reconnect(port, command, conn)

            def redo() -> None:
                _check(command, port.remove_piece(piece.id, force=True))

        case CommandType.MOVE_PIECE:
            piece_id = str(data["pieceId"])

            def undo() -> None:
                _check(command, port.update_piece_position(piece_id, data["from"]))

            def redo() -> None:
                _check(command, port.update_piece_position(piece_id, data["to"]))

        case CommandType.CONNECT | CommandType.DISCONNECT:
            conn = connection_from_dict(data["connection"])

            def attach() -> None:
                _reconnect(port, command, conn)

            def detach() -> None:
                _check(command, port.disconnect(conn.id))

            undo, redo = (detach, attach) if command.type is CommandType.CONNECT else (attach, detach)

        case CommandType.MODIFY_PIECE:
            before = piece_from_dict(data["before"])
            after = piece_from_dict(data["after"])
            fields = tuple(data.get("fields", ()))

            def undo() -> None:
                _check(command, port.replace_piece(before, fields))

            def redo() -> None:
                _check(command, port.replace_piece(after, fields))

        case CommandType.BATCH:
            children = [bind(child, port) for child in command.children]

            def undo() -> None:
                with port.coalesce():
                    for child in reversed(children):
                        assert child.undo is not None
                        child.undo()

            def redo() -> None:
                with port.coalesce():
                    for child in children:
                        assert child.redo is not None
                        child.redo()

        case CommandType.RECOVERY:

            def undo() -> None:
                return None

            redo = undo

        case _:
            raise CommandReplayError(command.id, ErrorKind.INTERNAL, f"no handler for {command.type!r}")

    return undo, redo


def bind(command: Command, port: MutationPort) -> Command:
    """
    Return *command* with undo/redo closures bound to *port*.

    Raises
    ------
    CommandReplayError
        If the payload cannot be decoded for the command's type.
    """
    try:
        undo, redo = _steps(command, port)
    except (KeyError, TypeError, ValueError) as exc:
        raise CommandReplayError(command.id, ErrorKind.VALIDATION_FAILED, f"bad payload: {exc}") from exc
    return dataclasses.replace(command, undo=undo, redo=redo)


def referenced_ids(command: Command) -> tuple[set[str], set[str]]:
    """
    Piece ids this command needs to exist beforehand, and piece ids it creates.

    History rebuild uses this to skip commands whose payload refers to a
    piece that no earlier command produced.
    """
    data = command.data
    match command.type:
        case CommandType.ADD_PIECE:
            return set(), {str(data.get("piece", {}).get("id", ""))}
        case CommandType.REMOVE_PIECE:
            return {str(data.get("piece", {}).get("id", ""))}, set()
        case CommandType.MOVE_PIECE:
            return {str(data.get("pieceId", ""))}, set()
        case CommandType.MODIFY_PIECE:
            return {str(data.get("before", {}).get("id", ""))}, set()
        case CommandType.CONNECT | CommandType.DISCONNECT:
            conn = data.get("connection", {})
            return {str(conn.get("pieceA", "")), str(conn.get("pieceB", ""))}, set()
        case _:
            return set(), set()
