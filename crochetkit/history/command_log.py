"""
Command log: linear undo/redo history with branch-on-new-after-undo.

``current_index`` points at the last executed command (-1 when nothing has
run).  Recording after an undo discards the redo tail.  While undo or redo
runs, recording is suppressed so replayed mutations never enter the log twice.

Batches collect child commands between ``begin_batch`` and ``end_batch`` and
record them as one ``batch`` command.  The assembly is held for the whole
batch, so a committed batch is a single version step.

A command whose undo fails leaves the assembly in a state the log can no
longer describe.  The log steps past it, emits ``undo_broken`` and returns
``undo_broken``; recovery is the caller's decision.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from crochetkit.errors import CommandReplayError, ErrorKind, Result, UnsafeObjectError
from crochetkit.events import EventBus, EventType, wall_clock
from crochetkit.history.dispatch import MutationPort, bind
from crochetkit.safety.guard import safe_clone
from crochetkit.schemas.command import DEFAULT_DESCRIPTIONS, Command, CommandType, command_from_dict
from crochetkit.utilities.ids import make_id

logger = logging.getLogger(__name__)

Listener = Callable[[Command], None]


class CommandLog:
    """
    Undo/redo history over a :class:`~crochetkit.history.dispatch.MutationPort`.

    Parameters
    ----------
    port:
        Mutation interface undo/redo closures are bound to.
    bus:
        Event bus for ``undone``, ``redone``, ``batch_committed`` and
        ``undo_broken``.
    clock, rng:
        Time source and id randomness.
    max_history_size:
        Oldest commands are dropped beyond this many.
    """

    def __init__(
        self,
        port: MutationPort,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], int] = wall_clock,
        rng: random.Random | None = None,
        max_history_size: int = 50,
    ) -> None:
        if max_history_size < 1:
            raise ValueError(f"max_history_size must be >= 1, got {max_history_size}")
        self._port = port
        self._bus = bus if bus is not None else EventBus(clock)
        self._clock = clock
        self._rng = rng if rng is not None else random.Random()
        self.max_history_size = max_history_size

        self.history: list[Command] = []
        self.current_index = -1
        self._replaying = False
        self._batch: list[Command] | None = None
        self._batch_description = ""
        self._batch_depth = 0
        self._listeners: list[Listener] = []
        self._reset_stats()

    def _reset_stats(self) -> None:
        self.total_actions = 0
        self.undo_count = 0
        self.redo_count = 0
        self.last_action_time: int | None = None

    def add_listener(self, listener: Listener) -> None:
        """Call *listener* with every command that enters the history."""
        self._listeners.append(listener)

    # ── State ─────────────────────────────────────────────────────────────────

    @property
    def replaying(self) -> bool:
        return self._replaying

    @property
    def batching(self) -> bool:
        return self._batch is not None

    def can_undo(self) -> bool:
        return self.current_index >= 0

    def can_redo(self) -> bool:
        return self.current_index < len(self.history) - 1

    # ── Recording ─────────────────────────────────────────────────────────────

    def record(
        self,
        command_type: CommandType | str,
        data: Mapping[str, Any],
        description: str | None = None,
    ) -> Result:
        """
        Record an executed action.

        The payload is deep-but-safe cloned; renderer objects, callables and
        circular references are refused with ``unsafe_object_refused``.
        Returns the recorded Command as value, or ``None`` as value when
        recording is suppressed (undo/redo in progress).
        """
        if self._replaying:
            return Result.success(None)
        command_type = CommandType(command_type)
        try:
            payload = safe_clone(data)
        except UnsafeObjectError as exc:
            logger.warning("refused to record %s: unsafe value at %s", command_type.value, exc.path)
            return Result.failure(ErrorKind.UNSAFE_OBJECT_REFUSED, f"unsafe value at {exc.path}")
        command = Command(
            id=make_id("action", self._clock(), self._rng),
            type=command_type,
            data=payload,
            description=description or DEFAULT_DESCRIPTIONS[command_type],
            timestamp=self._clock(),
        )
        if self._batch is not None:
            self._batch.append(command)
            return Result.success(command)
        return Result.success(self._append(bind(command, self._port)))

    def _append(self, command: Command) -> Command:
        del self.history[self.current_index + 1 :]
        self.history.append(command)
        self.current_index += 1
        if len(self.history) > self.max_history_size:
            self.history.pop(0)
            self.current_index -= 1
        self.total_actions += 1
        self.last_action_time = command.timestamp
        logger.debug("recorded %s %s at index %d", command.type.value, command.id, self.current_index)
        for listener in list(self._listeners):
            listener(command)
        return command

    # ── Batches ───────────────────────────────────────────────────────────────

    def begin_batch(self, description: str = "Batch operation") -> None:
        """Start collecting commands.  Nested calls join the outer batch."""
        self._batch_depth += 1
        if self._batch is None:
            self._batch = []
            self._batch_description = description
            self._port.hold()

    def end_batch(self) -> Result:
        """
        Close the batch and record it as one command.

        The value is the batch Command, or None when the batch is still
        nested or collected nothing.
        """
        if self._batch is None:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "no batch in progress")
        self._batch_depth -= 1
        if self._batch_depth > 0:
            return Result.success(None)
        children, self._batch = self._batch, None
        try:
            if not children:
                return Result.success(None)
            batch = Command(
                id=make_id("action", self._clock(), self._rng),
                type=CommandType.BATCH,
                data={"commands": [c.to_dict() for c in children]},
                description=self._batch_description,
                timestamp=self._clock(),
            )
            command = self._append(bind(batch, self._port))
        finally:
            self._port.release()
        self._bus.emit(
            EventType.BATCH_COMMITTED,
            command_id=command.id,
            description=command.description,
            size=len(children),
        )
        return Result.success(command)

    def cancel_batch(self) -> Result:
        """
        Abandon the batch in flight, undoing its children newest first.

        No partial state is retained.  Returns ``cancelled`` on success so
        callers can surface it directly.
        """
        if self._batch is None:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "no batch in progress")
        children, self._batch = self._batch, None
        self._batch_depth = 0
        self._replaying = True
        try:
            for child in reversed(children):
                bound = bind(child, self._port)
                assert bound.undo is not None
                bound.undo()
        except CommandReplayError as exc:
            logger.warning("rollback of cancelled batch failed at %s: %s", exc.command_id, exc.detail)
            self._bus.emit(EventType.UNDO_BROKEN, command_id=exc.command_id, detail=exc.detail)
            return Result.failure(ErrorKind.UNDO_BROKEN, exc.detail)
        finally:
            self._replaying = False
            self._port.release()
        logger.debug("cancelled batch %r (%d command(s) rolled back)", self._batch_description, len(children))
        return Result.failure(ErrorKind.CANCELLED, f"batch {self._batch_description!r} cancelled")

    # ── Undo / redo ───────────────────────────────────────────────────────────

    def undo(self) -> Result:
        """Undo the command at ``current_index``.  The value is the undone Command."""
        if self._batch is not None:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "cannot undo while a batch is open")
        if not self.can_undo():
            return Result.failure(ErrorKind.NOT_FOUND, "no actions to undo")
        command = self.history[self.current_index]
        self._replaying = True
        try:
            assert command.undo is not None
            command.undo()
        except CommandReplayError as exc:
            self.current_index -= 1
            logger.warning("undo of %s failed, stepping past it: %s", command.id, exc.detail)
            self._bus.emit(EventType.UNDO_BROKEN, command_id=command.id, detail=exc.detail)
            return Result.failure(ErrorKind.UNDO_BROKEN, f"undo of {command.id} failed: {exc.detail}")
        finally:
            self._replaying = False
        self.current_index -= 1
        self.undo_count += 1
        self._bus.emit(EventType.UNDONE, command_id=command.id, description=command.description)
        return Result.success(command)

    def redo(self) -> Result:
        """Redo the command after ``current_index``.  The value is the redone Command."""
        if self._batch is not None:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "cannot redo while a batch is open")
        if not self.can_redo():
            return Result.failure(ErrorKind.NOT_FOUND, "no actions to redo")
        command = self.history[self.current_index + 1]
        self._replaying = True
        try:
            assert command.redo is not None
            command.redo()
        except CommandReplayError as exc:
            logger.warning("redo of %s failed: %s", command.id, exc.detail)
            return Result.failure(exc.kind or ErrorKind.INTERNAL, f"redo of {command.id} failed: {exc.detail}")
        finally:
            self._replaying = False
        self.current_index += 1
        self.redo_count += 1
        self._bus.emit(EventType.REDONE, command_id=command.id, description=command.description)
        return Result.success(command)

    def jump_to(self, target_index: int) -> Result:
        """
        Undo or redo step by step until ``current_index == target_index``.

        -1 means "before the first command".  Stops at the first failing step
        and returns its failure.
        """
        if not -1 <= target_index < len(self.history):
            return Result.failure(ErrorKind.NOT_FOUND, f"invalid history index {target_index}")
        while self.current_index != target_index:
            step = self.redo() if target_index > self.current_index else self.undo()
            if not step.ok:
                return step
        return Result.success(self.current_index)

    def clear(self) -> None:
        self.history = []
        self.current_index = -1
        self._reset_stats()

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_history(self, limit: int = 10) -> list[dict[str, Any]]:
        """
        Entries around the current position, newest first.

        Up to *limit* commands at or before the current index and up to
        *limit* redoable ones after it, each with ``is_current`` and
        ``relative_index`` (0 for the current command).
        """
        start = max(0, self.current_index - limit + 1)
        end = min(len(self.history), self.current_index + limit + 1)
        entries = [
            {
                **command.to_dict(),
                "index": index,
                "is_current": index == self.current_index,
                "relative_index": index - self.current_index,
            }
            for index, command in enumerate(self.history[start:end], start=start)
        ]
        entries.reverse()
        return entries

    def get_stats(self) -> dict[str, Any]:
        size = len(self.history)
        return {
            "total_actions": self.total_actions,
            "undo_count": self.undo_count,
            "redo_count": self.redo_count,
            "last_action_time": self.last_action_time,
            "history_size": size,
            "current_position": self.current_index + 1,
            "percentage_complete": (self.current_index + 1) / size * 100 if size else 0.0,
        }

    def to_data(self) -> list[dict[str, Any]]:
        """Persistable history: closures dropped."""
        return [c.to_dict() for c in self.history]

    def export_history(self) -> dict[str, Any]:
        return {
            "version": "1.0",
            "timestamp": self._clock(),
            "history": self.to_data(),
            "current_index": self.current_index,
            "stats": self.get_stats(),
        }

    def load(self, entries: Iterable[Mapping[str, Any]], current_index: int | None = None) -> int:
        """
        Replace the history with persisted entries, rebinding their closures.

        Entries that cannot be decoded are skipped and logged.  Returns the
        number of skipped entries.
        """
        loaded: list[Command] = []
        skipped = 0
        for entry in entries:
            try:
                loaded.append(bind(command_from_dict(entry), self._port))
            except (KeyError, TypeError, ValueError, CommandReplayError) as exc:
                skipped += 1
                logger.warning("skipping unreadable history entry: %s", exc)
        self.history = loaded[-self.max_history_size :]
        top = len(self.history) - 1
        index = top if current_index is None else current_index
        self.current_index = max(-1, min(index, top))
        return skipped
