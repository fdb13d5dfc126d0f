"""Tests for history.command_log and history.dispatch — undo/redo, batches, replay."""

from __future__ import annotations

import random

import pytest

from crochetkit.assembly import Assembly
from crochetkit.errors import ErrorKind
from crochetkit.events import EventBus, EventType
from crochetkit.history import CommandLog, bind, referenced_ids
from crochetkit.registry import Tier
from crochetkit.schemas.command import Command, CommandType
from crochetkit.schemas.convert import connection_to_dict, piece_to_dict
from crochetkit.schemas.piece import ConnectionPoint, Piece


class _Clock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        self.now += 1
        return self.now


def _make_piece(pid: str) -> Piece:
    return Piece(
        id=pid,
        type="part",
        name=pid,
        color="#010203",
        connection_points=tuple(
            ConnectionPoint(id=f"{pid}_{n}", name=n, compatible=("link",), type="link") for n in ("a", "b")
        ),
    )


def _make_log(max_history_size: int = 50) -> tuple[Assembly, CommandLog, EventBus]:
    clock = _Clock()
    bus = EventBus(clock)
    asm = Assembly("log", tier=Tier.PRO, bus=bus, clock=clock, rng=random.Random(3))
    log = CommandLog(asm, bus=bus, clock=clock, rng=random.Random(4), max_history_size=max_history_size)
    return asm, log, bus


def _add(asm: Assembly, log: CommandLog, pid: str) -> Piece:
    piece = asm.add_piece(_make_piece(pid)).value
    log.record(CommandType.ADD_PIECE, {"piece": piece_to_dict(piece, include_lock=True)})
    return piece


def _connect(asm: Assembly, log: CommandLog, p1: str, p2: str, point: str = "a"):
    conn = asm.connect(p1, point, p2, point).value
    log.record(CommandType.CONNECT, {"connection": connection_to_dict(conn)})
    return conn


def _snapshot(asm: Assembly) -> tuple:
    return (dict(asm.pieces), dict(asm.connections))


# ── Recording ──────────────────────────────────────────────────────────────────


class TestRecord:
    def test_record_appends_and_binds(self):
        asm, log, _ = _make_log()
        _add(asm, log, "p1")
        assert log.current_index == 0
        assert log.history[0].bound
        assert log.history[0].description == "Add piece"
        assert log.can_undo() and not log.can_redo()

    def test_unsafe_payload_refused(self):
        _, log, _ = _make_log()
        result = log.record(CommandType.ADD_PIECE, {"piece": {"mesh": {"isMesh": True}}})
        assert result.kind is ErrorKind.UNSAFE_OBJECT_REFUSED
        assert log.history == []

    def test_history_is_capped(self):
        asm, log, _ = _make_log(max_history_size=3)
        for i in range(5):
            _add(asm, log, f"p{i}")
        assert len(log.history) == 3
        assert log.current_index == 2
        assert log.history[0].data["piece"]["id"] == "p2"

    def test_new_action_after_undo_discards_redo_tail(self):
        asm, log, _ = _make_log()
        _add(asm, log, "p1")
        _add(asm, log, "p2")
        log.undo()
        _add(asm, log, "p3")
        assert [c.data["piece"]["id"] for c in log.history] == ["p1", "p3"]
        assert not log.can_redo()

    def test_listener_sees_each_command(self):
        asm, log, _ = _make_log()
        seen: list[Command] = []
        log.add_listener(seen.append)
        _add(asm, log, "p1")
        assert [c.type for c in seen] == [CommandType.ADD_PIECE]

    def test_invalid_max_history_size(self):
        asm = Assembly("x")
        with pytest.raises(ValueError):
            CommandLog(asm, max_history_size=0)


# ── Undo / redo ────────────────────────────────────────────────────────────────


class TestUndoRedo:
    def test_undo_then_redo_restores_state(self):
        asm, log, _ = _make_log()
        _add(asm, log, "p1")
        _add(asm, log, "p2")
        before = _snapshot(asm)
        _connect(asm, log, "p1", "p2")
        after = _snapshot(asm)
        assert log.undo().ok
        assert _snapshot(asm) == before
        assert log.redo().ok
        assert _snapshot(asm) == after

    def test_undo_remove_restores_connections(self):
        asm, log, _ = _make_log()
        _add(asm, log, "p1")
        _add(asm, log, "p2")
        conn = _connect(asm, log, "p1", "p2")
        removed = asm.remove_piece("p1").value
        log.record(
            CommandType.REMOVE_PIECE,
            {
                "piece": piece_to_dict(removed["piece"], include_lock=True),
                "connections": [connection_to_dict(c) for c in removed["connections"]],
            },
        )
        log.undo()
        assert "p1" in asm.pieces
        assert asm.get_connection(conn.id) == conn

    def test_undo_move(self):
        asm, log, _ = _make_log()
        _add(asm, log, "p1")
        old, new = asm.update_piece_position("p1", [3, 0, 0]).value
        log.record(CommandType.MOVE_PIECE, {"pieceId": "p1", "from": old.to_dict(), "to": new.to_dict()})
        log.undo()
        assert asm.get_piece("p1").position == old
        log.redo()
        assert asm.get_piece("p1").position == new

    def test_undo_modify(self):
        asm, log, _ = _make_log()
        _add(asm, log, "p1")
        old, new = asm.modify_piece("p1", {"name": "Renamed"}).value
        log.record(
            CommandType.MODIFY_PIECE,
            {"before": piece_to_dict(old, include_lock=True), "after": piece_to_dict(new, include_lock=True)},
        )
        log.undo()
        assert asm.get_piece("p1").name == "p1"

    def test_undo_and_redo_emit_events(self):
        asm, log, bus = _make_log()
        seen: list = []
        bus.subscribe(EventType.UNDONE, seen.append)
        bus.subscribe(EventType.REDONE, seen.append)
        _add(asm, log, "p1")
        log.undo()
        log.redo()
        assert [e.type for e in seen] == [EventType.UNDONE, EventType.REDONE]

    def test_nothing_to_undo_or_redo(self):
        _, log, _ = _make_log()
        assert log.undo().kind is ErrorKind.NOT_FOUND
        assert log.redo().kind is ErrorKind.NOT_FOUND

    def test_replay_is_not_recorded(self):
        asm, log, _ = _make_log()
        _add(asm, log, "p1")
        log.undo()
        log.redo()
        assert len(log.history) == 1
        assert log.get_stats()["undo_count"] == 1
        assert log.get_stats()["redo_count"] == 1

    def test_broken_undo_steps_past_command(self):
        asm, log, bus = _make_log()
        broken: list = []
        bus.subscribe(EventType.UNDO_BROKEN, broken.append)
        _add(asm, log, "p1")
        asm.remove_piece("p1")  # outside the log
        result = log.undo()
        assert result.kind is ErrorKind.UNDO_BROKEN
        assert log.current_index == -1
        assert len(broken) == 1

    def test_jump_to(self):
        asm, log, _ = _make_log()
        for pid in ("p1", "p2", "p3"):
            _add(asm, log, pid)
        assert log.jump_to(-1).ok
        assert not asm.pieces
        assert log.jump_to(1).ok
        assert set(asm.pieces) == {"p1", "p2"}
        assert log.jump_to(7).kind is ErrorKind.NOT_FOUND


# ── Batches ────────────────────────────────────────────────────────────────────


class TestBatch:
    def test_batch_is_one_command_and_one_version(self):
        asm, log, bus = _make_log()
        committed: list = []
        bus.subscribe(EventType.BATCH_COMMITTED, committed.append)
        pre = asm.version
        log.begin_batch("Build head")
        head = _add(asm, log, "head")
        body = _add(asm, log, "body")
        conn = _connect(asm, log, "head", "body")
        result = log.end_batch()
        assert result.ok
        assert result.value.type is CommandType.BATCH
        assert len(log.history) == 1
        assert asm.version == pre + 1
        assert committed[0].payload["size"] == 3

        assert log.undo().ok
        assert not asm.pieces and not asm.connections
        assert log.redo().ok
        assert asm.get_piece("head") == head
        assert asm.get_piece("body") == body
        assert asm.get_connection(conn.id) == conn

    def test_nested_batches_join_outer(self):
        asm, log, _ = _make_log()
        log.begin_batch("outer")
        _add(asm, log, "p1")
        log.begin_batch("inner")
        _add(asm, log, "p2")
        assert log.end_batch().value is None
        assert log.batching
        log.end_batch()
        assert len(log.history) == 1
        assert log.history[0].description == "outer"

    def test_empty_batch_records_nothing(self):
        _, log, _ = _make_log()
        log.begin_batch()
        assert log.end_batch().value is None
        assert log.history == []

    def test_end_without_begin(self):
        _, log, _ = _make_log()
        assert log.end_batch().kind is ErrorKind.VALIDATION_FAILED

    def test_cancel_rolls_back(self):
        asm, log, _ = _make_log()
        _add(asm, log, "keep")
        log.begin_batch()
        _add(asm, log, "p1")
        _add(asm, log, "p2")
        result = log.cancel_batch()
        assert result.kind is ErrorKind.CANCELLED
        assert set(asm.pieces) == {"keep"}
        assert len(log.history) == 1
        assert not log.batching

    def test_undo_refused_while_batching(self):
        asm, log, _ = _make_log()
        _add(asm, log, "p1")
        log.begin_batch()
        assert log.undo().kind is ErrorKind.VALIDATION_FAILED
        log.cancel_batch()


# ── Queries and persistence ────────────────────────────────────────────────────


class TestQueries:
    def test_get_history_newest_first(self):
        asm, log, _ = _make_log()
        for pid in ("p1", "p2", "p3"):
            _add(asm, log, pid)
        log.undo()
        entries = log.get_history()
        assert [e["index"] for e in entries] == [2, 1, 0]
        assert [e["relative_index"] for e in entries] == [1, 0, -1]
        assert entries[1]["is_current"] is True

    def test_stats(self):
        asm, log, _ = _make_log()
        for pid in ("p1", "p2"):
            _add(asm, log, pid)
        log.undo()
        stats = log.get_stats()
        assert stats["total_actions"] == 2
        assert stats["history_size"] == 2
        assert stats["current_position"] == 1
        assert stats["percentage_complete"] == 50.0

    def test_load_rebinds_closures(self):
        asm, log, _ = _make_log()
        _add(asm, log, "p1")
        _add(asm, log, "p2")
        data = log.to_data()

        fresh_asm = Assembly("other", tier=Tier.PRO)
        fresh = CommandLog(fresh_asm)
        for pid in ("p1", "p2"):
            fresh_asm.add_piece(_make_piece(pid))
        assert fresh.load(data) == 0
        assert fresh.current_index == 1
        assert fresh.undo().ok
        assert set(fresh_asm.pieces) == {"p1"}

    def test_load_skips_unreadable_entries(self):
        _, log, _ = _make_log()
        skipped = log.load([{"type": "nonsense"}, {"id": "x", "type": "add_piece", "data": {}}])
        assert skipped == 2
        assert log.current_index == -1

    def test_export_history(self):
        asm, log, _ = _make_log()
        _add(asm, log, "p1")
        exported = log.export_history()
        assert exported["current_index"] == 0
        assert exported["history"][0]["type"] == "add_piece"


class TestDispatch:
    def test_referenced_ids(self):
        command = Command(
            id="c",
            type=CommandType.CONNECT,
            data={"connection": {"pieceA": "p1", "pieceB": "p2"}},
            description="",
            timestamp=0,
        )
        assert referenced_ids(command) == ({"p1", "p2"}, set())

    def test_bind_rejects_bad_payload(self):
        from crochetkit.errors import CommandReplayError

        command = Command(id="c", type=CommandType.MOVE_PIECE, data={}, description="", timestamp=0)
        with pytest.raises(CommandReplayError):
            bind(command, Assembly("x"))
