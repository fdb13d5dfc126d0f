"""Tests for history.timeline — sessions, tags, grouping, milestones and export."""

from __future__ import annotations

import json
from datetime import timezone

import pytest

from crochetkit.events import EventBus, EventType
from crochetkit.history import MILESTONE_NAMES, Timeline, time_of_day
from crochetkit.schemas.command import Command, CommandType

_T0 = 1_700_000_000_000  # 2023-11-14 22:13:20 UTC
_HOUR = 3_600_000


def _make_command(n: int, at: int, command_type: CommandType = CommandType.MOVE_PIECE, **data) -> Command:
    payload = data or {"pieceId": f"p{n}"}
    return Command(id=f"a{n}", type=command_type, data=payload, description=f"action {n}", timestamp=at)


def _make_timeline(**kw) -> tuple[Timeline, EventBus]:
    bus = EventBus(lambda: _T0)
    kw.setdefault("tz", timezone.utc)
    return Timeline(bus=bus, clock=lambda: _T0, **kw), bus


class TestTimeOfDay:
    @pytest.mark.parametrize(
        ("hour", "bucket"),
        [(0, "late-night"), (5, "late-night"), (6, "morning"), (11, "morning"), (12, "afternoon"), (18, "evening")],
    )
    def test_buckets(self, hour, bucket):
        midnight = 1_699_920_000_000  # 2023-11-14 00:00 UTC
        assert time_of_day(midnight + hour * _HOUR, timezone.utc) == bucket


class TestIngest:
    def test_entry_fields(self):
        timeline, _ = _make_timeline()
        entry = timeline.add(_make_command(1, _T0 + 1500))
        assert entry.id == "timeline_a1"
        assert entry.action_id == "a1"
        assert entry.type == "move_piece"
        assert entry.duration == 1500
        assert entry.tags == ["move_piece", "piece:p1", "evening"]
        assert entry.session_id == timeline.sessions[0].id

    def test_connection_tags_both_pieces(self):
        timeline, _ = _make_timeline()
        command = _make_command(
            1, _T0, CommandType.CONNECT, connection={"id": "c", "pieceA": "h", "pieceB": "b"}
        )
        entry = timeline.add(command)
        assert "piece:h" in entry.tags and "piece:b" in entry.tags

    def test_idle_gap_starts_session(self):
        timeline, _ = _make_timeline(session_idle_minutes=30)
        timeline.add(_make_command(1, _T0 + 1000))
        timeline.add(_make_command(2, _T0 + 2000))
        late = timeline.add(_make_command(3, _T0 + 2000 + 31 * 60_000))
        assert len(timeline.sessions) == 2
        assert late.session_id == timeline.sessions[1].id
        assert timeline.sessions[0].entry_ids == ["timeline_a1", "timeline_a2"]

    def test_sync_rebuilds(self):
        timeline, _ = _make_timeline()
        timeline.add(_make_command(9, _T0))
        timeline.sync([_make_command(1, _T0 + 10), _make_command(2, _T0 + 20)])
        assert [e.action_id for e in timeline.entries] == ["a1", "a2"]
        assert len(timeline.sessions) == 1


class TestMilestones:
    def test_milestone_fires_once_at_threshold(self):
        timeline, bus = _make_timeline(milestones=(3, 5))
        fired = []
        bus.subscribe(EventType.MILESTONE_REACHED, fired.append)
        for n in range(6):
            timeline.add(_make_command(n, _T0 + n))
        assert [m.action_count for m in timeline.milestones] == [3, 5]
        assert [e.payload["action_count"] for e in fired] == [3, 5]
        assert timeline.milestones[0].name == "3 actions"

    def test_named_milestone(self):
        timeline, _ = _make_timeline()
        for n in range(10):
            timeline.add(_make_command(n, _T0 + n))
        assert timeline.milestones[0].name == MILESTONE_NAMES[10] == "Getting Started"


class TestViews:
    def _populated(self) -> Timeline:
        timeline, _ = _make_timeline(group_window_ms=5000)
        timeline.add(_make_command(1, _T0 + 1000))
        timeline.add(_make_command(2, _T0 + 2000))
        timeline.add(_make_command(3, _T0 + 9000))
        timeline.add(_make_command(4, _T0 + 10_000, CommandType.ADD_PIECE, piece={"id": "p4"}))
        return timeline

    def test_grouping(self):
        groups = self._populated().grouped()
        assert [(g.type, g.count) for g in groups] == [("move_piece", 2), ("move_piece", 1), ("add_piece", 1)]

    def test_filter_by_type_and_range(self):
        timeline = self._populated()
        assert len(timeline.filter(types={"move_piece"})) == 3
        assert [e.action_id for e in timeline.filter(start=_T0 + 2000, end=_T0 + 9000)] == ["a2", "a3"]

    def test_filter_search_matches_tags(self):
        timeline = self._populated()
        assert [e.action_id for e in timeline.filter(search="piece:p4")] == ["a4"]
        assert [e.action_id for e in timeline.filter(search="ACTION 3")] == ["a3"]

    def test_bookmarks(self):
        timeline = self._populated()
        assert timeline.toggle_bookmark("timeline_a2") is True
        assert [e.id for e in timeline.filter(bookmarked_only=True)] == ["timeline_a2"]
        assert timeline.toggle_bookmark("timeline_a2") is False
        assert timeline.filter(bookmarked_only=True) == []

    def test_statistics(self):
        stats = self._populated().statistics()
        assert stats["action_frequency"] == {"move_piece": 3, "add_piece": 1}
        assert stats["most_common_action"] == "move_piece"
        assert stats["total_time"] == 9000
        assert stats["average_time_between_actions"] == 3000.0
        assert stats["timeline_length"] == 4
        assert stats["session_count"] == 1

    def test_empty_statistics(self):
        timeline, _ = _make_timeline()
        stats = timeline.statistics()
        assert stats["most_common_action"] is None
        assert stats["average_time_between_actions"] == 0.0


class TestExport:
    def test_csv(self):
        timeline, _ = _make_timeline()
        timeline.add(_make_command(1, _T0 + 1000))
        lines = timeline.export("csv").split("\n")
        assert lines[0] == "Timestamp,Type,Description,Duration (ms),Session"
        assert lines[1].startswith("2023-11-14T22:13:21+00:00,move_piece,action 1,1000,session_")

    def test_json(self):
        timeline, _ = _make_timeline()
        timeline.add(_make_command(1, _T0))
        timeline.toggle_bookmark("timeline_a1")
        data = json.loads(timeline.export("json"))
        assert data["timeline"][0]["id"] == "timeline_a1"
        assert data["bookmarks"] == ["timeline_a1"]
        assert data["statistics"]["bookmark_count"] == 1

    def test_unknown_format(self):
        timeline, _ = _make_timeline()
        with pytest.raises(ValueError):
            timeline.export("xml")

    def test_clear(self):
        timeline, _ = _make_timeline()
        timeline.add(_make_command(1, _T0))
        timeline.toggle_bookmark("timeline_a1")
        timeline.clear()
        assert timeline.entries == [] and timeline.bookmarks == set()
        assert len(timeline.sessions) == 1
