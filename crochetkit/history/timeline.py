"""
History timeline: a read-side projection of the command log.

Each recorded command becomes a TimelineEntry carrying tags (action type,
referenced piece ids, time-of-day bucket), the delay since the previous entry
and the id of the session it fell into.  A gap longer than the idle threshold
opens a new session.  Consecutive entries of one type less than the grouping
window apart collapse into a group.  Milestones fire once when the entry
count reaches each configured threshold.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from collections import Counter
from collections.abc import Callable, Collection
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any

from crochetkit.events import EventBus, EventType, wall_clock
from crochetkit.schemas.command import Command

logger = logging.getLogger(__name__)

MILESTONE_NAMES = {
    10: "Getting Started",
    50: "Making Progress",
    100: "Experienced Builder",
    500: "Master Crafter",
}

CSV_HEADER = ("Timestamp", "Type", "Description", "Duration (ms)", "Session")


@dataclass
class TimelineEntry:
    id: str
    action_id: str
    type: str
    description: str
    timestamp: int
    session_id: str
    tags: list[str]
    duration: int  # ms since the previous entry


@dataclass
class Session:
    id: str
    name: str
    start_time: int
    end_time: int | None = None
    entry_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Milestone:
    id: str
    name: str
    action_count: int
    timestamp: int


@dataclass
class EntryGroup:
    id: str
    type: str
    entries: list[TimelineEntry]
    first_timestamp: int
    last_timestamp: int

    @property
    def count(self) -> int:
        return len(self.entries)


def time_of_day(timestamp: int, tz: tzinfo | None = None) -> str:
    """Bucket an epoch-ms timestamp: late-night <6h, morning <12h, afternoon <18h, evening."""
    hour = datetime.fromtimestamp(timestamp / 1000, tz).hour
    if hour < 6:
        return "late-night"
    if hour < 12:
        return "morning"
    if hour < 18:
        return "afternoon"
    return "evening"


def _piece_tags(command: Command) -> list[str]:
    data = command.data
    ids: list[str] = []
    if "pieceId" in data:
        ids.append(str(data["pieceId"]))
    for key in ("piece", "before"):
        piece = data.get(key)
        if isinstance(piece, dict) and piece.get("id"):
            ids.append(str(piece["id"]))
    conn = data.get("connection")
    if isinstance(conn, dict):
        ids.extend(str(conn[k]) for k in ("pieceA", "pieceB") if conn.get(k))
    for child in data.get("commands", ()):
        conn = child.get("data", {}).get("connection") if isinstance(child, dict) else None
        if isinstance(conn, dict):
            ids.extend(str(conn[k]) for k in ("pieceA", "pieceB") if conn.get(k))
        piece = child.get("data", {}).get("piece") if isinstance(child, dict) else None
        if isinstance(piece, dict) and piece.get("id"):
            ids.append(str(piece["id"]))
    return [f"piece:{pid}" for pid in dict.fromkeys(ids)]


class Timeline:
    """
    Parameters
    ----------
    bus:
        Receives ``milestone_reached``.
    clock:
        Time source; the first session starts at construction.
    session_idle_minutes:
        Idle gap that starts a new session.
    group_window_ms:
        Largest gap between two same-type entries that still groups them.
    milestones:
        Entry counts that fire a milestone.
    tz:
        Time zone for time-of-day tags and CSV export; local time when None.
    """

    def __init__(
        self,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], int] = wall_clock,
        session_idle_minutes: float = 30.0,
        group_window_ms: int = 5000,
        milestones: tuple[int, ...] = (10, 50, 100, 500),
        tz: tzinfo | None = None,
    ) -> None:
        self._bus = bus if bus is not None else EventBus(clock)
        self._clock = clock
        self.idle_ms = int(session_idle_minutes * 60_000)
        self.group_window_ms = group_window_ms
        self.milestone_counts = milestones
        self.tz = tz

        self.entries: list[TimelineEntry] = []
        self.sessions: list[Session] = []
        self.milestones: list[Milestone] = []
        self.bookmarks: set[str] = set()
        self._last_time = clock()
        self._start_session(self._last_time)

    @property
    def current_session(self) -> Session:
        return self.sessions[-1]

    def _start_session(self, start: int) -> Session:
        session = Session(
            id=f"session_{start}_{len(self.sessions) + 1}",
            name=f"Session {len(self.sessions) + 1}",
            start_time=start,
        )
        self.sessions.append(session)
        return session

    def new_session(self) -> Session:
        """Start a session explicitly (e.g. when the user reopens a project)."""
        return self._start_session(self._clock())

    # ── Ingest ────────────────────────────────────────────────────────────────

    def add(self, command: Command) -> TimelineEntry:
        timestamp = command.timestamp or self._clock()
        if self.entries and timestamp - self._last_time > self.idle_ms:
            self._start_session(timestamp)
        session = self.current_session
        entry = TimelineEntry(
            id=f"timeline_{command.id}",
            action_id=command.id,
            type=command.type.value,
            description=command.description,
            timestamp=timestamp,
            session_id=session.id,
            tags=[command.type.value, *_piece_tags(command), time_of_day(timestamp, self.tz)],
            duration=max(0, timestamp - self._last_time),
        )
        self.entries.append(entry)
        session.entry_ids.append(entry.id)
        session.end_time = timestamp
        self._last_time = timestamp
        self._check_milestones(entry)
        return entry

    def sync(self, history: list[Command]) -> None:
        """Rebuild from a full command history."""
        self.entries = []
        self.milestones = []
        self.sessions = []
        self._last_time = history[0].timestamp if history else self._clock()
        self._start_session(self._last_time)
        for command in history:
            self.add(command)

    def _check_milestones(self, entry: TimelineEntry) -> None:
        count = len(self.entries)
        if count not in self.milestone_counts:
            return
        milestone = Milestone(
            id=f"milestone_{count}",
            name=MILESTONE_NAMES.get(count, f"{count} actions"),
            action_count=count,
            timestamp=entry.timestamp,
        )
        self.milestones.append(milestone)
        logger.info("milestone reached: %s (%d actions)", milestone.name, count)
        self._bus.emit(EventType.MILESTONE_REACHED, name=milestone.name, action_count=count)

    # ── Views ─────────────────────────────────────────────────────────────────

    def toggle_bookmark(self, entry_id: str) -> bool:
        """Flip the bookmark on *entry_id*; returns the new state."""
        if entry_id in self.bookmarks:
            self.bookmarks.discard(entry_id)
            return False
        self.bookmarks.add(entry_id)
        return True

    def filter(
        self,
        *,
        types: Collection[str] = (),
        start: int | None = None,
        end: int | None = None,
        search: str = "",
        bookmarked_only: bool = False,
    ) -> list[TimelineEntry]:
        """Entries matching every given criterion (time range inclusive)."""
        term = search.lower()
        result = []
        for entry in self.entries:
            if types and entry.type not in types:
                continue
            if start is not None and entry.timestamp < start:
                continue
            if end is not None and entry.timestamp > end:
                continue
            if term and term not in entry.description.lower() and not any(
                term in tag.lower() for tag in entry.tags
            ):
                continue
            if bookmarked_only and entry.id not in self.bookmarks:
                continue
            result.append(entry)
        return result

    def grouped(self) -> list[EntryGroup]:
        groups: list[EntryGroup] = []
        for entry in self.entries:
            last = groups[-1] if groups else None
            if last and last.type == entry.type and entry.timestamp - last.last_timestamp < self.group_window_ms:
                last.entries.append(entry)
                last.last_timestamp = entry.timestamp
                continue
            groups.append(
                EntryGroup(
                    id=f"group_{entry.id}",
                    type=entry.type,
                    entries=[entry],
                    first_timestamp=entry.timestamp,
                    last_timestamp=entry.timestamp,
                )
            )
        return groups

    def statistics(self) -> dict[str, Any]:
        frequency = Counter(e.type for e in self.entries)
        total_time = self.entries[-1].timestamp - self.entries[0].timestamp if self.entries else 0
        gaps = [b.timestamp - a.timestamp for a, b in zip(self.entries, self.entries[1:])]
        return {
            "action_frequency": dict(frequency.most_common()),
            "most_common_action": frequency.most_common(1)[0][0] if frequency else None,
            "total_time": total_time,
            "average_time_between_actions": sum(gaps) / len(gaps) if gaps else 0.0,
            "session_count": len(self.sessions),
            "timeline_length": len(self.entries),
            "bookmark_count": len(self.bookmarks),
            "milestone_count": len(self.milestones),
        }

    # ── Export ────────────────────────────────────────────────────────────────

    def export(self, fmt: str = "json") -> str:
        """
        Serialize the timeline as ``"json"`` or ``"csv"``.

        Raises ValueError for any other format.
        """
        match fmt:
            case "json":
                data = {
                    "version": "1.0",
                    "exported": self._clock(),
                    "timeline": [asdict(e) for e in self.entries],
                    "sessions": [asdict(s) for s in self.sessions],
                    "milestones": [asdict(m) for m in self.milestones],
                    "bookmarks": sorted(self.bookmarks),
                    "statistics": self.statistics(),
                }
                return json.dumps(data, indent=2)
            case "csv":
                buffer = io.StringIO()
                writer = csv.writer(buffer, lineterminator="\n")
                writer.writerow(CSV_HEADER)
                for e in self.entries:
                    iso = datetime.fromtimestamp(e.timestamp / 1000, self.tz or timezone.utc).isoformat()
                    writer.writerow([iso, e.type, e.description, e.duration, e.session_id])
                return buffer.getvalue().rstrip("\n")
            case _:
                raise ValueError(f"unsupported timeline export format {fmt!r}")

    def clear(self) -> None:
        self.entries = []
        self.sessions = []
        self.milestones = []
        self.bookmarks.clear()
        self._last_time = self._clock()
        self._start_session(self._last_time)
