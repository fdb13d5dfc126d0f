"""
Synchronous, ordered event stream.

Every accepted mutation, gate refusal, backup and recovery is announced on a
single :class:`EventBus`.  Subscribers receive frozen :class:`Event` records in
emission order; the payload is a read-only mapping.  A subscriber that raises
is logged and skipped so one faulty observer cannot break delivery to the rest.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PIECE_ADDED = "piece_added"
    PIECE_REMOVED = "piece_removed"
    PIECE_MODIFIED = "piece_modified"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    BATCH_COMMITTED = "batch_committed"
    UNDONE = "undone"
    REDONE = "redone"
    UNDO_BROKEN = "undo_broken"
    TIER_VIOLATION = "tier_violation"
    OVERAGE_CHARGED = "overage_charged"
    PAYMENT_REQUESTED = "payment_requested"
    PAYMENT_COMPLETED = "payment_completed"
    PERIOD_RESET = "period_reset"
    MILESTONE_REACHED = "milestone_reached"
    BACKUP_CREATED = "backup_created"
    RECOVERY_PERFORMED = "recovery_performed"
    VERSION_BUMPED = "version_bumped"


@dataclass(frozen=True)
class Event:
    """A single emitted event."""

    type: EventType
    payload: MappingProxyType[str, Any]
    timestamp: int  # epoch milliseconds


Handler = Callable[[Event], None]


def wall_clock() -> int:
    """Return the current time in epoch milliseconds."""
    return int(time.time() * 1000)


class EventBus:
    """
    In-process publish/subscribe bus.

    ``subscribe(None, handler)`` registers a handler for every event type.
    The returned callable removes the subscription.
    """

    def __init__(self, clock: Callable[[], int] = wall_clock) -> None:
        self._clock = clock
        self._handlers: list[tuple[EventType | None, Handler]] = []

    def subscribe(self, event_type: EventType | None, handler: Handler) -> Callable[[], None]:
        entry = (event_type, handler)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    def emit(self, event_type: EventType, **payload: Any) -> Event:
        event = Event(type=event_type, payload=MappingProxyType(dict(payload)), timestamp=self._clock())
        for wanted, handler in list(self._handlers):
            if wanted is not None and wanted != event_type:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("event handler failed for %s", event_type.value)
        return event
