"""history — command log (undo/redo), replay dispatch and timeline projection."""

from crochetkit.history.command_log import CommandLog
from crochetkit.history.dispatch import MutationPort, bind, referenced_ids
from crochetkit.history.timeline import MILESTONE_NAMES, Timeline, TimelineEntry, time_of_day

__all__ = [
    "CommandLog",
    "MILESTONE_NAMES",
    "MutationPort",
    "Timeline",
    "TimelineEntry",
    "bind",
    "referenced_ids",
    "time_of_day",
]
