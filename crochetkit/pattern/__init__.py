"""pattern — stitch token sequences, round grouping and stitch arithmetic."""

from crochetkit.pattern.model import (
    Difficulty,
    Repeat,
    assess_difficulty,
    expansion,
    find_repeat,
    group_into_rounds,
    normalize_pattern,
    run_length,
    stitch_count,
    to_written,
)

__all__ = [
    "Difficulty",
    "Repeat",
    "assess_difficulty",
    "expansion",
    "find_repeat",
    "group_into_rounds",
    "normalize_pattern",
    "run_length",
    "stitch_count",
    "to_written",
]
