"""
Pattern model: ordered stitch tokens and the arithmetic over them.

A pattern is a finite sequence of tokens (``MR``, ``sc``, ``inc``…).  Token
semantics come from the stitch table (``stitches.yaml``): how many live
stitches a token adds, and whether it closes a round.  Tokens missing from
the table count as one ordinary stitch.

Round grouping::

    first round   ends at a round-delimiting token (``sl``, ``join``), or at
                  ``MR`` once the round already holds another token
    later rounds  end at a delimiter, or after ``window`` tokens (default 6)
    remainder     whatever is left forms a final round
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from crochetkit.registry import StitchEntry, get_registry

MAGIC_RING = "MR"


class Difficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"

    @property
    def level(self) -> int:
        return list(Difficulty).index(self) + 1

    @classmethod
    def from_level(cls, level: int) -> Difficulty:
        return list(cls)[max(1, min(level, 3)) - 1]


_ADVANCED_TOKENS = frozenset({"MR", "tr", "dtr"})
_INTERMEDIATE_TOKENS = frozenset({"dc", "inc", "dec"})


@dataclass(frozen=True)
class Repeat:
    pattern: tuple[str, ...]
    repeats: int


def _table(stitches: Mapping[str, StitchEntry] | None) -> Mapping[str, StitchEntry]:
    return stitches if stitches is not None else get_registry().stitches


def normalize_pattern(tokens: Iterable[object]) -> tuple[str, ...]:
    """Strip whitespace and drop empty tokens."""
    return tuple(t for t in (str(tok).strip() for tok in tokens) if t)


def is_round_delimiter(token: str, stitches: Mapping[str, StitchEntry] | None = None) -> bool:
    entry = _table(stitches).get(token)
    return entry is not None and entry.round_delimiter


def group_into_rounds(
    pattern: Sequence[str],
    *,
    window: int = 6,
    stitches: Mapping[str, StitchEntry] | None = None,
) -> list[list[str]]:
    """
    Split *pattern* into rounds.  Order and total length are preserved.

    Parameters
    ----------
    pattern:
        Stitch tokens.
    window:
        Fallback round length after the first round.
    stitches:
        Stitch table; the registry's when None.
    """
    table = _table(stitches)
    rounds: list[list[str]] = []
    current: list[str] = []
    first = True
    for token in pattern:
        current.append(token)
        entry = table.get(token)
        delimiter = entry is not None and entry.round_delimiter
        if delimiter or (first and token == MAGIC_RING and len(current) > 1):
            rounds.append(current)
            current = []
            first = False
        elif not first and len(current) >= window:
            rounds.append(current)
            current = []
    if current:
        rounds.append(current)
    return rounds


def stitch_delta(token: str, stitches: Mapping[str, StitchEntry] | None = None) -> int:
    entry = _table(stitches).get(token)
    return 1 if entry is None else entry.count_delta


def stitch_count(round_tokens: Sequence[str], stitches: Mapping[str, StitchEntry] | None = None) -> int:
    """Live stitches a round produces, clamped at zero."""
    table = _table(stitches)
    return max(0, sum(stitch_delta(t, table) for t in round_tokens))


def find_repeat(round_tokens: Sequence[str]) -> Repeat | None:
    """
    Return the shortest unit the round repeats at least twice, or None.

    ``[sc, inc, sc, inc]`` → ``Repeat(("sc", "inc"), 2)``.
    """
    n = len(round_tokens)
    for length in range(1, n // 2 + 1):
        if n % length:
            continue
        unit = tuple(round_tokens[:length])
        if all(tuple(round_tokens[i : i + length]) == unit for i in range(length, n, length)):
            return Repeat(pattern=unit, repeats=n // length)
    return None


def assess_difficulty(pattern: Iterable[str]) -> Difficulty:
    """Advanced if any of MR/tr/dtr, intermediate if any of dc/inc/dec, else beginner."""
    tokens = set(pattern)
    if tokens & _ADVANCED_TOKENS:
        return Difficulty.ADVANCED
    if tokens & _INTERMEDIATE_TOKENS:
        return Difficulty.INTERMEDIATE
    return Difficulty.BEGINNER


def run_length(round_tokens: Sequence[str]) -> list[tuple[str, int]]:
    runs: list[tuple[str, int]] = []
    for token in round_tokens:
        if runs and runs[-1][0] == token:
            runs[-1] = (token, runs[-1][1] + 1)
        else:
            runs.append((token, 1))
    return runs


def to_written(round_tokens: Sequence[str]) -> str:
    """Run-length written form: ``[sc, sc, sc, inc]`` → ``"3sc, inc"``."""
    return ", ".join(f"{n}{tok}" if n > 1 else tok for tok, n in run_length(round_tokens))


def expansion(round_tokens: Sequence[str]) -> float:
    """Growth of a round: +1 per ``inc``, -0.5 per ``dec``."""
    return sum(1.0 if t == "inc" else -0.5 if t == "dec" else 0.0 for t in round_tokens)
