"""
SuggestionEngine: scores, orders and caches rule proposals.

Results are cached per ``(assembly id, assembly version, context)`` for a
short TTL, so repeated calls against an unchanged assembly return the very
same suggestions (same ids, same order).  Any accepted mutation bumps the
version and therefore misses the cache.
"""

from __future__ import annotations

import json
import logging
import random
from collections import Counter, deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from crochetkit.assembly import Assembly
from crochetkit.events import wall_clock
from crochetkit.schemas.piece import Piece
from crochetkit.suggestions.rules import (
    Priority,
    Proposal,
    SuggestionType,
    connection_rules,
    optimization_rules,
    pattern_rules,
    piece_rules,
    structural_rules,
)
from crochetkit.utilities.ids import random_token

logger = logging.getLogger(__name__)

LARGE_ASSEMBLY = 20


@dataclass(frozen=True)
class Suggestion:
    id: str  # "<type>-<epoch ms>-<5 base-36 chars>"
    type: SuggestionType
    priority: Priority
    confidence: float
    reason: str
    timestamp: int
    details: Mapping[str, Any] = field(default_factory=dict)
    pattern_context: str | None = None
    learned: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "priority": self.priority.value,
            "confidence": self.confidence,
            "reason": self.reason,
            "timestamp": self.timestamp,
            "patternContext": self.pattern_context,
            "learned": self.learned,
            "details": dict(self.details),
        }


def score(proposal: Proposal, piece_count: int) -> float:
    """
    Confidence in [0, 1].

    Base 0.5; +0.2 for high priority or +0.1 for medium; +0.15 when a known
    pattern was recognized; +0.1 when learned from history; -0.1 for
    assemblies of more than 20 pieces.
    """
    confidence = 0.5
    if proposal.priority == Priority.HIGH:
        confidence += 0.2
    elif proposal.priority == Priority.MEDIUM:
        confidence += 0.1
    if proposal.pattern_context:
        confidence += 0.15
    if proposal.learned:
        confidence += 0.1
    if piece_count > LARGE_ASSEMBLY:
        confidence -= 0.1
    return round(min(max(confidence, 0.0), 1.0), 4)


class SuggestionEngine:
    """
    Rule-based assembly suggestions with learned preferences.

    Parameters
    ----------
    clock, rng:
        Epoch-ms time source and randomness for ids and the learned piece rule.
    ttl_seconds:
        How long a cached suggestion list stays valid.
    history_size:
        Number of recorded connections kept for the historical rule.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], int] = wall_clock,
        rng: random.Random | None = None,
        ttl_seconds: float = 3.0,
        history_size: int = 100,
    ) -> None:
        self._clock = clock
        self._rng = rng if rng is not None else random.Random()
        self._ttl_ms = ttl_seconds * 1000
        self._cache: dict[tuple[str, int, str], tuple[int, tuple[Suggestion, ...]]] = {}
        self.connection_history: deque[dict[str, Any]] = deque(maxlen=history_size)
        self.piece_usage: Counter[str] = Counter()

    def generate(self, assembly: Assembly, context: Mapping[str, Any] | None = None) -> list[Suggestion]:
        """
        Suggestions for *assembly*, highest priority first, then by confidence.

        ``context["type"]`` restricts the result to one suggestion type.

        Raises
        ------
        ValueError
            If ``context["type"]`` is not a suggestion type.
        """
        context = dict(context or {})
        wanted = context.get("type")
        if wanted is not None:
            wanted = SuggestionType(wanted)
        key = (assembly.id, assembly.version, json.dumps(context, sort_keys=True, default=str))
        now = self._clock()
        self._expire(now)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached[1])

        proposals: list[Proposal] = []
        if wanted in (None, SuggestionType.PIECE):
            proposals += piece_rules(assembly, self.piece_usage, self._rng)
        if wanted in (None, SuggestionType.CONNECTION):
            proposals += connection_rules(assembly, list(self.connection_history))
        if wanted in (None, SuggestionType.PATTERN):
            proposals += pattern_rules(assembly)
        if wanted in (None, SuggestionType.STRUCTURAL):
            proposals += structural_rules(assembly)
        if wanted in (None, SuggestionType.OPTIMIZATION):
            proposals += optimization_rules(assembly)

        count = len(assembly.pieces)
        scored = [(p, score(p, count)) for p in proposals]
        scored.sort(key=lambda item: (item[0].priority.rank, -item[1]))
        suggestions = tuple(
            Suggestion(
                id=f"{p.type.value}-{now}-{random_token(self._rng, 5)}",
                type=p.type,
                priority=p.priority,
                confidence=confidence,
                reason=p.reason,
                timestamp=now,
                details=p.details,
                pattern_context=p.pattern_context,
                learned=p.learned,
            )
            for p, confidence in scored
        )
        self._cache[key] = (now, suggestions)
        logger.debug("generated %d suggestions for %s@v%d", len(suggestions), assembly.id, assembly.version)
        return list(suggestions)

    def _expire(self, now: int) -> None:
        stale = [k for k, (ts, _) in self._cache.items() if now - ts >= self._ttl_ms]
        for k in stale:
            del self._cache[k]

    def clear_cache(self) -> None:
        self._cache.clear()

    # ── Learning ──────────────────────────────────────────────────────────────

    def record_connection(self, from_piece: Piece, from_point: str, to_piece: Piece, to_point: str) -> None:
        """Remember a made connection by piece types and point names."""
        point_a = from_piece.point(from_point)
        point_b = to_piece.point(to_point)
        self.connection_history.append(
            {
                "fromType": from_piece.type,
                "fromPoint": point_a.name if point_a else from_point,
                "toType": to_piece.type,
                "toPoint": point_b.name if point_b else to_point,
                "timestamp": self._clock(),
            }
        )

    def record_piece_usage(self, piece_type: str) -> None:
        self.piece_usage[piece_type] += 1

    def export_suggestions(self, suggestions: Sequence[Suggestion]) -> dict[str, Any]:
        """Counts per type plus the learned-state sizes, for reporting."""
        by_type = Counter(s.type for s in suggestions)
        return {
            "timestamp": datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc).isoformat(),
            "count": len(suggestions),
            "byType": {t.value: by_type[t] for t in SuggestionType},
            "suggestions": [s.to_dict() for s in suggestions],
            "connectionHistorySize": len(self.connection_history),
            "pieceUsage": dict(self.piece_usage),
        }
