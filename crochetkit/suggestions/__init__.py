"""suggestions — rule-based piece, connection, pattern and structure suggestions."""

from crochetkit.suggestions.advisor import Suggestion, SuggestionEngine, score
from crochetkit.suggestions.rules import (
    KNOWN_PATTERNS,
    Priority,
    Proposal,
    SuggestionType,
    balance_pattern,
    detect_pattern,
    structural_integrity,
)

__all__ = [
    "KNOWN_PATTERNS",
    "Priority",
    "Proposal",
    "Suggestion",
    "SuggestionEngine",
    "SuggestionType",
    "balance_pattern",
    "detect_pattern",
    "score",
    "structural_integrity",
]
