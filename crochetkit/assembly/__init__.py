"""assembly — the piece/connection graph, its validator and piece factory."""

from crochetkit.assembly.graph import Assembly
from crochetkit.assembly.placement import SnapCandidate, find_snap_candidate
from crochetkit.assembly.templates import (
    available_templates,
    create_custom_piece,
    create_piece_from_template,
)
from crochetkit.assembly.validator import (
    AssemblyIssue,
    AssemblyReport,
    ConnectionCheck,
    check_connection,
    check_invariants,
    connection_confidence,
    rank_point_pairs,
)

__all__ = [
    "Assembly",
    "AssemblyIssue",
    "AssemblyReport",
    "ConnectionCheck",
    "SnapCandidate",
    "available_templates",
    "check_connection",
    "check_invariants",
    "connection_confidence",
    "create_custom_piece",
    "create_piece_from_template",
    "find_snap_candidate",
    "rank_point_pairs",
]
