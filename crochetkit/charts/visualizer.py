"""
Pattern visualization entry points.

``visualize_pattern`` groups a pattern into rounds, dispatches to the
generator for the requested ChartKind and wraps the result in a frozen
Chart carrying metadata, legend and stitch counts.  ``export_chart`` turns a
chart into an SVG document or a JSON string.
"""

from __future__ import annotations

import json
import logging
import math
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from html import escape
from types import MappingProxyType
from typing import Any

from crochetkit.charts.generators import (
    CANVAS,
    diagram_chart,
    graph_chart,
    layered_chart,
    symbol_chart,
    written_chart,
)
from crochetkit.pattern import assess_difficulty, group_into_rounds, normalize_pattern, stitch_count
from crochetkit.registry import StitchEntry, get_registry

logger = logging.getLogger(__name__)

CM_PER_STITCH = 0.5
CM_PER_ROUND = 0.8


class ChartKind(str, Enum):
    WRITTEN = "written"
    SYMBOL = "symbol"
    GRAPH = "graph"
    DIAGRAM = "diagram"
    LAYERED_3D = "3d"


_GENERATORS: dict[ChartKind, Callable[..., dict[str, Any]]] = {
    ChartKind.WRITTEN: written_chart,
    ChartKind.SYMBOL: symbol_chart,
    ChartKind.GRAPH: graph_chart,
    ChartKind.DIAGRAM: diagram_chart,
    ChartKind.LAYERED_3D: layered_chart,
}


@dataclass(frozen=True)
class Chart:
    """
    A generated chart.

    body:     kind-specific data (rounds, grid, elements, mesh…) plus ``title``.
    metadata: ``{patternLength, uniqueStitches, difficulty, estimatedSize}``; ``patternLength``
              counts the tokens as given, blank ones included.
    legend:   one entry per symbolized stitch used, sorted by name; None if not requested.
    counts:   ``{total, byStitch, percentage}``; None if not requested.
    """

    kind: ChartKind
    body: Mapping[str, Any]
    metadata: Mapping[str, Any]
    legend: tuple[Mapping[str, Any], ...] | None = None
    counts: Mapping[str, Any] | None = None

    @property
    def title(self) -> str:
        return str(self.body.get("title", self.kind.value))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.kind.value, **self.body, "metadata": dict(self.metadata)}
        if self.legend is not None:
            data["legend"] = [dict(item) for item in self.legend]
        if self.counts is not None:
            data["counts"] = dict(self.counts)
        return data


def estimate_size(rounds: Sequence[Sequence[str]], stitches: Mapping[str, StitchEntry]) -> dict[str, Any]:
    """Rough finished size from the last round's stitch count and the number of rounds."""
    last = rounds[-1] if rounds else []
    circumference = stitch_count(last, stitches) * CM_PER_STITCH
    height = len(rounds) * CM_PER_ROUND
    return {
        "circumference": f"{circumference:.1f} cm",
        "height": f"{height:.1f} cm",
        "diameter": f"{circumference / math.pi:.1f} cm",
        "rounds": len(rounds),
    }


def generate_legend(pattern: Sequence[str], stitches: Mapping[str, StitchEntry]) -> tuple[dict[str, Any], ...]:
    legend = []
    for token in dict.fromkeys(pattern):
        entry = stitches.get(token)
        if entry is None or entry.symbol is None:
            continue
        legend.append(
            {
                "stitch": token,
                "symbol": entry.symbol,
                "unicode": entry.unicode or entry.symbol,
                "name": entry.name,
                "abbr": entry.abbr,
                "color": entry.color,
            }
        )
    return tuple(sorted(legend, key=lambda item: item["name"]))


def stitch_counts(pattern: Sequence[str]) -> dict[str, Any]:
    """Occurrences per token and their share of the pattern as ``"x.x%"`` strings."""
    counts = Counter(pattern)
    total = len(pattern)
    return {
        "total": total,
        "byStitch": dict(counts),
        "percentage": {token: f"{n / total * 100:.1f}%" for token, n in counts.items()},
    }


def visualize_pattern(
    pattern: Sequence[str],
    kind: ChartKind | str = ChartKind.SYMBOL,
    *,
    show_legend: bool = True,
    show_counts: bool = True,
    window: int = 6,
    stitches: Mapping[str, StitchEntry] | None = None,
) -> Chart:
    """
    Generate a chart of *pattern*.

    Parameters
    ----------
    pattern:
        Stitch tokens, in working order.
    kind:
        Chart kind or its string value (``"written"``, ``"symbol"``, ``"graph"``,
        ``"diagram"``, ``"3d"``).
    show_legend, show_counts:
        Whether to attach the legend and the stitch counts.
    window:
        Fallback round length used when grouping rounds.
    stitches:
        Stitch table; the registry's when None.

    Returns
    -------
    Chart

    Raises
    ------
    ValueError
        If *kind* is not a known chart kind.
    """
    try:
        kind = ChartKind(kind)
    except ValueError:
        raise ValueError(f"Unknown chart type: {kind!r}") from None
    table = stitches if stitches is not None else get_registry().stitches
    tokens = normalize_pattern(pattern)
    rounds = group_into_rounds(tokens, window=window, stitches=table)
    logger.debug("charting %d tokens in %d rounds as %s", len(tokens), len(rounds), kind.value)

    body = _GENERATORS[kind](rounds, table)
    metadata = {
        "type": kind.value,
        "patternLength": len(pattern),
        "uniqueStitches": len(set(tokens)),
        "difficulty": assess_difficulty(tokens).value,
        "estimatedSize": estimate_size(rounds, table),
    }
    return Chart(
        kind=kind,
        body=MappingProxyType(body),
        metadata=MappingProxyType(metadata),
        legend=generate_legend(tokens, table) if show_legend else None,
        counts=MappingProxyType(stitch_counts(tokens)) if show_counts else None,
    )


def export_chart(chart: Chart, fmt: str = "svg") -> str:
    """
    Serialize *chart* as ``"svg"`` or ``"json"``.

    Symbol charts export their own SVG; other kinds export a titled placeholder.

    Raises
    ------
    ValueError
        If *fmt* is not ``"svg"`` or ``"json"``.
    """
    match fmt:
        case "svg":
            svg = chart.body.get("svg")
            if svg:
                return str(svg)
            half = CANVAS // 2
            return (
                f'<svg width="{CANVAS}" height="{CANVAS}" xmlns="http://www.w3.org/2000/svg">'
                f'<text x="{half}" y="{half}" text-anchor="middle">Chart: {escape(chart.title)}</text>'
                "</svg>"
            )
        case "json":
            return json.dumps(chart.to_dict(), indent=2, ensure_ascii=False)
        case _:
            raise ValueError(f"Unsupported chart export format: {fmt!r}")
