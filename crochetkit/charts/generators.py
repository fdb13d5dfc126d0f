"""
Chart body generators.

Each generator turns a list of rounds (see ``crochetkit.pattern.group_into_rounds``)
into the kind-specific part of a chart as plain JSON-ready data.  Geometry is
laid out on a 400×400 canvas centred at (200, 200) for the flat kinds and
around the origin for the layered 3D mesh.  Coordinates are rounded to two
decimals so identical patterns always produce identical charts.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from typing import Any

from crochetkit.pattern import expansion, find_repeat, stitch_count, to_written
from crochetkit.registry import StitchEntry

CANVAS = 400
CENTER = CANVAS / 2
FALLBACK_COLOR = "#666666"

Rounds = Sequence[Sequence[str]]


def _xy(value: float) -> float:
    return round(value, 2)


def _polar(index: int, count: int, radius: float) -> tuple[float, float, float]:
    """Position of stitch *index* of *count* on a ring, starting at the top."""
    angle = index * 2 * math.pi / count - math.pi / 2
    return (
        _xy(CENTER + math.cos(angle) * radius),
        _xy(CENTER + math.sin(angle) * radius),
        _xy(math.degrees(angle)),
    )


def _look(token: str, stitches: Mapping[str, StitchEntry]) -> tuple[str, str, str]:
    """(symbol, unicode, color) for *token*, with fallbacks for unsymbolized tokens."""
    entry = stitches.get(token)
    if entry is None or entry.symbol is None:
        return "?", token, entry.color if entry and entry.color else FALLBACK_COLOR
    return entry.symbol, entry.unicode or entry.symbol, entry.color or FALLBACK_COLOR


# ── Written ───────────────────────────────────────────────────────────────────


def written_chart(rounds: Rounds, stitches: Mapping[str, StitchEntry]) -> dict[str, Any]:
    """Run-length written rounds with stitch counts and detected repeats."""
    rows = []
    for number, tokens in enumerate(rounds, start=1):
        repeat = find_repeat(tokens)
        rows.append(
            {
                "number": number,
                "stitches": list(tokens),
                "written": to_written(tokens),
                "count": stitch_count(tokens, stitches),
                "repeat": (
                    {"pattern": list(repeat.pattern), "repeats": repeat.repeats}
                    if repeat
                    else None
                ),
            }
        )
    return {
        "title": "Written Pattern",
        "rounds": rows,
        "totalStitches": sum(r["count"] for r in rows),
    }


# ── Symbol ────────────────────────────────────────────────────────────────────


def symbol_radius(round_index: int) -> float:
    return 30 + round_index * 25


def symbol_chart(rounds: Rounds, stitches: Mapping[str, StitchEntry]) -> dict[str, Any]:
    rows = []
    for r, tokens in enumerate(rounds):
        radius = symbol_radius(r)
        symbols = []
        for i, token in enumerate(tokens):
            symbol, uni, color = _look(token, stitches)
            x, y, angle = _polar(i, len(tokens), radius)
            symbols.append(
                {"stitch": token, "symbol": symbol, "unicode": uni, "color": color,
                 "x": x, "y": y, "angle": angle}
            )
        rows.append(
            {
                "number": r + 1,
                "symbols": symbols,
                "arrangement": {
                    "radius": radius,
                    "angleStep": _xy(360 / len(tokens)),
                    "startAngle": -90,
                },
            }
        )
    return {"title": "Symbol Chart", "rounds": rows, "svg": render_svg(rows, stitches)}


def render_svg(symbol_rounds: Sequence[Mapping[str, Any]], stitches: Mapping[str, StitchEntry]) -> str:
    """Literal ``<svg>`` document for the symbol rounds."""
    parts = [
        f'<svg width="{CANVAS}" height="{CANVAS}" xmlns="http://www.w3.org/2000/svg">',
        f'<rect width="{CANVAS}" height="{CANVAS}" fill="#f9f9f9"/>',
    ]
    for row in symbol_rounds:
        for sym in row["symbols"]:
            entry = stitches.get(sym["stitch"])
            if entry is not None and entry.svg:
                parts.append(f'<g transform="translate({_xy(sym["x"] - 10)}, {_xy(sym["y"] - 10)})">')
                parts.append(
                    f'<path d="{entry.svg}" stroke="{sym["color"]}" stroke-width="2" fill="none"/>'
                )
                parts.append("</g>")
            else:
                parts.append(f'<circle cx="{sym["x"]}" cy="{sym["y"]}" r="5" fill="#999"/>')
        radius = row["arrangement"]["radius"]
        parts.append(
            f'<circle cx="{CENTER:g}" cy="{CENTER:g}" r="{radius}" stroke="#ddd" '
            'stroke-width="1" fill="none"/>'
        )
    parts.append(f'<circle cx="{CENTER:g}" cy="{CENTER:g}" r="3" fill="#333"/>')
    parts.append("</svg>")
    return "".join(parts)


# ── Graph ─────────────────────────────────────────────────────────────────────


_EMPTY_CELL = {"type": "empty", "symbol": ""}


def graph_chart(rounds: Rounds, stitches: Mapping[str, StitchEntry]) -> dict[str, Any]:
    """
    Rectangular grid, one row per round, shorter rounds centred.

    Rows are stored bottom-up: ``grid[0]`` is the last round and
    ``grid[-1]`` the first, the way the chart is read.
    """
    width = max((len(r) for r in rounds), default=0)
    grid: list[list[dict[str, Any]]] = []
    for tokens in rounds:
        padding = (width - len(tokens)) // 2
        row = [dict(_EMPTY_CELL) for _ in range(padding)]
        for token in tokens:
            symbol, _, color = _look(token, stitches)
            row.append(
                {"type": "stitch", "stitch": token,
                 "symbol": token if symbol == "?" else symbol, "color": color}
            )
        row.extend(dict(_EMPTY_CELL) for _ in range(width - len(row)))
        grid.insert(0, row)
    return {"title": "Graph Chart", "width": width, "height": len(rounds), "grid": grid}


# ── Diagram ───────────────────────────────────────────────────────────────────


def diagram_radius(round_index: int) -> float:
    return 50 + round_index * 30


def diagram_chart(rounds: Rounds, stitches: Mapping[str, StitchEntry]) -> dict[str, Any]:
    """
    Stitch nodes on concentric rings with two edge kinds.

    ``next-stitch`` links consecutive stitches of a round (closing the ring);
    ``worked-into`` links stitch ``i`` of a round to stitch
    ``floor(i * prev / cur)`` of the round below.
    """
    elements: list[dict[str, Any]] = []
    edges: list[dict[str, Any]] = []
    previous: list[int] = []
    for r, tokens in enumerate(rounds):
        current: list[int] = []
        for i, token in enumerate(tokens):
            symbol, _, color = _look(token, stitches)
            x, y, _ = _polar(i, len(tokens), diagram_radius(r))
            node_id = len(elements)
            elements.append(
                {"id": node_id, "stitch": token, "round": r + 1,
                 "position": {"x": x, "y": y},
                 "symbol": token if symbol == "?" else symbol, "color": color}
            )
            if previous:
                below = previous[i * len(previous) // len(tokens)]
                edges.append({"from": below, "to": node_id, "type": "worked-into"})
            current.append(node_id)
        for i, node_id in enumerate(current):
            edges.append(
                {"from": node_id, "to": current[(i + 1) % len(current)], "type": "next-stitch"}
            )
        previous = current
    return {"title": "Stitch Diagram", "elements": elements, "connections": edges}


# ── Layered 3D ────────────────────────────────────────────────────────────────

LAYER_HEIGHT = 10


def layer_radius(round_tokens: Sequence[str], round_index: int) -> float:
    return 20 + round_index * 15 + expansion(round_tokens) * 5


def layered_chart(rounds: Rounds, stitches: Mapping[str, StitchEntry]) -> dict[str, Any]:
    """
    One polygonal ring per round stacked along y, triangulated ring to ring.

    Each stitch of a lower ring forms a quad with its neighbour and the
    matching stitches of the ring above (indices taken modulo the upper ring
    size); every quad is emitted as two triangles.
    """
    vertices: list[dict[str, float]] = []
    colors: list[str] = []
    layers: list[dict[str, Any]] = []
    for r, tokens in enumerate(rounds):
        radius = layer_radius(tokens, r)
        y = r * LAYER_HEIGHT
        points = []
        for i, token in enumerate(tokens):
            angle = i * 2 * math.pi / len(tokens)
            position = {"x": _xy(math.cos(angle) * radius), "y": y, "z": _xy(math.sin(angle) * radius)}
            points.append({"stitch": token, "position": position, "vertexIndex": len(vertices)})
            vertices.append(position)
            colors.append(_look(token, stitches)[2])
        layers.append({"round": r + 1, "height": y, "radius": _xy(radius), "points": points})

    faces: list[list[int]] = []
    for lower, upper in zip(layers, layers[1:]):
        low, up = lower["points"], upper["points"]
        for i in range(len(low)):
            nxt = (i + 1) % len(low)
            top = i % len(up)
            top_next = (i + 1) % len(up)
            faces.append([low[i]["vertexIndex"], low[nxt]["vertexIndex"], up[top]["vertexIndex"]])
            faces.append([low[nxt]["vertexIndex"], up[top_next]["vertexIndex"], up[top]["vertexIndex"]])
    return {
        "title": "3D Pattern Visualization",
        "layers": layers,
        "mesh": {"vertices": vertices, "faces": faces, "colors": colors},
    }
