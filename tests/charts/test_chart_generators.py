"""Tests for charts — the five chart kinds, metadata and export."""

from __future__ import annotations

import json

import pytest

from crochetkit.charts import ChartKind, export_chart, stitch_counts, visualize_pattern
from crochetkit.charts.generators import CENTER

_PATTERN = ["MR", "sc", "sc", "inc", "sc", "sc", "inc"]
_TWO_ROUNDS = ["sc", "sc", "sc", "sl", "sc", "inc", "sc", "inc", "sc", "inc"]


class TestWritten:
    def test_single_round_counts(self):
        chart = visualize_pattern(_PATTERN, "written")
        rounds = chart.body["rounds"]
        assert len(rounds) == 1
        assert rounds[0]["count"] == 8
        assert rounds[0]["written"] == "MR, 2sc, inc, 2sc, inc"
        assert rounds[0]["repeat"] is None
        assert chart.body["totalStitches"] == 8

    def test_repeat_annotated(self):
        chart = visualize_pattern(["sl", "sc", "inc", "sc", "inc"], ChartKind.WRITTEN)
        assert chart.body["rounds"][1]["repeat"] == {"pattern": ["sc", "inc"], "repeats": 2}

    def test_deterministic(self):
        assert visualize_pattern(_PATTERN, "written") == visualize_pattern(_PATTERN, "written")


class TestSymbol:
    def test_ring_layout(self):
        chart = visualize_pattern(_TWO_ROUNDS, "symbol")
        first, second = chart.body["rounds"]
        assert first["arrangement"]["radius"] == 30
        assert second["arrangement"]["radius"] == 55
        top = first["symbols"][0]
        assert (top["x"], top["y"], top["angle"]) == (CENTER, CENTER - 30, -90.0)
        assert top["symbol"] == "X"

    def test_unsymbolized_token(self):
        chart = visualize_pattern(["popcorn"], "symbol")
        assert chart.body["rounds"][0]["symbols"][0]["symbol"] == "?"
        assert chart.legend == ()

    def test_svg_export(self):
        chart = visualize_pattern(_TWO_ROUNDS, "symbol")
        svg = export_chart(chart, "svg")
        assert svg.startswith("<svg") and svg.endswith("</svg>")
        assert svg == chart.body["svg"]


class TestGraph:
    def test_rows_bottom_up_and_centred(self):
        chart = visualize_pattern(["sc", "sl", "sc", "sc", "sc", "inc"], "graph")
        body = chart.body
        assert (body["width"], body["height"]) == (4, 2)
        assert [c["type"] for c in body["grid"][1]] == ["empty", "stitch", "stitch", "empty"]
        assert [c.get("stitch") for c in body["grid"][0]] == ["sc", "sc", "sc", "inc"]


class TestDiagram:
    def test_edges(self):
        chart = visualize_pattern(["sc", "sl", "sc", "inc", "sc", "inc"], "diagram")
        edges = chart.body["connections"]
        worked = [e for e in edges if e["type"] == "worked-into"]
        ring = [e for e in edges if e["type"] == "next-stitch"]
        assert len(chart.body["elements"]) == 6
        assert len(ring) == 6
        # second round of 4 over a first round of 2: i*2//4
        assert [(e["from"], e["to"]) for e in worked] == [(0, 2), (0, 3), (1, 4), (1, 5)]


class TestLayered:
    def test_mesh_faces(self):
        chart = visualize_pattern(_TWO_ROUNDS, "3d")
        layers = chart.body["layers"]
        assert [layer["height"] for layer in layers] == [0, 10]
        mesh = chart.body["mesh"]
        assert len(mesh["vertices"]) == len(mesh["colors"]) == 10
        assert len(mesh["faces"]) == 2 * len(layers[0]["points"])


class TestChartWrapper:
    def test_metadata(self):
        chart = visualize_pattern(_PATTERN, "symbol")
        assert chart.metadata["patternLength"] == 7
        assert chart.metadata["uniqueStitches"] == 3
        assert chart.metadata["difficulty"] == "advanced"
        assert chart.metadata["estimatedSize"]["circumference"] == "4.0 cm"
        assert chart.title == "Symbol Chart"

    def test_pattern_length_counts_blank_tokens(self):
        chart = visualize_pattern(["sc", "", "inc"], "written")
        assert chart.metadata["patternLength"] == 3
        assert chart.metadata["uniqueStitches"] == 2

    def test_legend_sorted_by_name(self):
        chart = visualize_pattern(_PATTERN, "symbol")
        names = [item["name"] for item in chart.legend]
        assert names == sorted(names)
        assert {item["stitch"] for item in chart.legend} == {"MR", "sc", "inc"}

    def test_optional_parts(self):
        chart = visualize_pattern(_PATTERN, "graph", show_legend=False, show_counts=False)
        assert chart.legend is None and chart.counts is None
        assert "legend" not in chart.to_dict()

    def test_stitch_counts(self):
        counts = stitch_counts(["sc", "sc", "sc", "inc"])
        assert counts["byStitch"] == {"sc": 3, "inc": 1}
        assert counts["percentage"] == {"sc": "75.0%", "inc": "25.0%"}

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unknown chart type"):
            visualize_pattern(_PATTERN, "pie")


class TestExport:
    def test_json(self):
        data = json.loads(export_chart(visualize_pattern(_PATTERN, "written"), "json"))
        assert data["type"] == "written"
        assert data["counts"]["total"] == 7

    def test_placeholder_svg_for_other_kinds(self):
        svg = export_chart(visualize_pattern(_PATTERN, "graph"), "svg")
        assert "Chart: Graph Chart" in svg

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            export_chart(visualize_pattern(_PATTERN, "graph"), "png")
