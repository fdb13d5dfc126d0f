"""charts — written, symbol, graph, diagram and layered 3D pattern charts."""

from crochetkit.charts.visualizer import (
    Chart,
    ChartKind,
    estimate_size,
    export_chart,
    generate_legend,
    stitch_counts,
    visualize_pattern,
)

__all__ = [
    "Chart",
    "ChartKind",
    "estimate_size",
    "export_chart",
    "generate_legend",
    "stitch_counts",
    "visualize_pattern",
]
