"""instructions — step-by-step assembly documents and their HTML/Markdown exports."""

from crochetkit.instructions.generator import (
    InstructionDocument,
    InstructionType,
    Section,
    Step,
    estimate_minutes,
    format_time,
    generate_instructions,
)
from crochetkit.instructions.render import export_as_html, export_as_markdown

__all__ = [
    "InstructionDocument",
    "InstructionType",
    "Section",
    "Step",
    "estimate_minutes",
    "export_as_html",
    "export_as_markdown",
    "format_time",
    "generate_instructions",
]
