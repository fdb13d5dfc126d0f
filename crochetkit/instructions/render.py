"""
HTML and Markdown exporters for InstructionDocument.

Both walk the sections in order.  Mapping content renders as bold labels
(lists become bullet lists under the label), list content as a bullet list,
and steps as an ordered list in HTML or ``###`` headings in Markdown.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime
from html import escape
from typing import Any

from crochetkit.instructions.generator import InstructionDocument, Section, Step

_STYLE = (
    "body { font-family: Arial, sans-serif; max-width: 800px; margin: 0 auto; padding: 20px; }"
    " h2 { border-bottom: 2px solid #eee; padding-bottom: 5px; }"
    " .tip { background: #fff3cd; padding: 10px; border-left: 3px solid #ffc107; }"
)


def format_title(key: str) -> str:
    """``estimatedTime`` → ``Estimated Time``."""
    spaced = re.sub(r"([A-Z])", r" \1", key)
    return spaced[:1].upper() + spaced[1:]


def _date(doc: InstructionDocument) -> str:
    return datetime.fromisoformat(doc.generated).date().isoformat()


# ── HTML ──────────────────────────────────────────────────────────────────────


def _html_content(content: Mapping[str, Any] | tuple[str, ...]) -> str:
    if not isinstance(content, Mapping):
        if not content:
            return ""
        return "<ul>" + "".join(f"<li>{escape(str(item))}</li>" for item in content) + "</ul>"
    parts = []
    for key, value in content.items():
        label = escape(format_title(key))
        if isinstance(value, (list, tuple)):
            items = "".join(f"<li>{escape(str(item))}</li>" for item in value)
            parts.append(f"<h4>{label}</h4><ul>{items}</ul>")
        else:
            parts.append(f"<p><strong>{label}:</strong> {escape(str(value))}</p>")
    return "".join(parts)


def _html_step(step: Step) -> str:
    parts = [f"<li><h3>{escape(step.title)}</h3>"]
    if step.description:
        parts.append(f"<p>{escape(step.description)}</p>")
    if step.substeps:
        parts.append("<ol>")
        parts.extend(f"<li>{escape(str(s['instruction']))} ({s['stitchCount']} sts)</li>" for s in step.substeps)
        parts.append("</ol>")
    if step.tips:
        parts.append(f'<div class="tip">Tip: {escape(" ".join(step.tips))}</div>')
    parts.append("</li>")
    return "".join(parts)


def _html_section(section: Section) -> str:
    body = _html_content(section.content)
    if section.steps:
        body += "<ol>" + "".join(_html_step(s) for s in section.steps) + "</ol>"
    return f'<div class="section"><h2>{escape(section.title)}</h2>{body}</div>'


def export_as_html(doc: InstructionDocument) -> str:
    name = escape(doc.assembly_name)
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n"
        f"<title>{name} Instructions</title>\n<style>{_STYLE}</style>\n</head>\n<body>\n"
        f"<h1>{name} - Crochet Instructions</h1>\n"
        f"<p>Generated: {_date(doc)}</p>\n"
        + "\n".join(_html_section(s) for s in doc.sections)
        + "\n</body>\n</html>\n"
    )


# ── Markdown ──────────────────────────────────────────────────────────────────


def _md_content(content: Mapping[str, Any] | tuple[str, ...]) -> str:
    if not isinstance(content, Mapping):
        return "\n".join(f"- {item}" for item in content)
    lines = []
    for key, value in content.items():
        if isinstance(value, (list, tuple)):
            lines.append(f"**{format_title(key)}:**")
            lines.extend(f"- {item}" for item in value)
        else:
            lines.append(f"**{format_title(key)}:** {value}")
    return "\n".join(lines)


def _md_step(step: Step) -> str:
    lines = [f"### Step {step.number}: {step.title}", ""]
    if step.description:
        lines += [step.description, ""]
    if step.pattern:
        lines += [f"**Pattern:** {', '.join(step.pattern)}", ""]
    if step.substeps:
        lines += [f"{i}. {s['instruction']} ({s['stitchCount']} sts)" for i, s in enumerate(step.substeps, 1)]
        lines.append("")
    if step.tips:
        lines += [f"> **Tip:** {' '.join(step.tips)}", ""]
    return "\n".join(lines)


def export_as_markdown(doc: InstructionDocument) -> str:
    out = [f"# {doc.assembly_name} - Crochet Instructions", "", f"*Generated: {_date(doc)}*", ""]
    for section in doc.sections:
        out += [f"## {section.title}", ""]
        body = _md_content(section.content)
        if body:
            out += [body, ""]
        out.extend(_md_step(step) for step in section.steps)
    return "\n".join(out).rstrip() + "\n"
