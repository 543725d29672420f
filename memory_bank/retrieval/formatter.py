"""
Rendering of memory entries into compact Markdown for prompt injection.
"""

from __future__ import annotations

import re
from typing import Iterable

import yaml

from ..models import MemoryEntry

# Indented list items, headings and code fences keep their leading whitespace.
_INDENTED_STRUCTURE = re.compile(r"^\s+[-*#`]")


def strip_whitespace(content: str) -> str:
    """
    Normalise whitespace while keeping document structure.

    Lines are trimmed (indented list and code lines keep their indent),
    runs of blank lines collapse to one, and leading and trailing blank
    lines are removed.
    """
    lines: list[str] = []
    blank_run = 0
    for line in (content or "").split("\n"):
        line = line.rstrip() if _INDENTED_STRUCTURE.match(line) else line.strip()
        if not line:
            blank_run += 1
            if blank_run > 1:
                continue
        else:
            blank_run = 0
        lines.append(line)

    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


def entry_title(entry: MemoryEntry) -> str:
    """First non-blank line of the content, or the tag when content is empty."""
    body = strip_whitespace(entry.content)
    return body.split("\n", 1)[0].strip() if body else entry.tag


def format_entry(entry: MemoryEntry) -> str:
    """``[tag] title`` header, normalised content and a separator."""
    return f"[{entry.tag}] {entry_title(entry)}\n\n{strip_whitespace(entry.content)}\n\n---\n"


def format_budget_entry(entry: MemoryEntry) -> str:
    """Per-entry template used by the context budget allocator."""
    return (
        f"## {entry.category} ({entry.date})\n"
        f"**Tag:** {entry.tag}\n\n"
        f"{strip_whitespace(entry.content)}\n\n---\n"
    )


def format_entries(entries: Iterable[MemoryEntry]) -> str:
    return "\n".join(format_entry(e) for e in entries)


def entry_summary(entry: MemoryEntry) -> dict:
    """Descriptive fields of an entry, plus its stored metadata."""
    summary = {
        "category": entry.category,
        "timestamp": entry.timestamp,
        "title": entry_title(entry),
        "content_length": len(entry.content),
        "content_lines": len(entry.content.split("\n")),
    }
    if entry.phase:
        summary["phase"] = entry.phase
    if entry.progress_status:
        summary["progress_status"] = entry.progress_status
    if entry.metadata:
        summary["metadata"] = entry.metadata
    return summary


def format_metadata_yaml(entry: MemoryEntry) -> str:
    """Front-matter style YAML block describing *entry*."""
    body = yaml.safe_dump(entry_summary(entry), sort_keys=False,
                          default_flow_style=False, allow_unicode=True)
    return f"---\n{body}---"


def parse_metadata_yaml(text: str) -> dict:
    """Inverse of :func:`format_metadata_yaml`; empty dict for anything unparsable."""
    if not text or "---" not in text:
        return {}
    body = text.strip()
    if body.startswith("---"):
        body = body[3:]
    if body.endswith("---"):
        body = body[:-3]
    try:
        data = yaml.safe_load(body)
    except yaml.YAMLError:
        return {}
    return data if isinstance(data, dict) else {}
