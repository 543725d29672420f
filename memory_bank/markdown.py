"""
Import and export of the plain-Markdown memory bank layout.

Each category lives in its own file, one entry per ``[TYPE:YYYY-MM-DD]``
marker::

    # Decision Log

    [DECISION:2025-01-01] Use SQLite for storage

    [DECISION:2025-01-03] Quantize embeddings to one bit per dimension
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .models import CATEGORIES, MemoryEntry
from .store.memory_store import MemoryStore

logger = logging.getLogger(__name__)

FILENAME_TO_CATEGORY: dict[str, str] = {
    "activeContext.md": "CONTEXT",
    "decisionLog.md": "DECISION",
    "progress.md": "PROGRESS",
    "systemPatterns.md": "PATTERN",
    "projectBrief.md": "BRIEF",
}
CATEGORY_TO_FILENAME = {v: k for k, v in FILENAME_TO_CATEGORY.items()}

_TAG_RE = re.compile(r"\[([A-Z_]+):(\d{4}-\d{2}-\d{2})\]")
_EXPORT_LIMIT = 10_000


@dataclass
class ImportResult:
    created: int = 0
    skipped: int = 0
    files: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.created > 0 and not self.errors


@dataclass
class ExportResult:
    files: list[str] = field(default_factory=list)
    exported: int = 0
    errors: list[str] = field(default_factory=list)


def _title_for(filename: str) -> str:
    stem = filename[:-3] if filename.endswith(".md") else filename
    words = re.sub(r"([A-Z])", r" \1", stem).strip()
    return words[:1].upper() + words[1:]


def parse_markdown(text: str) -> list[MemoryEntry]:
    """
    Split a Markdown memory file into entries.

    Lines following a marker belong to that entry until the next marker.
    Markers naming an unknown category end the previous entry and are
    otherwise ignored, as are lines before the first marker.
    """
    entries: list[MemoryEntry] = []
    current: Optional[tuple[str, str]] = None
    buffer: list[str] = []

    def _flush() -> None:
        body = "\n".join(buffer).strip()
        if current is not None and body:
            category, date = current
            entries.append(MemoryEntry(
                category=category,
                content=body,
                timestamp=f"{date}T00:00:00Z",
                tag=f"{category}:{date}",
            ))

    for line in text.split("\n"):
        match = _TAG_RE.search(line)
        if match:
            _flush()
            buffer = []
            category, date = match.group(1), match.group(2)
            current = (category, date) if category in CATEGORIES else None
            rest = line[match.end():].strip()
            if current is not None and rest:
                buffer.append(rest)
        elif current is not None and line.strip():
            buffer.append(line)
    _flush()
    return entries


def import_markdown_dir(
    directory: str,
    store: MemoryStore,
    filenames: Iterable[str] = tuple(FILENAME_TO_CATEGORY),
) -> ImportResult:
    """
    Append the entries of every Markdown memory file in *directory*.

    Entries repeating an earlier ``(category, tag, first 50 chars)`` key
    within the same import are skipped.  Missing files are ignored.
    """
    result = ImportResult()
    seen: set[tuple[str, str, str]] = set()
    for name in filenames:
        path = os.path.join(directory, name)
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as exc:
            result.errors.append(f"Failed to read {name}: {exc}")
            continue
        result.files.append(name)
        for entry in parse_markdown(text):
            key = (entry.category, entry.tag, entry.content[:50])
            if key in seen:
                result.skipped += 1
                continue
            seen.add(key)
            if store.append_entry(entry) is not None:
                result.created += 1
            else:
                result.skipped += 1
    logger.info("[Markdown] Imported %d entries from %d files (%d skipped)",
                result.created, len(result.files), result.skipped)
    return result


def export_markdown(store: MemoryStore, directory: str) -> ExportResult:
    """Write one Markdown file per category, entries oldest first."""
    result = ExportResult()
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as exc:
        result.errors.append(f"Failed to create directory: {exc}")
        return result

    for category, name in CATEGORY_TO_FILENAME.items():
        entries = store.query_by_type(category, _EXPORT_LIMIT)
        entries.sort(key=lambda e: (e.timestamp, e.id or 0))
        blocks = [f"[{e.category}:{e.date}] {e.content}" for e in entries]
        body = f"# {_title_for(name)}\n\n"
        if blocks:
            body += "\n\n".join(blocks) + "\n"
        try:
            with open(os.path.join(directory, name), "w", encoding="utf-8") as f:
                f.write(body)
        except OSError as exc:
            result.errors.append(f"Failed to export {name}: {exc}")
            continue
        result.files.append(name)
        result.exported += len(entries)
    logger.info("[Markdown] Exported %d entries to %s", result.exported, directory)
    return result
