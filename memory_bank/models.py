"""
Data model for persisted memory entries and query-scoped results.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# ---------------------------------------------------------------------------
# Closed vocabularies
# ---------------------------------------------------------------------------

CATEGORIES: tuple[str, ...] = (
    "CONTEXT",
    "DECISION",
    "PROGRESS",
    "PATTERN",
    "BRIEF",
    "RESEARCH_REPORT",
    "PLAN_REPORT",
    "EXECUTION_REPORT",
)

PHASES: tuple[str, ...] = ("research", "planning", "execution", "checkpoint")

PROGRESS_STATUSES: tuple[str, ...] = ("done", "in-progress", "draft", "deprecated")

# Fields an edit may change.  category, timestamp and id are immutable.
MUTABLE_FIELDS: tuple[str, ...] = (
    "content", "tag", "phase", "progress_status", "metadata",
)


def utc_now_iso() -> str:
    """Current UTC instant as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are treated as UTC.

    Returns None when *value* cannot be parsed.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def default_tag(category: str, timestamp: str) -> str:
    """Build the conventional ``{category}:{date}`` label."""
    return f"{category}:{(timestamp or utc_now_iso())[:10]}"


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

@dataclass
class MemoryEntry:
    """One unit of persisted agent memory.

    ``id`` is assigned by the store on append.  ``embedding`` holds the
    48-byte quantized vector once the background worker has produced it;
    None means "pending" and is a normal state.
    """

    category: str
    content: str
    timestamp: str = ""
    tag: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    phase: Optional[str] = None
    progress_status: Optional[str] = None
    embedding: Optional[bytes] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        self.category = (self.category or "").upper()
        if not self.timestamp:
            self.timestamp = utc_now_iso()
        if not self.tag:
            self.tag = default_tag(self.category, self.timestamp)
        if self.metadata is None:
            self.metadata = {}

    @property
    def date(self) -> str:
        """The ``YYYY-MM-DD`` part of the timestamp."""
        return self.timestamp[:10]

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def metadata_json(self) -> str:
        return json.dumps(self.metadata or {}, default=str, sort_keys=True)

    @classmethod
    def from_row(cls, row: Any) -> "MemoryEntry":
        """Build an entry from a ``sqlite3.Row`` (or any mapping)."""
        raw_meta = row["metadata"]
        try:
            metadata = json.loads(raw_meta) if raw_meta else {}
        except (json.JSONDecodeError, TypeError):
            metadata = {}
        if not isinstance(metadata, dict):
            metadata = {"value": metadata}
        embedding = row["embedding"]
        return cls(
            id=row["id"],
            category=row["category"],
            timestamp=row["timestamp"],
            tag=row["tag"],
            content=row["content"],
            metadata=metadata,
            phase=row["phase"],
            progress_status=row["progress_status"],
            embedding=bytes(embedding) if embedding is not None else None,
        )


# ---------------------------------------------------------------------------
# Query-scoped results (never persisted)
# ---------------------------------------------------------------------------

@dataclass
class ScoredCandidate:
    """A memory entry paired with a relevance score and its justification."""

    entry: MemoryEntry
    score: float
    reason: str = ""
    keyword_score: float = 0.0
    recency_score: float = 1.0
    priority: float = 1.0


@dataclass
class SearchHit:
    """A single semantic search result."""

    entry: MemoryEntry
    score: float
    reason: str
    semantic_score: float = 0.5
    keyword_score: float = 0.0


@dataclass
class ContextSelection:
    """Allocator output: the entries chosen for a budget and their rendering."""

    entries: list[MemoryEntry] = field(default_factory=list)
    formatted_text: str = ""
    units_used: int = 0
    coverage_summary: str = "0/0 entries, 0/0 units"
    candidates: list[ScoredCandidate] = field(default_factory=list)
    total_candidates: int = 0
    budget: int = 0
