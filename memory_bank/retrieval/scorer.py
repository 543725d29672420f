"""
Keyword, recency and category-priority scoring of memory entries.

No vectors are needed: the score of an entry against a query is

    keyword_overlap * recency * priority

where *keyword_overlap* is the fraction of query terms found in the
entry's tag and content, *recency* is a step function of the entry's age,
and *priority* is a fixed weight per category.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from ..models import MemoryEntry, ScoredCandidate, parse_timestamp

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CATEGORY_PRIORITY: dict[str, float] = {
    "BRIEF": 1.5,
    "PATTERN": 1.5,
    "CONTEXT": 1.3,
    "DECISION": 1.2,
    "PROGRESS": 1.0,
}
DEFAULT_PRIORITY = 1.0

# (max age in days, score); anything older gets RECENCY_FLOOR
RECENCY_STEPS: tuple[tuple[float, float], ...] = (
    (7, 1.0),
    (30, 0.7),
    (90, 0.3),
)
RECENCY_FLOOR = 0.1
RECENCY_UNKNOWN = 0.5


def query_terms(query: str) -> list[str]:
    """Lower-cased, whitespace-split query terms with empty tokens dropped."""
    return [t for t in (query or "").lower().split() if t]


def keyword_overlap(entry: MemoryEntry, query: str) -> float:
    """Fraction of query terms that occur as substrings of ``tag + " " + content``."""
    terms = query_terms(query)
    if not terms:
        return 0.0
    haystack = f"{entry.tag} {entry.content}".lower()
    return sum(1 for t in terms if t in haystack) / len(terms)


class RelevanceScorer:
    """
    Scores entries against a free-text query.

    Parameters
    ----------
    clock:
        Returns "now" as an aware datetime; injectable for tests.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def recency_score(self, timestamp: str) -> float:
        created = parse_timestamp(timestamp)
        if created is None:
            return RECENCY_UNKNOWN
        age_days = (self._clock() - created).total_seconds() / 86400
        for max_age, score in RECENCY_STEPS:
            if age_days < max_age:
                return score
        return RECENCY_FLOOR

    @staticmethod
    def priority(category: str) -> float:
        return CATEGORY_PRIORITY.get((category or "").upper(), DEFAULT_PRIORITY)

    @staticmethod
    def _reason(keyword: float, recency: float, priority: float) -> str:
        factors: list[str] = []
        if keyword > 0.7:
            factors.append("highly relevant keywords")
        elif keyword > 0.4:
            factors.append("moderately relevant")
        elif keyword > 0:
            factors.append("weakly relevant")
        else:
            factors.append("no keyword match")

        if recency >= 1.0:
            factors.append("recent (< 7 days)")
        elif recency >= 0.7:
            factors.append("fairly recent")
        else:
            factors.append("aging")

        if priority > 1.3:
            factors.append("high priority")
        return "; ".join(factors)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def score_entry(self, entry: MemoryEntry, query: str) -> ScoredCandidate:
        keyword = keyword_overlap(entry, query)
        recency = self.recency_score(entry.timestamp)
        priority = self.priority(entry.category)
        return ScoredCandidate(
            entry=entry,
            score=keyword * recency * priority,
            reason=self._reason(keyword, recency, priority),
            keyword_score=keyword,
            recency_score=recency,
            priority=priority,
        )

    def score_entries(self, entries: Iterable[MemoryEntry], query: str) -> list[ScoredCandidate]:
        """Score every entry, preserving input order."""
        return [self.score_entry(e, query) for e in entries]

    @staticmethod
    def filter_by_threshold(scored: Iterable[ScoredCandidate],
                            min_score: float = 0.1) -> list[ScoredCandidate]:
        """Drop candidates scoring below *min_score*."""
        return [c for c in scored if c.score >= min_score]

    @staticmethod
    def rank_entries(scored: Iterable[ScoredCandidate]) -> list[ScoredCandidate]:
        """Highest score first; equal scores keep their original order."""
        return sorted(scored, key=lambda c: c.score, reverse=True)

    def top_entries(self, entries: Iterable[MemoryEntry], query: str,
                    n: int = 10, min_score: float = 0.0) -> list[ScoredCandidate]:
        scored = self.filter_by_threshold(self.score_entries(entries, query), min_score)
        return self.rank_entries(scored)[:n]
