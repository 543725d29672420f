"""
Greedy selection of memory entries into a bounded output budget.

The allocator ranks candidate entries (keyword scores, optionally blended
with semantic scores), then walks the ranking and takes entries until the
next one would not fit.  It never skips ahead to a smaller entry and never
truncates an entry to make it fit.

Budget units approximate language-model tokens as ``ceil(len(text) / 4)``;
pass ``unit_estimator`` to plug in a real tokenizer.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from ..models import ContextSelection, MemoryEntry, ScoredCandidate
from ..store.memory_store import MemoryStore
from .formatter import format_budget_entry
from .scorer import RelevanceScorer
from .semantic import NEUTRAL_SEMANTIC, SemanticSearch

logger = logging.getLogger(__name__)

CHARS_PER_UNIT = 4
DEFAULT_CONTEXT_WINDOW = 200_000
OUTPUT_RESERVE = 0.20
HEALTHY_REMAINING = 50_000
WARNING_REMAINING = 10_000


def estimate_units(text: str) -> int:
    """Approximate token count: one unit per four characters, rounded up."""
    return math.ceil(len(text or "") / CHARS_PER_UNIT)


# ---------------------------------------------------------------------------
# Context window status
# ---------------------------------------------------------------------------

@dataclass
class ContextBudget:
    """How much of a model's input window a selection consumes."""

    total: int
    used: int
    remaining: int
    percent_used: float
    status: str
    recommendations: list[str] = field(default_factory=list)


def get_context_budget(used_units: int,
                       context_window: int = DEFAULT_CONTEXT_WINDOW) -> ContextBudget:
    """
    Classify *used_units* against *context_window* after reserving 20% for output.

    ``healthy`` above 50,000 remaining units, ``warning`` above 10,000,
    ``critical`` otherwise.
    """
    available = int(context_window * (1 - OUTPUT_RESERVE))
    remaining = available - used_units
    percent = (used_units / available * 100) if available > 0 else 100.0

    if remaining > HEALTHY_REMAINING:
        status = "healthy"
        recommendations = ["Continue adding context as needed"]
    elif remaining > WARNING_REMAINING:
        status = "warning"
        recommendations = [
            "Context budget getting low (< 50K units)",
            "Consider summarizing long contexts",
        ]
    else:
        status = "critical"
        recommendations = [
            "Context budget nearly exhausted (< 10K units)",
            "Compress or remove non-essential context",
        ]
    return ContextBudget(
        total=available,
        used=used_units,
        remaining=max(0, remaining),
        percent_used=min(100.0, percent),
        status=status,
        recommendations=recommendations,
    )


# ---------------------------------------------------------------------------
# Allocator
# ---------------------------------------------------------------------------

class ContextBudgetAllocator:
    """
    Chooses the highest-value entries that fit a unit budget.

    Parameters
    ----------
    store:
        Source of candidates and sink for token metrics.
    scorer:
        Keyword/recency/priority scorer.
    search:
        Semantic search engine used when blending is requested.
    blend_keyword_weight, blend_semantic_weight:
        Weights of the keyword score and the semantic score in the blend.
    unit_estimator:
        Maps entry text to a unit cost.
    candidate_limit:
        Cap on the pool pulled from the store (None for all).  The coverage
        total still counts every matching entry.
    """

    def __init__(
        self,
        store: MemoryStore,
        scorer: Optional[RelevanceScorer] = None,
        search: Optional[SemanticSearch] = None,
        blend_keyword_weight: float = 0.6,
        blend_semantic_weight: float = 0.4,
        unit_estimator: Callable[[str], int] = estimate_units,
        candidate_limit: Optional[int] = None,
        model_label: str = "context-budget",
    ) -> None:
        self._store = store
        self._scorer = scorer or RelevanceScorer()
        self._search = search
        self.blend_keyword_weight = blend_keyword_weight
        self.blend_semantic_weight = blend_semantic_weight
        self._estimate = unit_estimator
        self.candidate_limit = candidate_limit
        self.model_label = model_label

    def _gather(self, include_categories: Optional[Iterable[str]],
                max_age_days: Optional[int]) -> tuple[list[MemoryEntry], int]:
        """Candidate pool and the number of entries matching the filters."""
        if include_categories is not None:
            include_categories = list(include_categories)
        since = None
        if max_age_days is not None:
            since = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        pool = self._store.query_entries(
            categories=include_categories, limit=self.candidate_limit, since=since,
        )
        if self.candidate_limit is None or len(pool) < self.candidate_limit:
            return pool, len(pool)
        return pool, max(len(pool), self._store.count_entries(include_categories, since))

    def _blend(self, query: str, scored: list[ScoredCandidate]) -> list[ScoredCandidate]:
        """Mix semantic scores into keyword scores; unchanged scores on any failure."""
        if self._search is None or not scored:
            return scored
        try:
            hits = self._search.semantic_search(
                query,
                limit=len(scored),
                candidates=[c.entry for c in scored],
            )
            semantic_by_id = {h.entry.id: h.semantic_score for h in hits}
            blended = []
            for c in scored:
                semantic = semantic_by_id.get(c.entry.id, NEUTRAL_SEMANTIC)
                blended.append(ScoredCandidate(
                    entry=c.entry,
                    score=(self.blend_keyword_weight * c.score
                           + self.blend_semantic_weight * semantic),
                    reason=f"{c.reason}; semantic {semantic:.2f}",
                    keyword_score=c.keyword_score,
                    recency_score=c.recency_score,
                    priority=c.priority,
                ))
            return blended
        except Exception as exc:
            logger.warning("[ContextBudget] Semantic blend failed, using keyword scores: %s", exc)
            return scored

    def select_context_for_budget(
        self,
        query: str,
        budget: int,
        min_relevance_threshold: float = 0.1,
        include_categories: Optional[Iterable[str]] = None,
        max_age_days: Optional[int] = None,
        use_semantic_search: bool = False,
    ) -> ContextSelection:
        """
        Select and render the best entries for *query* within *budget* units.

        Parameters
        ----------
        query:
            Task description used for relevance scoring.
        budget:
            Maximum units the selection may consume.  0 or less selects nothing.
        min_relevance_threshold:
            Candidates scoring below this are dropped before selection.
        include_categories:
            Restrict the pool to these categories.
        max_age_days:
            Exclude entries older than this many days.
        use_semantic_search:
            Blend semantic scores into the keyword scores.

        Returns
        -------
        ContextSelection
        """
        budget = max(0, int(budget))
        pool, total = self._gather(include_categories, max_age_days)

        scored = self._scorer.score_entries(pool, query)
        if use_semantic_search:
            scored = self._blend(query, scored)
        ranked = self._scorer.rank_entries(
            self._scorer.filter_by_threshold(scored, min_relevance_threshold)
        )

        selected: list[ScoredCandidate] = []
        units_used = 0
        if budget > 0:
            for candidate in ranked:
                cost = self._estimate(candidate.entry.content)
                if units_used + cost > budget:
                    break
                selected.append(candidate)
                units_used += cost

        entries = [c.entry for c in selected]
        formatted = "".join(format_budget_entry(e) for e in entries)
        coverage = f"{len(entries)}/{total} entries, {units_used}/{budget} units"

        if self._store.is_ready and entries:
            status = get_context_budget(units_used).status
            self._store.record_token_metric(self.model_label, units_used, 0, status)

        logger.debug("[ContextBudget] %s for %r", coverage, query)
        return ContextSelection(
            entries=entries,
            formatted_text=formatted,
            units_used=units_used,
            coverage_summary=coverage,
            candidates=selected,
            total_candidates=total,
            budget=budget,
        )
