"""
Retrieval: relevance scoring, semantic search and budget-bounded selection.
"""

from .context_budget import (
    ContextBudget,
    ContextBudgetAllocator,
    estimate_units,
    get_context_budget,
)
from .formatter import format_budget_entry, format_entry, strip_whitespace
from .scorer import RelevanceScorer, keyword_overlap
from .semantic import DuplicateCluster, SemanticSearch, find_duplicate_clusters

__all__ = [
    "ContextBudget",
    "ContextBudgetAllocator",
    "DuplicateCluster",
    "RelevanceScorer",
    "SemanticSearch",
    "estimate_units",
    "find_duplicate_clusters",
    "format_budget_entry",
    "format_entry",
    "get_context_budget",
    "keyword_overlap",
    "strip_whitespace",
]
