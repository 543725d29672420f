"""
MemoryBank: wires store, embedder and retrieval services from a Config.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import Config
from .embedding.embedder import Embedder, backfill_embeddings
from .metrics import MetricsService
from .retrieval.context_budget import ContextBudgetAllocator
from .retrieval.scorer import RelevanceScorer
from .retrieval.semantic import SemanticSearch
from .store.memory_store import MemoryStore

logger = logging.getLogger(__name__)


class MemoryBank:
    """One explicitly constructed set of memory services.

    Nothing here is global: tests and callers build as many independent
    banks as they need.
    """

    def __init__(self, config: Optional[Config] = None,
                 embedder: Optional[Embedder] = None) -> None:
        self.config = config or Config()
        if embedder is None and self.config.EMBEDDING_BACKEND != "none":
            embedder = Embedder.from_config(self.config)
        self.embedder = embedder
        self.store = MemoryStore(
            embedder=embedder,
            engine_order=self.config.ENGINE_ORDER,
            backup_before_migration=self.config.BACKUP_BEFORE_MIGRATION,
        )
        self.scorer = RelevanceScorer()
        self.search = SemanticSearch(
            self.store,
            embedder,
            semantic_weight=self.config.SEMANTIC_WEIGHT,
            keyword_weight=self.config.KEYWORD_WEIGHT,
            candidate_limit=self.config.CANDIDATE_POOL_LIMIT,
        )
        self.allocator = ContextBudgetAllocator(
            self.store,
            scorer=self.scorer,
            search=self.search,
            blend_keyword_weight=self.config.BLEND_KEYWORD_WEIGHT,
            blend_semantic_weight=self.config.BLEND_SEMANTIC_WEIGHT,
            candidate_limit=self.config.CANDIDATE_POOL_LIMIT,
        )
        self.metrics = MetricsService(self.store)

    def open(self, location: Optional[str] = None) -> bool:
        """Initialise the store at *location* (default: the configured path)."""
        return self.store.init(location or self.config.DB_PATH)

    def close(self) -> None:
        self.store.close()

    def select_context(self, query: str, budget: Optional[int] = None, **options):
        """Allocator shortcut applying configured defaults."""
        options.setdefault("min_relevance_threshold", self.config.MIN_RELEVANCE_THRESHOLD)
        options.setdefault("max_age_days", self.config.MAX_AGE_DAYS)
        options.setdefault("use_semantic_search", self.embedder is not None)
        return self.allocator.select_context_for_budget(
            query, self.config.DEFAULT_BUDGET if budget is None else budget, **options
        )

    def backfill(self, stop_event=None, limit: Optional[int] = None, progress: bool = False) -> dict:
        if self.embedder is None:
            logger.warning("[MemoryBank] Backfill skipped: embeddings are disabled")
            return {"total": 0, "embedded": 0, "errors": 0, "stopped": False}
        return backfill_embeddings(self.store, self.embedder, stop_event=stop_event,
                                   limit=limit, progress=progress)

    def __enter__(self) -> "MemoryBank":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
