"""
memory_bank: persistent, queryable working memory for AI agents.

Public API for library usage::

    from memory_bank import MemoryBank, MemoryEntry

    with MemoryBank() as bank:
        bank.open(".memorybank/memory.db")
        bank.store.append_entry(MemoryEntry("DECISION", "Use SQLite for storage"))
        selection = bank.select_context("storage engine", budget=2000)
"""

from .bank import MemoryBank
from .config import Config
from .embedding.embedder import Embedder
from .errors import EmbeddingUnavailable, MemoryBankError, MigrationError, StoreNotReady
from .models import ContextSelection, MemoryEntry, ScoredCandidate, SearchHit
from .retrieval.context_budget import ContextBudgetAllocator
from .retrieval.scorer import RelevanceScorer
from .retrieval.semantic import SemanticSearch
from .store.memory_store import MemoryStore

__version__ = "1.0.0"

__all__ = [
    "Config",
    "ContextBudgetAllocator",
    "ContextSelection",
    "Embedder",
    "EmbeddingUnavailable",
    "MemoryBank",
    "MemoryBankError",
    "MemoryEntry",
    "MemoryStore",
    "MigrationError",
    "RelevanceScorer",
    "ScoredCandidate",
    "SearchHit",
    "SemanticSearch",
    "StoreNotReady",
]
