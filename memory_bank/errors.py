"""
Exception types shared across the memory bank.

Only :class:`EmbeddingUnavailable` crosses a public boundary; store
operations convert engine errors into neutral results at the call site.
"""

from __future__ import annotations


class MemoryBankError(Exception):
    """Base class for all memory bank errors."""


class EmbeddingUnavailable(MemoryBankError):
    """The embedding backend could not be loaded, or a single embed call failed."""


class MigrationError(MemoryBankError):
    """A schema migration could not be applied without risking data loss."""


class StoreNotReady(MemoryBankError):
    """An operation needed an initialised store."""
