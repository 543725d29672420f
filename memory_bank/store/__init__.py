"""
Persistent entry store: storage engines, schema migration and the store API.
"""

from .engines import ENGINES, NativeEngine, PortableEngine, StorageEngine
from .memory_store import MemoryStore, QueryTimer, group_by_progress_status
from .schema import SCHEMA_VERSION, MigrationResult, apply_migrations

__all__ = [
    "ENGINES",
    "MemoryStore",
    "MigrationResult",
    "NativeEngine",
    "PortableEngine",
    "QueryTimer",
    "SCHEMA_VERSION",
    "StorageEngine",
    "apply_migrations",
    "group_by_progress_status",
]
