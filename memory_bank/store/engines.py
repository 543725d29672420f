"""
Storage engines for the memory store.

Both engines speak SQL through the same small surface (``query``,
``execute``, ``transaction``, ``flush``) so the store writes its query
logic once.  They differ only in where the live database sits:

``PortableEngine``
    Loads the database file into an in-memory connection and writes the
    whole image back to disk after every mutation (or at the end of a
    transaction).  A crash between a mutation and its flush loses that
    mutation.  A failed flush leaves the change in memory, marks the image
    dirty and is retried by the next mutation or by ``close``.

``NativeEngine``
    Opens the file directly with write-ahead logging; every committed
    statement is already durable, so ``flush`` has nothing left to do.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence

logger = logging.getLogger(__name__)


class StorageEngine:
    """Common execution seam over one ``sqlite3`` connection.

    Parameters
    ----------
    path:
        Database file location.  Its directory must already exist.
    """

    name = "base"

    def __init__(self, path: str) -> None:
        self.path = path
        self._conn: Optional[sqlite3.Connection] = None
        self._in_transaction = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        conn = self._connect()
        conn.row_factory = sqlite3.Row
        try:
            # Reading the schema forces SQLite to validate the file header.
            conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()
        except sqlite3.Error:
            conn.close()
            raise
        self._conn = conn

    def _connect(self) -> sqlite3.Connection:
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def flush(self) -> None:
        """Make every committed change durable."""

    @property
    def is_dirty(self) -> bool:
        """True when committed changes have not reached disk yet."""
        return False

    def _write_through(self) -> None:
        self.flush()

    def close(self, flush: bool = True) -> None:
        if self._conn is None:
            return
        try:
            if flush:
                self.flush()
        finally:
            try:
                self._conn.close()
            except sqlite3.Error:
                pass
            self._conn = None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError(f"{self.name} engine is not open")
        return self._conn

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchone()

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.query_one(sql, params)
        return row[0] if row is not None else None

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Run one mutating statement; flushed immediately outside a transaction."""
        cur = self.conn.execute(sql, params)
        if not self._in_transaction:
            self._write_through()
        return cur

    def executescript(self, script: str) -> None:
        self.conn.executescript(script)
        if not self._in_transaction:
            self._write_through()

    @contextmanager
    def transaction(self) -> Iterator["StorageEngine"]:
        """Group statements atomically; flushed once on commit."""
        if self._in_transaction:
            yield self
            return
        self.conn.execute("BEGIN")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._in_transaction = False
            self.conn.execute("ROLLBACK")
            raise
        self._in_transaction = False
        self.conn.execute("COMMIT")
        self._write_through()

    def table_columns(self, table: str) -> list[str]:
        return [row["name"] for row in self.query(f"PRAGMA table_info({table})")]

    def table_sql(self, table: str) -> Optional[str]:
        return self.scalar(
            "SELECT sql FROM sqlite_master WHERE type='table' AND name=?", (table,)
        )

    def backup_to(self, dest_path: str) -> None:
        """Write a consistent copy of the live database to *dest_path*."""
        dest = sqlite3.connect(dest_path)
        try:
            self.conn.backup(dest)
        finally:
            dest.close()


class PortableEngine(StorageEngine):
    """In-memory database persisted by whole-image flushes."""

    name = "portable"

    def __init__(self, path: str) -> None:
        super().__init__(path)
        self._dirty = False

    def _connect(self) -> sqlite3.Connection:
        mem = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
        if os.path.isfile(self.path) and os.path.getsize(self.path) > 0:
            src = sqlite3.connect(self.path)
            try:
                src.backup(mem)
            except sqlite3.Error:
                mem.close()
                raise
            finally:
                src.close()
        return mem

    def open(self) -> None:
        super().open()
        # Create the file up front so the location exists once init succeeds.
        if not os.path.isfile(self.path):
            self.flush()

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def flush(self) -> None:
        if self._conn is None:
            return
        self._dirty = True
        tmp_path = f"{self.path}.tmp"
        self.backup_to(tmp_path)
        os.replace(tmp_path, self.path)
        self._dirty = False
        logger.debug("[PortableEngine] Flushed database image to %s", self.path)

    def _write_through(self) -> None:
        # The statement is already applied; a failed flush must not report it lost.
        try:
            self.flush()
        except (sqlite3.Error, OSError) as exc:
            logger.warning("[PortableEngine] Flush to %s failed, keeping change in "
                           "memory until the next write: %s", self.path, exc)

    def close(self, flush: bool = True) -> None:
        if flush and self._dirty and self._conn is not None:
            logger.info("[PortableEngine] Retrying pending flush to %s on close", self.path)
        super().close(flush=flush)


class NativeEngine(StorageEngine):
    """File-backed connection with write-ahead logging."""

    name = "native"

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error:
            conn.close()
            raise
        return conn


ENGINES: dict[str, type[StorageEngine]] = {
    PortableEngine.name: PortableEngine,
    NativeEngine.name: NativeEngine,
}
