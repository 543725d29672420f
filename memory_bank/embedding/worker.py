"""
Background embedding worker.

Appends and content edits enqueue ``(entry_id, content)`` jobs and return
immediately.  A single daemon thread drains the queue, embeds each text and
hands the quantized vector to a writer callback.  The writer only stores
the vector if the entry still holds the same content, so a slow job can
never overwrite the vector of a newer edit.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Optional

from ..errors import EmbeddingUnavailable
from .embedder import Embedder

logger = logging.getLogger(__name__)

# writer(entry_id, quantized_blob, expected_content) -> bool
Writer = Callable[[int, bytes, str], bool]

_STOP = object()


class EmbeddingWorker:
    """Daemon thread that turns queued entry content into stored vectors."""

    def __init__(self, embedder: Embedder, writer: Writer) -> None:
        self._embedder = embedder
        self._writer = writer
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.processed = 0
        self.failed = 0

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run, name="memory-bank-embedder", daemon=True,
            )
            self._thread.start()

    def submit(self, entry_id: int, content: str) -> None:
        """Queue *content* for embedding; never blocks the caller."""
        self.start()
        self._queue.put((entry_id, content))

    def pending(self) -> int:
        return self._queue.unfinished_tasks

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every queued job has been processed.

        Returns True when the queue drained, False if *timeout* elapsed first.
        """
        # Queue.join() waits on this same condition.
        drained = self._queue.all_tasks_done
        with drained:
            return drained.wait_for(lambda: self._queue.unfinished_tasks == 0, timeout)

    def stop(self, timeout: float = 5.0) -> None:
        """Ask the thread to exit after the jobs already queued."""
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None or not thread.is_alive():
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                self._process(*job)
            finally:
                self._queue.task_done()

    def _process(self, entry_id: int, content: str) -> None:
        try:
            blob = self._embedder.embed_quantized(content)
        except EmbeddingUnavailable as exc:
            self.failed += 1
            logger.debug("[EmbeddingWorker] Entry %s left without vector: %s", entry_id, exc)
            return
        except Exception:
            self.failed += 1
            logger.exception("[EmbeddingWorker] Unexpected failure embedding entry %s", entry_id)
            return
        try:
            stored = self._writer(entry_id, blob, content)
        except Exception:
            self.failed += 1
            logger.exception("[EmbeddingWorker] Could not store vector for entry %s", entry_id)
            return
        if stored:
            self.processed += 1
        else:
            logger.debug(
                "[EmbeddingWorker] Entry %s changed or vanished before its vector landed",
                entry_id,
            )
