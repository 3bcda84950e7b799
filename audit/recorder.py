"""
audit/recorder.py -- Non-blocking audit persistence on a small worker pool.

record() is called on the request path and must never make the caller wait
for the database or fail because of it. Events go onto a bounded queue and
daemon worker threads write them through AuditStore.

Overflow policy: when the queue is full the OLDEST queued event is dropped
to make room, the drop is counted and logged. Recent activity is the most
useful when the store is struggling.

Failure policy: each event is attempted up to max_attempts times with a
linear backoff. A final failure is logged and counted, never raised.

Shutdown: shutdown() stops accepting events, lets the workers drain what is
already queued (one None sentinel per worker, FIFO behind the real events)
and joins them.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any

from audit.models import AuditEvent
from audit.store import AuditStore

logger = logging.getLogger("warden.audit")


class AuditRecorder:
    """Bounded queue + worker threads in front of an AuditStore.

    Usage:
        recorder = AuditRecorder(store, max_queue=1000, workers=2)
        recorder.start()
        recorder.record(event)      # returns immediately
        recorder.flush()            # wait until everything queued was attempted
        recorder.shutdown()
    """

    def __init__(
        self,
        store: AuditStore,
        max_queue: int = 1000,
        workers: int = 2,
        max_attempts: int = 3,
        retry_backoff: float = 0.05,
    ) -> None:
        self._store = store
        self._queue: "queue.Queue[AuditEvent | None]" = queue.Queue(maxsize=max(1, max_queue))
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        # Held across the stop check and the enqueue in record(), and while
        # shutdown() raises the stop flag, so no event lands behind the sentinels.
        self._admission = threading.Lock()
        self._worker_count = max(1, workers)
        self._max_attempts = max(1, max_attempts)
        self._retry_backoff = retry_backoff
        self._workers: list[threading.Thread] = []

        # Stats
        self._recorded = 0
        self._failed = 0
        self._dropped = 0
        self._retried = 0

    # ========== Lifecycle ==========

    def start(self) -> None:
        """Start the worker threads. Calling it twice is a no-op."""
        with self._lock:
            if self._workers:
                return
            for i in range(self._worker_count):
                thread = threading.Thread(target=self._worker_loop, name=f"audit_worker_{i}", daemon=True)
                thread.start()
                self._workers.append(thread)
        logger.info("Audit recorder started (%d workers, queue size %d)", self._worker_count, self._queue.maxsize)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Drain queued events and stop the workers.

        Anything still queued once every worker has exited is counted as dropped.
        """
        with self._admission:
            self._stop_event.set()
        with self._lock:
            workers = list(self._workers)
        for _ in workers:
            try:
                self._queue.put(None, timeout=timeout)
            except queue.Full:
                logger.error("Audit queue still full at shutdown, %d event(s) may be lost", self._queue.qsize())
                break
        for worker in workers:
            worker.join(timeout=timeout)
        if not any(worker.is_alive() for worker in workers):
            self._discard_leftovers()
        with self._lock:
            self._workers.clear()
        logger.info("Audit recorder stopped (%s)", self.stats())

    # ========== Public API ==========

    def record(self, audit_event: AuditEvent) -> None:
        """Queue an event for persistence. Never blocks, never raises."""
        with self._admission:
            if self._stop_event.is_set():
                with self._lock:
                    self._dropped += 1
                logger.warning("Audit recorder is stopped, dropping %s %s", audit_event.method, audit_event.path)
                return
            while True:
                try:
                    self._queue.put_nowait(audit_event)
                    return
                except queue.Full:
                    try:
                        oldest = self._queue.get_nowait()
                    except queue.Empty:
                        continue
                    # The dropped event will never reach a worker, so it is done as far as join() is concerned.
                    self._queue.task_done()
                    with self._lock:
                        self._dropped += 1
                    logger.warning(
                        "Audit queue full, dropped oldest event (%s %s)",
                        getattr(oldest, "method", "?"),
                        getattr(oldest, "path", "?"),
                    )

    def flush(self) -> None:
        """Block until every event queued so far has been attempted.

        Returns immediately when the workers are not running -- nothing would
        ever drain the queue.
        """
        with self._lock:
            running = bool(self._workers)
        if running:
            self._queue.join()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "queued": self._queue.qsize(),
                "recorded": self._recorded,
                "retried": self._retried,
                "failed": self._failed,
                "dropped": self._dropped,
                "workers": sum(1 for w in self._workers if w.is_alive()),
            }

    # ========== Workers ==========

    def _discard_leftovers(self) -> None:
        leftovers = 0
        while True:
            try:
                audit_event = self._queue.get_nowait()
            except queue.Empty:
                break
            self._queue.task_done()
            if audit_event is not None:
                leftovers += 1
        if leftovers:
            with self._lock:
                self._dropped += leftovers
            logger.warning("Audit recorder stopped with %d unwritten event(s), counted as dropped", leftovers)

    def _worker_loop(self) -> None:
        while True:
            audit_event = self._queue.get()
            try:
                if audit_event is None:
                    return
                self._persist(audit_event)
            finally:
                self._queue.task_done()

    def _persist(self, audit_event: AuditEvent) -> None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._store.insert(audit_event)
            except Exception as exc:  # the recorder absorbs every storage failure
                if attempt < self._max_attempts:
                    with self._lock:
                        self._retried += 1
                    logger.warning("Audit write failed (attempt %d/%d): %s", attempt, self._max_attempts, exc)
                    time.sleep(self._retry_backoff * attempt)
                    continue
                with self._lock:
                    self._failed += 1
                logger.error(
                    "Audit write gave up after %d attempts for %s %s: %s",
                    self._max_attempts,
                    audit_event.method,
                    audit_event.path,
                    exc,
                )
                return
            with self._lock:
                self._recorded += 1
            return
