"""
tests/test_audit_recorder.py -- Unit tests for AuditRecorder.

A ListStore stands in for AuditStore so failures can be scripted without a
database.
"""

from __future__ import annotations

import threading
import time

import pytest

from audit.models import AuditEvent
from audit.recorder import AuditRecorder


class ListStore:
    """Collects inserted events; fails the first `failures` inserts."""

    def __init__(self, failures: int = 0) -> None:
        self.events: list[AuditEvent] = []
        self.calls = 0
        self._failures = failures
        self._lock = threading.Lock()

    def insert(self, audit_event: AuditEvent) -> int:
        with self._lock:
            self.calls += 1
            if self.calls <= self._failures:
                raise RuntimeError("database is locked")
            self.events.append(audit_event)
            return len(self.events)


class GatedStore(ListStore):
    """Holds every insert until release is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def insert(self, audit_event: AuditEvent) -> int:
        self.entered.set()
        self.release.wait(timeout=5.0)
        return super().insert(audit_event)


def _event(n: int) -> AuditEvent:
    return AuditEvent(module="users", action="read", method="GET", path=f"/api/v1/users/{n}", status_code=200)


@pytest.fixture
def recorder_factory():
    recorders: list[AuditRecorder] = []

    def make(store, **kwargs) -> AuditRecorder:
        kwargs.setdefault("retry_backoff", 0)
        recorder = AuditRecorder(store, **kwargs)
        recorders.append(recorder)
        return recorder

    yield make
    for recorder in recorders:
        recorder.shutdown(timeout=1.0)


class TestRecording:
    def test_events_are_persisted(self, recorder_factory) -> None:
        store = ListStore()
        recorder = recorder_factory(store, workers=2)
        recorder.start()
        for n in range(20):
            recorder.record(_event(n))
        recorder.flush()
        assert len(store.events) == 20
        assert recorder.stats()["recorded"] == 20

    def test_start_twice_is_a_noop(self, recorder_factory) -> None:
        recorder = recorder_factory(ListStore(), workers=3)
        recorder.start()
        recorder.start()
        assert recorder.stats()["workers"] == 3

    def test_concurrent_producers(self, recorder_factory) -> None:
        store = ListStore()
        recorder = recorder_factory(store, workers=2, max_queue=1000)
        recorder.start()

        def produce(offset: int) -> None:
            for n in range(50):
                recorder.record(_event(offset + n))

        threads = [threading.Thread(target=produce, args=(i * 100,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        recorder.flush()
        assert len(store.events) == 200
        assert recorder.stats()["dropped"] == 0


class TestOverflow:
    def test_full_queue_drops_the_oldest(self, recorder_factory) -> None:
        store = ListStore()
        recorder = recorder_factory(store, max_queue=2, workers=1)
        for n in range(3):
            recorder.record(_event(n))
        assert recorder.stats()["dropped"] == 1
        assert recorder.stats()["queued"] == 2

        recorder.start()
        recorder.flush()
        assert [e.path for e in store.events] == ["/api/v1/users/1", "/api/v1/users/2"]

    def test_record_never_blocks_when_full(self, recorder_factory) -> None:
        recorder = recorder_factory(ListStore(), max_queue=1)
        for n in range(100):
            recorder.record(_event(n))
        assert recorder.stats()["dropped"] == 99


class TestFailures:
    def test_transient_failure_is_retried(self, recorder_factory) -> None:
        store = ListStore(failures=1)
        recorder = recorder_factory(store, workers=1, max_attempts=3)
        recorder.start()
        recorder.record(_event(1))
        recorder.flush()
        stats = recorder.stats()
        assert len(store.events) == 1
        assert stats["retried"] == 1 and stats["failed"] == 0

    def test_persistent_failure_is_counted_not_raised(self, recorder_factory) -> None:
        store = ListStore(failures=100)
        recorder = recorder_factory(store, workers=1, max_attempts=2)
        recorder.start()
        recorder.record(_event(1))
        recorder.record(_event(2))
        recorder.flush()
        stats = recorder.stats()
        assert store.events == []
        assert stats["failed"] == 2
        assert store.calls == 4


class TestShutdown:
    def test_shutdown_drains_queued_events(self) -> None:
        store = ListStore()
        recorder = AuditRecorder(store, workers=2, retry_backoff=0)
        for n in range(10):
            recorder.record(_event(n))
        recorder.start()
        recorder.shutdown(timeout=2.0)
        assert len(store.events) == 10
        assert recorder.stats()["workers"] == 0

    def test_records_after_shutdown_are_dropped(self) -> None:
        store = ListStore()
        recorder = AuditRecorder(store, workers=1, retry_backoff=0)
        recorder.start()
        recorder.shutdown(timeout=2.0)
        recorder.record(_event(1))
        assert recorder.stats()["dropped"] == 1
        assert store.events == []

    def test_flush_without_workers_returns(self) -> None:
        recorder = AuditRecorder(ListStore())
        recorder.record(_event(1))
        recorder.flush()
        assert recorder.stats()["queued"] == 1

    def test_shutdown_without_start_counts_queued_events_as_dropped(self) -> None:
        recorder = AuditRecorder(ListStore())
        recorder.record(_event(1))
        recorder.record(_event(2))
        recorder.shutdown(timeout=1.0)
        stats = recorder.stats()
        assert stats["queued"] == 0
        assert stats["dropped"] == 2

    def test_event_queued_behind_the_stop_markers_is_counted(self, monkeypatch) -> None:
        """An event that slips in after the workers were told to stop is never silently lost."""
        store = GatedStore()
        recorder = AuditRecorder(store, workers=1, retry_backoff=0)
        recorder.start()
        recorder.record(_event(1))
        assert store.entered.wait(timeout=2.0)

        stopper = threading.Thread(target=recorder.shutdown, kwargs={"timeout": 2.0})
        stopper.start()
        deadline = time.monotonic() + 2.0
        while recorder.stats()["queued"] < 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert recorder.stats()["queued"] == 1, "stop marker was never queued"

        monkeypatch.setattr(recorder._stop_event, "is_set", lambda: False)
        recorder.record(_event(2))
        store.release.set()
        stopper.join(timeout=2.0)

        stats = recorder.stats()
        assert [e.path for e in store.events] == ["/api/v1/users/1"]
        assert stats["recorded"] == 1
        assert stats["dropped"] == 1
        assert stats["queued"] == 0
