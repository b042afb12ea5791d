"""Tests for ExecutionTracker."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

from omniworker.execution.models import ExecutionHandle
from omniworker.execution.tracker import ExecutionTracker


def _handle(envelope_id: str, started_offset: float = 0.0) -> ExecutionHandle:
    return ExecutionHandle(
        envelope_id=envelope_id,
        correlation_id=f"corr-{envelope_id}",
        started_at=datetime(2025, 1, 1, tzinfo=UTC) + timedelta(seconds=started_offset),
    )


class TestExecutionTracker:
    def test_add_and_remove(self) -> None:
        tracker = ExecutionTracker()
        handle = _handle("1-0")

        assert tracker.add(handle) is True
        assert tracker.size() == 1
        assert tracker.remove("1-0") is handle
        assert tracker.size() == 0

    def test_duplicate_envelope_id_rejected(self) -> None:
        tracker = ExecutionTracker()
        assert tracker.add(_handle("1-0")) is True
        assert tracker.add(_handle("1-0", started_offset=5)) is False
        assert tracker.size() == 1

    def test_remove_unknown_returns_none(self) -> None:
        assert ExecutionTracker().remove("missing") is None

    def test_get_returns_registered_handle(self) -> None:
        tracker = ExecutionTracker()
        handle = _handle("1-0")
        tracker.add(handle)

        assert tracker.get("1-0") is handle
        assert tracker.get("2-0") is None
        assert tracker.size() == 1

    def test_snapshot_is_oldest_first_copy(self) -> None:
        tracker = ExecutionTracker()
        tracker.add(_handle("b", started_offset=10))
        tracker.add(_handle("a", started_offset=0))

        snapshot = tracker.snapshot()
        tracker.remove("a")

        assert [h.envelope_id for h in snapshot] == ["a", "b"]
        assert tracker.size() == 1

    def test_concurrent_threads(self) -> None:
        tracker = ExecutionTracker()

        def worker(prefix: str) -> None:
            for i in range(200):
                tracker.add(_handle(f"{prefix}-{i}"))
            for i in range(0, 200, 2):
                tracker.remove(f"{prefix}-{i}")

        threads = [threading.Thread(target=worker, args=(str(n),)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert tracker.size() == 8 * 100


class TestExecutionHandle:
    def test_elapsed_seconds(self) -> None:
        handle = _handle("1-0")
        later = handle.started_at + timedelta(seconds=90)
        assert handle.elapsed_seconds(now=later) == 90.0
