"""In-process registry of in-flight executions.

The tracker is the only resource mutated by many concurrent execution
tasks. Its handle count is the sole signal the shutdown coordinator uses to
decide that draining is complete.

Operations are synchronous and guarded by a ``threading.Lock`` so they can
be called from ``finally`` blocks and from executor threads alike. No other
component touches the underlying mapping.
"""

from __future__ import annotations

import threading

from omniworker.execution.models import ExecutionHandle


class ExecutionTracker:
    """Mutex-guarded set of ExecutionHandles keyed by envelope id."""

    def __init__(self) -> None:
        self._handles: dict[str, ExecutionHandle] = {}
        self._lock = threading.Lock()

    def add(self, handle: ExecutionHandle) -> bool:
        """Register a handle.

        Returns:
            False if a handle for the same envelope id is already present
            (at most one handle per envelope id per process).
        """
        with self._lock:
            if handle.envelope_id in self._handles:
                return False
            self._handles[handle.envelope_id] = handle
            return True

    def remove(self, envelope_id: str) -> ExecutionHandle | None:
        """Remove and return the handle for ``envelope_id`` if present."""
        with self._lock:
            return self._handles.pop(envelope_id, None)

    def get(self, envelope_id: str) -> ExecutionHandle | None:
        with self._lock:
            return self._handles.get(envelope_id)

    def size(self) -> int:
        with self._lock:
            return len(self._handles)

    def snapshot(self) -> tuple[ExecutionHandle, ...]:
        """Point-in-time copy of the registered handles, oldest first."""
        with self._lock:
            handles = tuple(self._handles.values())
        return tuple(sorted(handles, key=lambda h: h.started_at))


__all__ = ["ExecutionTracker"]
