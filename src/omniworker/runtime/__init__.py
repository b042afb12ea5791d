"""Worker process runtime: wiring and the ``start`` entrypoint."""

from __future__ import annotations

from omniworker.runtime.wiring import WorkerRuntime, build_worker_runtime, load_executor

__all__: list[str] = ["WorkerRuntime", "build_worker_runtime", "load_executor"]
