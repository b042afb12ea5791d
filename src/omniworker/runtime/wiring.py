# SPDX-FileCopyrightText: 2025 OmniNode.ai Inc.
# SPDX-License-Identifier: MIT

"""Component wiring for a worker process.

Builds the stream client, tracker, settlement, publisher, consume loop and
shutdown coordinator from configuration, and loads the agent executor from
its import path.

Usage:
    >>> runtime = build_worker_runtime(executor=MyExecutor())
    >>> exit_code = await runtime.run()
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from dataclasses import dataclass

from omniworker.consumers.config import ConfigWorker
from omniworker.consumers.consumer_loop import ConsumerLoop
from omniworker.consumers.settlement import AckDeleteManager, PendingDeletionLedger
from omniworker.consumers.shutdown import ShutdownCoordinator
from omniworker.execution.advisory_lock import AdvisoryLock
from omniworker.execution.models import ProtocolAgentExecutor
from omniworker.execution.tracker import ExecutionTracker
from omniworker.lib.errors import ExecutorLoadError, WorkerConfigError
from omniworker.publisher.event_publisher import EventPublisher
from omniworker.publisher.publisher_config import ConfigEventPublisher
from omniworker.streams.client import StreamClient
from omniworker.streams.config import ConfigStream
from omniworker.streams.models import ConsumerIdentity

logger = logging.getLogger(__name__)


def load_executor(import_path: str) -> ProtocolAgentExecutor:
    """Load an agent executor from ``"package.module:attribute"``.

    A class or zero-argument factory is called; any other attribute is used
    as the executor itself.

    Raises:
        ExecutorLoadError: If the path is malformed, the import fails, or
            the result does not implement ProtocolAgentExecutor.
    """
    module_name, sep, attr_name = import_path.partition(":")
    if not sep or not module_name or not attr_name:
        raise ExecutorLoadError(
            f"Executor path must look like 'package.module:attr', got {import_path!r}"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ExecutorLoadError(
            f"Cannot import executor module {module_name!r}: {e}",
            details={"import_path": import_path},
        ) from e
    try:
        target = getattr(module, attr_name)
    except AttributeError as e:
        raise ExecutorLoadError(
            f"Module {module_name!r} has no attribute {attr_name!r}",
            details={"import_path": import_path},
        ) from e

    executor = target
    if isinstance(target, type) or (callable(target) and not hasattr(target, "execute")):
        try:
            executor = target()
        except Exception as e:
            raise ExecutorLoadError(
                f"Failed to construct executor from {import_path!r}: {e}",
                details={"import_path": import_path},
            ) from e
    if not isinstance(executor, ProtocolAgentExecutor):
        raise ExecutorLoadError(
            f"{import_path!r} does not provide an async execute(envelope) method",
            details={"import_path": import_path},
        )
    return executor


def check_reclaim_threshold(stream_config: ConfigStream, worker_config: ConfigWorker) -> None:
    """Reject a reclaim threshold that lets other workers take live leases.

    An entry that is still executing sits idle in the pending-entry list for
    up to ``execution_timeout_seconds``. Reclaiming it any sooner runs the
    same envelope twice.

    Raises:
        WorkerConfigError: If ``reclaim_idle_ms`` does not exceed the
            execution timeout.
    """
    timeout_ms = worker_config.execution_timeout_seconds * 1000
    if stream_config.reclaim_idle_ms <= timeout_ms:
        raise WorkerConfigError(
            f"OMNIWORKER_STREAM_RECLAIM_IDLE_MS ({stream_config.reclaim_idle_ms}) must exceed "
            f"the execution timeout ({timeout_ms:.0f} ms)",
            details={
                "reclaim_idle_ms": stream_config.reclaim_idle_ms,
                "execution_timeout_seconds": worker_config.execution_timeout_seconds,
            },
        )


@dataclass
class WorkerRuntime:
    """All components of one worker process, wired together."""

    identity: ConsumerIdentity
    client: StreamClient
    tracker: ExecutionTracker
    publisher: EventPublisher
    settlement: AckDeleteManager
    consumer_loop: ConsumerLoop
    coordinator: ShutdownCoordinator

    async def run(self) -> int:
        """Consume until shutdown is requested, then shut down gracefully.

        If the consume loop exits on its own, shutdown is requested so the
        three phases still run, and the exit code is 1.
        """
        await self.client.ensure_group()
        self.publisher.start()
        loop_task = asyncio.create_task(self.consumer_loop.run(), name="consume-loop")
        shutdown_task = asyncio.create_task(
            self.coordinator.wait_and_shutdown(), name="shutdown"
        )
        logger.info(
            "Worker started",
            extra={
                "consumer": self.identity.name,
                "group": self.identity.group_name,
                "stream": self.identity.stream_name,
            },
        )
        crashed = False
        try:
            await asyncio.wait({loop_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
            if loop_task.done() and not self.coordinator.shutdown_requested:
                crashed = True
                error = None if loop_task.cancelled() else loop_task.exception()
                logger.error(
                    "Consume loop exited unexpectedly",
                    exc_info=error,
                    extra={"consumer": self.identity.name},
                )
                self.coordinator.request_shutdown("consume loop crashed")
            exit_code = await shutdown_task
        finally:
            for task in (loop_task, shutdown_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(loop_task, shutdown_task, return_exceptions=True)
        return 1 if crashed else exit_code


def build_worker_runtime(
    executor: ProtocolAgentExecutor | None = None,
    stream_config: ConfigStream | None = None,
    worker_config: ConfigWorker | None = None,
    publisher_config: ConfigEventPublisher | None = None,
    client: StreamClient | None = None,
    publisher: EventPublisher | None = None,
) -> WorkerRuntime:
    """Wire a worker from configuration.

    Raises:
        ExecutorLoadError: If no executor is given and none is configured,
            or the configured one cannot be loaded.
        WorkerConfigError: If the reclaim threshold does not exceed the
            execution timeout.
    """
    stream_config = stream_config or ConfigStream()
    worker_config = worker_config or ConfigWorker()
    publisher_config = publisher_config or ConfigEventPublisher()
    check_reclaim_threshold(stream_config, worker_config)

    if executor is None:
        if not worker_config.executor:
            raise ExecutorLoadError(
                "No agent executor configured (set OMNIWORKER_WORKER_EXECUTOR)"
            )
        executor = load_executor(worker_config.executor)

    identity = ConsumerIdentity.from_environment(
        group_name=stream_config.group_name,
        stream_name=stream_config.stream_name,
        env_var=stream_config.consumer_name_env,
    )
    client = client or StreamClient(stream_config)
    publisher = publisher or EventPublisher(publisher_config)
    tracker = ExecutionTracker()
    settlement = AckDeleteManager(
        client,
        PendingDeletionLedger(worker_config.pending_deletion_ledger_path),
        aggressive_delete=worker_config.aggressive_delete,
        publisher=publisher,
    )
    advisory_lock = AdvisoryLock(
        client,
        ttl_seconds=worker_config.execution_timeout_seconds,
        enabled=worker_config.advisory_lock_enabled,
    )
    consumer_loop = ConsumerLoop(
        config=worker_config,
        identity=identity,
        client=client,
        executor=executor,
        tracker=tracker,
        settlement=settlement,
        publisher=publisher,
        advisory_lock=advisory_lock,
    )
    coordinator = ShutdownCoordinator(
        config=worker_config,
        identity=identity,
        consumer_loop=consumer_loop,
        tracker=tracker,
        client=client,
        publisher=publisher,
    )
    return WorkerRuntime(
        identity=identity,
        client=client,
        tracker=tracker,
        publisher=publisher,
        settlement=settlement,
        consumer_loop=consumer_loop,
        coordinator=coordinator,
    )


__all__ = [
    "WorkerRuntime",
    "build_worker_runtime",
    "check_reclaim_threshold",
    "load_executor",
]
