# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Bounded-concurrency consume loop for agent execution tasks.

Keeps up to ``batch_size`` executions running at once. Each iteration
computes the free slots from the ExecutionTracker, claims at most that many
entries from the consumer group, decodes them and dispatches one asyncio
task per envelope.

Delivery semantics:
    - Every decoded envelope is settled exactly once, whatever its outcome
      (success, failure, timeout). Failed executions are not retried here;
      the outcome is reported as a lifecycle event.
    - Undecodable entries are poison messages: acknowledged and deleted
      immediately, never retried, and the executor is never invoked.
    - A failure inside one execution task never propagates past that task.

Architecture:
    ```
    Redis Stream (consumer group)
           |
           v  claim(available slots)
    ConsumerLoop ---- decode ----> poison? -> AckDeleteManager
           |
           v  one task per envelope
    ProtocolAgentExecutor (execution_timeout or cancel token)
           |
           v
    EventPublisher (lifecycle events) + AckDeleteManager (settle)
    ```

Stopping:
    ``stop_intake()`` flips the stop flag and cancels the in-flight claim
    wait and the monitor task. Dispatched executions are never cancelled
    here; the ShutdownCoordinator waits for them to drain. A single
    execution can be cancelled through ``cancel_execution()``, which sets its
    handle's cancel token and yields a FAILED outcome.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from omniworker.consumers.config import ConfigWorker
from omniworker.consumers.settlement import AckDeleteManager
from omniworker.execution.advisory_lock import AdvisoryLock
from omniworker.execution.models import (
    EnumExecutionStatus,
    ExecutionHandle,
    ModelExecutionOutcome,
    ProtocolAgentExecutor,
)
from omniworker.execution.tracker import ExecutionTracker
from omniworker.lib.errors import BrokerError, EnvelopeDecodeError
from omniworker.lib.log_context import bound_context
from omniworker.publisher.event_publisher import EventPublisher
from omniworker.publisher.publisher_models import (
    EnumLifecycleEventType,
    ModelLifecycleEvent,
)
from omniworker.streams.client import StreamClient, StreamEntry
from omniworker.streams.models import ConsumerIdentity, ModelTaskEnvelope

logger = logging.getLogger(__name__)


# =============================================================================
# Consumer Metrics
# =============================================================================


class ConsumerMetrics:
    """Counters for the consume loop.

    Mutated only from tasks on the loop's own event loop, so plain integer
    increments are safe.
    """

    def __init__(self) -> None:
        self.started_at: datetime = datetime.now(UTC)
        self.claims: int = 0
        self.envelopes_claimed: int = 0
        self.executions_started: int = 0
        self.executions_succeeded: int = 0
        self.executions_failed: int = 0
        self.executions_timed_out: int = 0
        self.decode_failures: int = 0
        self.duplicates_skipped: int = 0
        self.claim_errors: int = 0
        self.last_claim_at: datetime | None = None

    @property
    def executions_completed(self) -> int:
        return self.executions_succeeded + self.executions_failed + self.executions_timed_out

    def snapshot(self) -> dict[str, object]:
        return {
            "claims": self.claims,
            "envelopes_claimed": self.envelopes_claimed,
            "executions_started": self.executions_started,
            "executions_completed": self.executions_completed,
            "executions_succeeded": self.executions_succeeded,
            "executions_failed": self.executions_failed,
            "executions_timed_out": self.executions_timed_out,
            "decode_failures": self.decode_failures,
            "duplicates_skipped": self.duplicates_skipped,
            "claim_errors": self.claim_errors,
            "last_claim_at": self.last_claim_at.isoformat() if self.last_claim_at else None,
        }


# =============================================================================
# Consumer Loop
# =============================================================================


class ConsumerLoop:
    """Claims envelopes and runs them through the agent executor.

    Example:
        >>> loop = ConsumerLoop(config, identity, client, executor, tracker, settlement)
        >>> run_task = asyncio.create_task(loop.run())
        >>> ...
        >>> await loop.stop_intake(timeout=0.9)
    """

    def __init__(
        self,
        config: ConfigWorker,
        identity: ConsumerIdentity,
        client: StreamClient,
        executor: ProtocolAgentExecutor,
        tracker: ExecutionTracker,
        settlement: AckDeleteManager,
        publisher: EventPublisher | None = None,
        advisory_lock: AdvisoryLock | None = None,
    ) -> None:
        self._config = config
        self._identity = identity
        self._client = client
        self._codec = client.codec
        self._executor = executor
        self._tracker = tracker
        self._settlement = settlement
        self._publisher = publisher
        self._advisory_lock = advisory_lock

        self._stop_requested = asyncio.Event()
        self._slot_freed = asyncio.Event()
        self._claim_task: asyncio.Task[list[StreamEntry]] | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._execution_tasks: set[asyncio.Task[None]] = set()

        self.metrics = ConsumerMetrics()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def consumer_name(self) -> str:
        return self._identity.name

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def available_slots(self) -> int:
        return self._config.batch_size - self._tracker.size()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self) -> None:
        """Run the claim/dispatch loop until ``stop_intake()`` is called."""
        self._run_task = asyncio.current_task()
        self._monitor_task = asyncio.create_task(
            self._monitor_loop(), name=f"monitor-{self.consumer_name}"
        )
        logger.info(
            "Consume loop started",
            extra={
                "consumer": self.consumer_name,
                "group": self._identity.group_name,
                "stream": self._identity.stream_name,
                "batch_size": self._config.batch_size,
            },
        )
        try:
            while not self._stop_requested.is_set():
                available = self.available_slots()
                if available <= 0:
                    await self._wait_for_slot()
                    continue
                await self.claim_and_dispatch(available)
        finally:
            logger.info(
                "Consume loop exiting",
                extra={
                    "consumer": self.consumer_name,
                    "active": self._tracker.size(),
                    "metrics": self.metrics.snapshot(),
                },
            )

    async def stop_intake(self, timeout: float) -> bool:
        """Stop claiming and cancel the claim wait and monitor tasks.

        Waits at most ``timeout`` seconds for the cancellation to be
        observed. Dispatched executions keep running.

        Returns:
            True if the loop and monitor exited within the timeout.
        """
        self._stop_requested.set()
        self._slot_freed.set()
        pending: list[asyncio.Task[object]] = []
        for task in (self._claim_task, self._monitor_task, self._run_task):
            if task is None or task.done() or task is asyncio.current_task():
                continue
            if task is not self._run_task:
                task.cancel()
            pending.append(task)
        if not pending:
            return True
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning(
                "Intake did not stop within timeout",
                extra={"consumer": self.consumer_name, "timeout_seconds": timeout},
            )
        return not not_done

    async def wait_for_executions(self) -> None:
        """Wait for every dispatched execution task to finish."""
        if self._execution_tasks:
            await asyncio.gather(*list(self._execution_tasks), return_exceptions=True)

    # =========================================================================
    # Claim and Dispatch
    # =========================================================================

    async def claim_and_dispatch(self, available: int) -> int:
        """Claim up to ``available`` entries and dispatch them.

        Returns:
            Number of executions dispatched.
        """
        entries = await self._claim(available)
        dispatched = 0
        for entry_id, fields in entries:
            try:
                envelope = self._codec.decode(entry_id, fields)
            except EnvelopeDecodeError as e:
                await self._discard_poison(entry_id, e)
                continue
            except Exception as e:
                logger.exception(
                    "Unexpected error decoding entry",
                    extra={"consumer": self.consumer_name, "entry_id": entry_id},
                )
                await self._discard_poison(
                    entry_id,
                    EnvelopeDecodeError(
                        f"Unexpected decode failure: {type(e).__name__}: {e}",
                        entry_id=entry_id,
                    ),
                )
                continue
            if self._dispatch(envelope):
                dispatched += 1
        return dispatched

    async def _claim(self, count: int) -> list[StreamEntry]:
        if self._stop_requested.is_set():
            return []
        self._claim_task = asyncio.create_task(
            self._client.claim(self.consumer_name, count, self._config.claim_block_ms)
        )
        try:
            entries = await self._claim_task
        except asyncio.CancelledError:
            if self._stop_requested.is_set():
                logger.debug(
                    "Claim wait cancelled by stop request",
                    extra={"consumer": self.consumer_name},
                )
                return []
            raise
        except BrokerError as e:
            self.metrics.claim_errors += 1
            logger.warning(
                "Claim failed, backing off",
                extra={
                    "consumer": self.consumer_name,
                    "error": str(e),
                    "backoff_seconds": self._config.claim_error_backoff_seconds,
                },
            )
            await self._sleep_unless_stopped(self._config.claim_error_backoff_seconds)
            return []
        finally:
            self._claim_task = None

        self.metrics.claims += 1
        self.metrics.envelopes_claimed += len(entries)
        self.metrics.last_claim_at = datetime.now(UTC)
        return entries

    async def _discard_poison(self, entry_id: str, error: EnvelopeDecodeError) -> None:
        self.metrics.decode_failures += 1
        logger.warning(
            "Discarding undecodable entry",
            extra={
                "consumer": self.consumer_name,
                "entry_id": entry_id,
                "error": error.message,
            },
        )
        await self._settlement.settle(entry_id, force_delete=True)
        self._emit(
            ModelLifecycleEvent(
                event_type=EnumLifecycleEventType.DECODE_FAILED,
                payload={"envelope_id": entry_id, "error": error.message},
            )
        )

    def cancel_execution(self, envelope_id: str) -> bool:
        """Cancel one in-flight execution through its handle's cancel token.

        The execution ends with a FAILED outcome and is settled like any
        other terminal outcome.

        Returns:
            False if no execution for ``envelope_id`` is in flight.
        """
        handle = self._tracker.get(envelope_id)
        if handle is None:
            return False
        logger.warning(
            "Cancelling execution",
            extra={"envelope_id": envelope_id, "correlation_id": handle.correlation_id},
        )
        handle.cancel_token.set()
        return True

    def _dispatch(self, envelope: ModelTaskEnvelope) -> bool:
        envelope_id = envelope.envelope_id or ""
        handle = ExecutionHandle(
            envelope_id=envelope_id, correlation_id=envelope.correlation_id
        )
        if not self._tracker.add(handle):
            # Already executing in this process (re-delivered to us by reclaim)
            self.metrics.duplicates_skipped += 1
            logger.warning(
                "Envelope already in flight, skipping duplicate delivery",
                extra={"envelope_id": envelope_id, "correlation_id": envelope.correlation_id},
            )
            return False

        self.metrics.executions_started += 1
        task = asyncio.create_task(
            self._execute(envelope, handle), name=f"execute-{envelope_id}"
        )
        self._execution_tasks.add(task)
        task.add_done_callback(self._execution_tasks.discard)
        return True

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute(self, envelope: ModelTaskEnvelope, handle: ExecutionHandle) -> None:
        envelope_id = handle.envelope_id
        context = {"correlation_id": envelope.correlation_id, "envelope_id": envelope_id}
        with bound_context(context):
            lock_token: str | None = None
            try:
                if self._advisory_lock is not None:
                    lock_token = await self._advisory_lock.acquire(envelope.correlation_id)
                self._emit(
                    ModelLifecycleEvent.for_envelope(
                        EnumLifecycleEventType.EXECUTION_STARTED, envelope
                    )
                )
                outcome = await self._run_executor(envelope, handle)
                self._record_outcome(envelope, handle, outcome)
            except Exception as e:
                # Bookkeeping failure outside the executor; still settle below
                logger.exception(
                    "Unexpected error supervising execution",
                    extra={"envelope_id": envelope_id, "error": str(e)},
                )
            finally:
                await self._settlement.settle(envelope_id)
                if self._advisory_lock is not None:
                    await self._advisory_lock.release(envelope.correlation_id, lock_token)
                self._tracker.remove(envelope_id)
                self._slot_freed.set()

    async def _run_executor(
        self, envelope: ModelTaskEnvelope, handle: ExecutionHandle
    ) -> ModelExecutionOutcome:
        timeout = self._config.execution_timeout_seconds
        execution = asyncio.create_task(self._call_executor(envelope))
        cancelled = asyncio.create_task(handle.cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {execution, cancelled},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()
            if not execution.done():
                execution.cancel()

        if execution not in done:
            await asyncio.gather(execution, return_exceptions=True)
            if handle.cancel_token.is_set():
                return ModelExecutionOutcome(
                    status=EnumExecutionStatus.FAILED, error="Execution cancelled"
                )
            return ModelExecutionOutcome(
                status=EnumExecutionStatus.TIMED_OUT,
                error=f"Execution exceeded {timeout}s",
            )
        try:
            outcome = execution.result()
        except Exception as e:
            logger.warning(
                "Agent executor raised",
                extra={"envelope_id": envelope.envelope_id, "error": str(e)},
                exc_info=True,
            )
            return ModelExecutionOutcome(
                status=EnumExecutionStatus.FAILED,
                error=f"{type(e).__name__}: {e}",
            )
        return outcome if outcome is not None else ModelExecutionOutcome()

    async def _call_executor(
        self, envelope: ModelTaskEnvelope
    ) -> ModelExecutionOutcome | None:
        return await self._executor.execute(envelope)

    def _record_outcome(
        self,
        envelope: ModelTaskEnvelope,
        handle: ExecutionHandle,
        outcome: ModelExecutionOutcome,
    ) -> None:
        elapsed = round(handle.elapsed_seconds(), 3)
        payload: dict[str, object] = {"elapsed_seconds": elapsed}
        if outcome.status == EnumExecutionStatus.SUCCEEDED:
            self.metrics.executions_succeeded += 1
            event_type = EnumLifecycleEventType.EXECUTION_COMPLETED
            payload["result"] = outcome.result
            logger.info(
                "Execution completed",
                extra={"envelope_id": handle.envelope_id, "elapsed_seconds": elapsed},
            )
        elif outcome.status == EnumExecutionStatus.TIMED_OUT:
            self.metrics.executions_timed_out += 1
            event_type = EnumLifecycleEventType.EXECUTION_TIMED_OUT
            payload["error"] = outcome.error
            logger.error(
                "Execution timed out",
                extra={
                    "envelope_id": handle.envelope_id,
                    "timeout_seconds": self._config.execution_timeout_seconds,
                },
            )
        else:
            self.metrics.executions_failed += 1
            event_type = EnumLifecycleEventType.EXECUTION_FAILED
            payload["error"] = outcome.error
            logger.error(
                "Execution failed",
                extra={"envelope_id": handle.envelope_id, "error": outcome.error},
            )
        self._emit(ModelLifecycleEvent.for_envelope(event_type, envelope, payload))

    def _emit(self, event: ModelLifecycleEvent) -> None:
        if self._publisher is not None:
            self._publisher.publish(event)

    # =========================================================================
    # Waiting and Monitoring
    # =========================================================================

    async def _wait_for_slot(self) -> None:
        self._slot_freed.clear()
        if self.available_slots() > 0 or self._stop_requested.is_set():
            return
        try:
            async with asyncio.timeout(max(self._config.claim_block_ms, 100) / 1000):
                await self._slot_freed.wait()
        except TimeoutError:
            pass

    async def _sleep_unless_stopped(self, seconds: float) -> None:
        try:
            async with asyncio.timeout(seconds):
                await self._stop_requested.wait()
        except TimeoutError:
            pass

    async def _monitor_loop(self) -> None:
        while not self._stop_requested.is_set():
            await asyncio.sleep(self._config.monitor_interval_seconds)
            logger.info(
                "Consumer status",
                extra={
                    "consumer": self.consumer_name,
                    "active": self._tracker.size(),
                    "batch_size": self._config.batch_size,
                    "metrics": self.metrics.snapshot(),
                },
            )

    # =========================================================================
    # Health Check
    # =========================================================================

    def health_check(self) -> dict[str, object]:
        """Health information for monitoring and diagnostics."""
        return {
            "healthy": self.is_running and not self.stop_requested,
            "running": self.is_running,
            "stop_requested": self.stop_requested,
            "consumer": self.consumer_name,
            "group": self._identity.group_name,
            "active": self._tracker.size(),
            "batch_size": self._config.batch_size,
            "metrics": self.metrics.snapshot(),
        }


__all__ = ["ConsumerLoop", "ConsumerMetrics"]
