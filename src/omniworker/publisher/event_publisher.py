"""Ordered, decoupled delivery of lifecycle events.

One FIFO queue, one worker task per process. Execution tasks only ever
produce (``publish`` never blocks); the worker only ever consumes, so the
sink sees events in enqueue order without further synchronization.

Delivery is best effort: a failed delivery is logged and the event dropped.
Events are observability, not the system of record.
"""

from __future__ import annotations

import asyncio
import logging

from omniworker.lib.log_context import bound_context, current_context
from omniworker.publisher.publisher_config import ConfigEventPublisher
from omniworker.publisher.publisher_models import ModelLifecycleEvent
from omniworker.publisher.sinks import HttpEventSink, LoggingEventSink, ProtocolEventSink

logger = logging.getLogger(__name__)


class EventPublisher:
    """Single-queue, single-worker lifecycle event publisher."""

    def __init__(
        self,
        config: ConfigEventPublisher,
        sink: ProtocolEventSink | None = None,
    ) -> None:
        self._config = config
        self._sink: ProtocolEventSink = sink or self._default_sink(config)
        self._queue: asyncio.Queue[ModelLifecycleEvent] = asyncio.Queue(
            maxsize=config.max_queue_size
        )
        self._worker_task: asyncio.Task[None] | None = None
        self.delivered = 0
        self.dropped = 0

    @staticmethod
    def _default_sink(config: ConfigEventPublisher) -> ProtocolEventSink:
        if config.sink_url:
            return HttpEventSink(
                sink_url=config.sink_url,
                notification_url=config.notification_url,
                timeout_seconds=config.request_timeout_seconds,
            )
        return LoggingEventSink()

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def queue_size(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Start the worker task. Idempotent."""
        if self.is_running:
            return
        self._worker_task = asyncio.create_task(
            self._worker_loop(), name="omniworker-event-publisher"
        )
        logger.info("EventPublisher started")

    def publish(self, event: ModelLifecycleEvent) -> bool:
        """Enqueue an event without blocking.

        The caller's logging context is captured into ``ordering_context``
        unless the event already carries one.

        Returns:
            False if the queue is bounded and full (the event is dropped).
        """
        if not event.ordering_context:
            captured = current_context()
            if captured:
                event = event.model_copy(update={"ordering_context": captured})
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Event queue full, dropping event",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type.value,
                    "queue_size": self._queue.qsize(),
                },
            )
            return False
        return True

    async def _worker_loop(self) -> None:
        logger.debug("Event publisher loop started")
        while True:
            event = await self._queue.get()
            try:
                with bound_context(event.ordering_context):
                    await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: ModelLifecycleEvent) -> None:
        try:
            await self._sink.deliver(event)
            self.delivered += 1
        except Exception as e:
            self.dropped += 1
            logger.warning(
                f"Failed to deliver event {event.event_id}, dropping: {e}",
                extra={"event_type": event.event_type.value},
            )
        if event.is_external_notification:
            try:
                await self._sink.notify(event)
            except Exception as e:
                logger.warning(
                    f"External notification failed for event {event.event_id}: {e}",
                    extra={"event_type": event.event_type.value},
                )

    async def flush(self, timeout: float | None = None) -> bool:
        """Wait until every queued event has been processed.

        Returns:
            False if the timeout elapsed first or the worker is not running.
        """
        if not self.is_running:
            return self._queue.empty()
        wait_for = self._config.flush_timeout_seconds if timeout is None else timeout
        try:
            async with asyncio.timeout(wait_for):
                await self._queue.join()
        except TimeoutError:
            logger.warning(
                "Event flush timed out, some events may be lost",
                extra={"remaining": self._queue.qsize()},
            )
            return False
        return True

    async def stop(self) -> None:
        """Flush, stop the worker and close the sink. Safe to call twice."""
        if self._worker_task is None:
            return
        await self.flush()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None
        try:
            await self._sink.close()
        except Exception as e:
            logger.warning(f"Error closing event sink: {e}")
        logger.info(
            "EventPublisher stopped",
            extra={"delivered": self.delivered, "dropped": self.dropped},
        )


__all__: list[str] = ["EventPublisher"]
