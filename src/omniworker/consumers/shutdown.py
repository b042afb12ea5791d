# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Three-phase graceful shutdown for a worker process.

Phases run strictly in order and never return to RUNNING:

    RUNNING -> STOPPING_INTAKE -> DRAINING -> TEARING_DOWN -> EXITED

1. STOPPING_INTAKE: the consume loop stops claiming. Its in-flight claim
   wait and monitor task are cancelled, bounded by
   ``intake_stop_timeout_seconds``.
2. DRAINING: poll the ExecutionTracker until it is empty. There is no
   internal timeout; the process supervisor's grace period is the outer
   bound. Executions are never cancelled here.
3. TEARING_DOWN: leave the consumer group (residual pending entries are
   returned to the pool), close broker connections, flush the event
   publisher and stop the sidecar proxy. Each step is best effort.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import StrEnum

import httpx

from omniworker.consumers.config import ConfigWorker
from omniworker.consumers.consumer_loop import ConsumerLoop
from omniworker.execution.tracker import ExecutionTracker
from omniworker.publisher.event_publisher import EventPublisher
from omniworker.streams.client import StreamClient
from omniworker.streams.models import ConsumerIdentity

logger = logging.getLogger(__name__)


class EnumShutdownPhase(StrEnum):
    """Shutdown state machine phases."""

    RUNNING = "running"
    STOPPING_INTAKE = "stopping_intake"
    DRAINING = "draining"
    TEARING_DOWN = "tearing_down"
    EXITED = "exited"


class ShutdownCoordinator:
    """Drives a worker through the shutdown phases exactly once."""

    def __init__(
        self,
        config: ConfigWorker,
        identity: ConsumerIdentity,
        consumer_loop: ConsumerLoop,
        tracker: ExecutionTracker,
        client: StreamClient,
        publisher: EventPublisher | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._identity = identity
        self._consumer_loop = consumer_loop
        self._tracker = tracker
        self._client = client
        self._publisher = publisher
        self._http_client = http_client

        self._requested = asyncio.Event()
        self._reason: str | None = None
        self._phase = EnumShutdownPhase.RUNNING

    @property
    def phase(self) -> EnumShutdownPhase:
        return self._phase

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def shutdown_requested(self) -> bool:
        return self._requested.is_set()

    def request_shutdown(self, reason: str) -> None:
        """Trigger shutdown. Safe to call from a signal handler callback.

        Only the first request counts; later ones are logged and ignored.
        """
        if self._requested.is_set():
            logger.warning(
                "Shutdown already in progress, ignoring request",
                extra={"reason": reason, "phase": self._phase.value},
            )
            return
        self._reason = reason
        self._requested.set()
        logger.info("Shutdown requested", extra={"reason": reason})

    async def wait_and_shutdown(self) -> int:
        """Block until a shutdown is requested, then run it."""
        await self._requested.wait()
        return await self.shutdown()

    async def shutdown(self) -> int:
        """Run all three phases and return the process exit code."""
        if self._phase != EnumShutdownPhase.RUNNING:
            logger.warning(
                "Shutdown sequence already started",
                extra={"phase": self._phase.value},
            )
            return 0
        if not self._requested.is_set():
            self.request_shutdown("shutdown() called directly")

        started = time.monotonic()
        completed_before = self._consumer_loop.metrics.executions_completed

        self._set_phase(EnumShutdownPhase.STOPPING_INTAKE)
        await self._stop_intake()

        self._set_phase(EnumShutdownPhase.DRAINING)
        await self._drain(started, completed_before)

        self._set_phase(EnumShutdownPhase.TEARING_DOWN)
        await self._teardown()

        self._set_phase(EnumShutdownPhase.EXITED)
        logger.info(
            "Shutdown complete",
            extra={
                "consumer": self._identity.name,
                "elapsed_seconds": round(time.monotonic() - started, 3),
            },
        )
        return 0

    def _set_phase(self, phase: EnumShutdownPhase) -> None:
        logger.info(
            f"Shutdown phase {self._phase.value} -> {phase.value}",
            extra={"consumer": self._identity.name},
        )
        self._phase = phase

    # =========================================================================
    # Phase 1
    # =========================================================================

    async def _stop_intake(self) -> None:
        try:
            stopped = await self._consumer_loop.stop_intake(
                self._config.intake_stop_timeout_seconds
            )
        except Exception as e:
            logger.error(f"Error stopping intake: {e}", exc_info=True)
            return
        if not stopped:
            logger.warning("Intake stop not confirmed, continuing to drain")

    # =========================================================================
    # Phase 2
    # =========================================================================

    async def _drain(self, started: float, completed_before: int) -> None:
        interval = self._config.drain_poll_interval_seconds
        while True:
            active = self._tracker.size()
            completed = self._consumer_loop.metrics.executions_completed - completed_before
            logger.info(
                "Draining in-flight executions",
                extra={
                    "active": active,
                    "completed_since_start": completed,
                    "elapsed": round(time.monotonic() - started, 3),
                },
            )
            if active == 0:
                return
            await asyncio.sleep(interval)

    # =========================================================================
    # Phase 3
    # =========================================================================

    async def _teardown(self) -> None:
        try:
            released = await self._client.remove_consumer(self._identity.name)
            logger.info(
                "Left consumer group",
                extra={
                    "consumer": self._identity.name,
                    "group": self._identity.group_name,
                    "released": released,
                },
            )
        except Exception as e:
            logger.error(f"Failed to remove consumer {self._identity.name}: {e}")

        try:
            await self._client.close()
        except Exception as e:
            logger.error(f"Failed to close broker connections: {e}")

        if self._publisher is not None:
            try:
                await self._publisher.stop()
            except Exception as e:
                logger.error(f"Failed to flush event publisher: {e}")

        if self._config.sidecar_quit_url:
            await self._quit_sidecar(self._config.sidecar_quit_url)

    async def _quit_sidecar(self, url: str) -> None:
        client = self._http_client or httpx.AsyncClient(timeout=5.0)
        try:
            response = await client.post(url)
            logger.info(
                "Sidecar quit requested",
                extra={"url": url, "status_code": response.status_code},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Sidecar quit request to {url} failed: {e}")
        finally:
            if self._http_client is None:
                await client.aclose()


__all__ = ["EnumShutdownPhase", "ShutdownCoordinator"]
