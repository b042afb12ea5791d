# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Removal of ghost consumers from the worker consumer group.

A consumer whose process is gone (scaled down, OOM-killed, evicted) stays
registered in the group and keeps its pending entries. This cleaner
compares the group's consumers with the live identity set and removes the
ones that are both absent from it and idle past the execution timeout
plus a safety margin. Removal hands their pending entries back to the
group pool so live consumers reclaim them.

Safety gates, in order:
    1. Live consumers are never touched.
    2. Idle time must exceed ``execution_timeout + safety_margin``; a
       consumer below it may still be finishing long work.
    3. ``dry_run`` reports candidates without removing anything.

If the live set cannot be fetched the whole run is aborted.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from omniworker.cleanup.config import ConfigCleanup
from omniworker.cleanup.membership import ProtocolMembershipSource
from omniworker.streams.client import StreamClient

logger = logging.getLogger(__name__)


class EnumSkipReason(StrEnum):
    IDLE_BELOW_THRESHOLD = "idle_below_threshold"
    DRY_RUN = "dry_run"
    REMOVAL_FAILED = "removal_failed"


class ModelCleanupCandidate(BaseModel):
    """A group consumer with no live process behind it."""

    model_config = ConfigDict(frozen=True)

    consumer_name: str
    idle_seconds: float
    pending_count: int


class ModelSkippedCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate: ModelCleanupCandidate
    reason: EnumSkipReason


class ModelRemovedConsumer(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate: ModelCleanupCandidate
    released: int


class ModelCleanupReport(BaseModel):
    """Outcome of one cleanup run."""

    model_config = ConfigDict(frozen=True)

    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    aborted: bool = False
    abort_reason: str | None = None
    dry_run: bool = False
    consumers_seen: int = 0
    live_count: int = 0
    candidates: tuple[ModelCleanupCandidate, ...] = ()
    removed: tuple[ModelRemovedConsumer, ...] = ()
    skipped: tuple[ModelSkippedCandidate, ...] = ()

    @property
    def released_total(self) -> int:
        return sum(r.released for r in self.removed)


class DeadConsumerCleaner:
    """Periodic ghost consumer removal for one stream/group."""

    def __init__(
        self,
        config: ConfigCleanup,
        client: StreamClient,
        membership: ProtocolMembershipSource,
    ) -> None:
        self._config = config
        self._client = client
        self._membership = membership

    def _abort(self, reason: str) -> ModelCleanupReport:
        logger.error("Cleanup run aborted", extra={"reason": reason})
        return ModelCleanupReport(aborted=True, abort_reason=reason, dry_run=self._config.dry_run)

    async def run_once(self) -> ModelCleanupReport:
        """Run one comparison of group consumers against live identities."""
        try:
            live = await self._membership.live_identities()
        except Exception as e:
            return self._abort(f"membership fetch failed: {e}")
        try:
            consumers = await self._client.list_consumers()
        except Exception as e:
            return self._abort(f"consumer listing failed: {e}")

        threshold = self._config.idle_threshold_seconds
        candidates: list[ModelCleanupCandidate] = []
        removed: list[ModelRemovedConsumer] = []
        skipped: list[ModelSkippedCandidate] = []

        for info in consumers:
            if info.name in live:
                continue
            candidate = ModelCleanupCandidate(
                consumer_name=info.name,
                idle_seconds=info.idle_seconds,
                pending_count=info.pending_count,
            )
            if candidate.idle_seconds <= threshold:
                logger.info(
                    "Dead consumer below idle threshold, leaving it",
                    extra={
                        "consumer": candidate.consumer_name,
                        "idle_seconds": candidate.idle_seconds,
                        "threshold_seconds": threshold,
                    },
                )
                skipped.append(
                    ModelSkippedCandidate(
                        candidate=candidate, reason=EnumSkipReason.IDLE_BELOW_THRESHOLD
                    )
                )
                continue

            candidates.append(candidate)
            if self._config.dry_run:
                logger.info(
                    "[dry-run] Would remove consumer",
                    extra={
                        "consumer": candidate.consumer_name,
                        "idle_seconds": candidate.idle_seconds,
                        "pending": candidate.pending_count,
                    },
                )
                skipped.append(
                    ModelSkippedCandidate(candidate=candidate, reason=EnumSkipReason.DRY_RUN)
                )
                continue

            try:
                released = await self._client.remove_consumer(candidate.consumer_name)
            except Exception as e:
                logger.error(
                    f"Failed to remove consumer {candidate.consumer_name}: {e}",
                )
                skipped.append(
                    ModelSkippedCandidate(
                        candidate=candidate, reason=EnumSkipReason.REMOVAL_FAILED
                    )
                )
                continue
            logger.info(
                "Removed dead consumer",
                extra={
                    "consumer": candidate.consumer_name,
                    "idle_seconds": candidate.idle_seconds,
                    "released": released,
                },
            )
            removed.append(ModelRemovedConsumer(candidate=candidate, released=released))

        report = ModelCleanupReport(
            dry_run=self._config.dry_run,
            consumers_seen=len(consumers),
            live_count=len(live),
            candidates=tuple(candidates),
            removed=tuple(removed),
            skipped=tuple(skipped),
        )
        logger.info(
            "Cleanup run finished",
            extra={
                "consumers_seen": report.consumers_seen,
                "candidates": len(report.candidates),
                "removed": len(report.removed),
                "released": report.released_total,
                "dry_run": report.dry_run,
            },
        )
        return report

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Run every ``interval_seconds`` until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Cleanup run failed, will retry next interval")
            try:
                async with asyncio.timeout(self._config.interval_seconds):
                    await stop_event.wait()
            except TimeoutError:
                pass


__all__ = [
    "DeadConsumerCleaner",
    "EnumSkipReason",
    "ModelCleanupCandidate",
    "ModelCleanupReport",
    "ModelRemovedConsumer",
    "ModelSkippedCandidate",
]
