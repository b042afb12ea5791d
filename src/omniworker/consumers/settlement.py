# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Settlement of processed stream entries.

Settlement = acknowledgment, plus physical deletion when aggressive delete
is enabled. The two failure kinds are handled differently:

    - Ack failure: logged at error and surfaced as a lifecycle event. It may
      mean the lease was lost (the entry was reclaimed by another consumer).
      Deletion is skipped.
    - Delete failure: non-fatal bookkeeping. A PendingDeletionRecord is
      appended to a ledger outside the broker and the delete is not retried
      inline, so settlement latency stays bounded.

``settle()`` never raises; one bad entry must not crash the consume loop.

Ledger Format:
    - One JSON object per line (JSONL), append-only
    - Reconciled by ``reconcile_pending_deletions()``, which re-issues the
      deletes and rotates the file to ``<name>.<timestamp>.reconciled``
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from omniworker.lib.errors import BrokerError
from omniworker.publisher.publisher_models import (
    EnumLifecycleEventType,
    ModelLifecycleEvent,
)

if TYPE_CHECKING:
    from omniworker.publisher.event_publisher import EventPublisher
    from omniworker.streams.client import StreamClient

logger = logging.getLogger(__name__)


class PendingDeletionRecord(BaseModel):
    """An acknowledged entry whose physical delete failed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    envelope_id: str = Field(..., min_length=1)
    stream_name: str = Field(..., min_length=1)
    error: str
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("recorded_at", mode="before")
    @classmethod
    def ensure_utc_aware(cls, v: object) -> object:
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        if isinstance(v, datetime) and v.utcoffset() != timedelta(0):
            return v.astimezone(UTC)
        return v


class ModelSettlementResult(BaseModel):
    """What happened while settling one entry."""

    model_config = ConfigDict(frozen=True)

    envelope_id: str
    acknowledged: bool
    deleted: bool = False
    pending_deletion_recorded: bool = False


class PendingDeletionLedger:
    """Append-only JSONL file of PendingDeletionRecords.

    Concurrency: coroutine-safe using asyncio.Lock (not thread-safe).
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def append(self, record: PendingDeletionRecord) -> bool:
        """Append one record. Returns False if the write failed."""
        async with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as fh:
                    fh.write(record.model_dump_json() + "\n")
                return True
            except OSError:
                logger.exception(
                    "Failed to write pending deletion record %s to %s",
                    record.envelope_id,
                    self._path,
                )
                return False

    async def read_all(self) -> list[PendingDeletionRecord]:
        """Read every parseable record; malformed lines are logged and skipped."""
        async with self._lock:
            if not self._path.exists():
                return []
            records: list[PendingDeletionRecord] = []
            with self._path.open(encoding="utf-8") as fh:
                for line_no, line in enumerate(fh, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(PendingDeletionRecord.model_validate_json(line))
                    except ValidationError as e:
                        logger.warning(
                            f"Skipping malformed ledger line {line_no} in {self._path}: {e}"
                        )
            return records

    async def rotate(self) -> Path | None:
        """Move the ledger aside once its records are reconciled."""
        async with self._lock:
            if not self._path.exists():
                return None
            stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S%f")
            target = self._path.with_name(f"{self._path.name}.{stamp}.reconciled")
            self._path.rename(target)
            return target


class AckDeleteManager:
    """Acknowledge and optionally delete processed entries."""

    def __init__(
        self,
        client: StreamClient,
        ledger: PendingDeletionLedger,
        aggressive_delete: bool = False,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._client = client
        self._ledger = ledger
        self._aggressive_delete = aggressive_delete
        self._publisher = publisher

    async def settle(
        self, envelope_id: str, *, force_delete: bool = False
    ) -> ModelSettlementResult:
        """Settle one entry. Never raises.

        Args:
            envelope_id: Stream entry id to settle.
            force_delete: Delete even when aggressive delete is off (used
                for poison messages).
        """
        try:
            await self._client.ack(envelope_id)
        except Exception as e:
            logger.error(
                "Acknowledgment failed, lease may be lost",
                extra={"envelope_id": envelope_id, "error": str(e)},
            )
            self._emit_ack_failure(envelope_id, str(e))
            return ModelSettlementResult(envelope_id=envelope_id, acknowledged=False)

        if not (self._aggressive_delete or force_delete):
            return ModelSettlementResult(envelope_id=envelope_id, acknowledged=True)

        try:
            await self._client.delete(envelope_id)
        except Exception as e:
            recorded = await self._ledger.append(
                PendingDeletionRecord(
                    envelope_id=envelope_id,
                    stream_name=self._client.stream_name,
                    error=str(e),
                )
            )
            logger.warning(
                "Delete failed, recorded for reconciliation",
                extra={"envelope_id": envelope_id, "error": str(e), "recorded": recorded},
            )
            return ModelSettlementResult(
                envelope_id=envelope_id,
                acknowledged=True,
                pending_deletion_recorded=recorded,
            )

        return ModelSettlementResult(envelope_id=envelope_id, acknowledged=True, deleted=True)

    def _emit_ack_failure(self, envelope_id: str, error: str) -> None:
        if self._publisher is None:
            return
        self._publisher.publish(
            ModelLifecycleEvent(
                event_type=EnumLifecycleEventType.SETTLEMENT_FAILED,
                payload={"envelope_id": envelope_id, "error": error},
            )
        )


async def reconcile_pending_deletions(
    client: StreamClient, ledger: PendingDeletionLedger
) -> tuple[int, int]:
    """Re-issue deletes for every ledger record.

    XDEL is idempotent, so records for entries already gone count as
    reconciled. The ledger is rotated only when every delete succeeded.

    Returns:
        (reconciled, failed) counts.
    """
    records = await ledger.read_all()
    reconciled = failed = 0
    for record in records:
        if record.stream_name != client.stream_name:
            logger.warning(
                f"Ledger record {record.envelope_id} belongs to stream "
                f"{record.stream_name}, skipping"
            )
            failed += 1
            continue
        try:
            await client.delete(record.envelope_id)
            reconciled += 1
        except BrokerError as e:
            failed += 1
            logger.warning(
                f"Reconcile delete failed for {record.envelope_id}: {e}",
            )
    if records and failed == 0:
        archived = await ledger.rotate()
        logger.info(f"Reconciled {reconciled} pending deletions, ledger moved to {archived}")
    return reconciled, failed


__all__ = [
    "AckDeleteManager",
    "ModelSettlementResult",
    "PendingDeletionLedger",
    "PendingDeletionRecord",
    "reconcile_pending_deletions",
]
