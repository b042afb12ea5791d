# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Tests for AckDeleteManager and the pending deletion ledger."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from omniworker.consumers.settlement import (
    AckDeleteManager,
    PendingDeletionLedger,
    PendingDeletionRecord,
    reconcile_pending_deletions,
)
from omniworker.lib.errors import BrokerError
from omniworker.publisher.publisher_models import EnumLifecycleEventType


@pytest.fixture
def ledger(tmp_path: Path) -> PendingDeletionLedger:
    return PendingDeletionLedger(tmp_path / "ledger" / "pending-deletions.jsonl")


# =============================================================================
# Settle
# =============================================================================


class TestSettle:
    async def test_ack_only_by_default(self, fake_client, ledger) -> None:
        manager = AckDeleteManager(fake_client, ledger)

        result = await manager.settle("1-0")

        assert result.acknowledged is True
        assert result.deleted is False
        assert fake_client.acked == ["1-0"]
        assert fake_client.deleted == []

    async def test_aggressive_delete(self, fake_client, ledger) -> None:
        manager = AckDeleteManager(fake_client, ledger, aggressive_delete=True)

        result = await manager.settle("1-0")

        assert result.deleted is True
        assert fake_client.deleted == ["1-0"]

    async def test_force_delete_without_aggressive_mode(self, fake_client, ledger) -> None:
        manager = AckDeleteManager(fake_client, ledger, aggressive_delete=False)

        result = await manager.settle("1-0", force_delete=True)

        assert result.acknowledged is True
        assert result.deleted is True

    async def test_failed_delete_records_ledger_entry(self, fake_client, ledger) -> None:
        fake_client.delete_error = BrokerError("XDEL failed: READONLY")
        manager = AckDeleteManager(fake_client, ledger, aggressive_delete=True)

        result = await manager.settle("7-0")

        assert result.acknowledged is True
        assert result.deleted is False
        assert result.pending_deletion_recorded is True
        assert fake_client.acked == ["7-0"]
        records = await ledger.read_all()
        assert len(records) == 1
        assert records[0].envelope_id == "7-0"
        assert records[0].stream_name == fake_client.stream_name
        assert "READONLY" in records[0].error

    async def test_failed_ack_skips_delete_and_emits_event(
        self, fake_client, ledger, recording_publisher
    ) -> None:
        fake_client.ack_error = BrokerError("XACK failed: connection reset")
        manager = AckDeleteManager(
            fake_client, ledger, aggressive_delete=True, publisher=recording_publisher
        )

        result = await manager.settle("3-0")

        assert result.acknowledged is False
        assert fake_client.deleted == []
        assert recording_publisher.event_types() == [
            EnumLifecycleEventType.SETTLEMENT_FAILED.value
        ]
        assert recording_publisher.events[0].payload["envelope_id"] == "3-0"

    async def test_unexpected_exception_never_escapes(self, fake_client, ledger) -> None:
        fake_client.ack_error = RuntimeError("bug in client")
        manager = AckDeleteManager(fake_client, ledger)

        result = await manager.settle("1-0")

        assert result.acknowledged is False


# =============================================================================
# Ledger
# =============================================================================


class TestPendingDeletionLedger:
    async def test_append_creates_parent_and_is_jsonl(self, ledger) -> None:
        for entry_id in ("1-0", "2-0"):
            assert await ledger.append(
                PendingDeletionRecord(envelope_id=entry_id, stream_name="s", error="e")
            )

        lines = ledger.path.read_text().splitlines()
        assert len(lines) == 2
        assert [r.envelope_id for r in await ledger.read_all()] == ["1-0", "2-0"]

    async def test_malformed_lines_skipped(self, ledger) -> None:
        await ledger.append(PendingDeletionRecord(envelope_id="1-0", stream_name="s", error="e"))
        with ledger.path.open("a") as fh:
            fh.write("{not json\n\n")

        records = await ledger.read_all()

        assert [r.envelope_id for r in records] == ["1-0"]

    async def test_missing_file_reads_empty(self, ledger) -> None:
        assert await ledger.read_all() == []
        assert await ledger.rotate() is None

    def test_naive_recorded_at_gets_utc(self) -> None:
        record = PendingDeletionRecord(
            envelope_id="1-0",
            stream_name="s",
            error="e",
            recorded_at=datetime(2025, 1, 1, 12, 0, 0),
        )
        assert record.recorded_at.utcoffset() is not None


# =============================================================================
# Reconciliation
# =============================================================================


class TestReconcile:
    async def test_reconciles_and_rotates(self, fake_client, ledger) -> None:
        for entry_id in ("1-0", "2-0"):
            await ledger.append(
                PendingDeletionRecord(
                    envelope_id=entry_id, stream_name=fake_client.stream_name, error="e"
                )
            )

        reconciled, failed = await reconcile_pending_deletions(fake_client, ledger)

        assert (reconciled, failed) == (2, 0)
        assert fake_client.deleted == ["1-0", "2-0"]
        assert not ledger.path.exists()
        archived = list(ledger.path.parent.glob("*.reconciled"))
        assert len(archived) == 1

    async def test_failure_keeps_ledger(self, fake_client, ledger) -> None:
        await ledger.append(
            PendingDeletionRecord(
                envelope_id="1-0", stream_name=fake_client.stream_name, error="e"
            )
        )
        fake_client.delete_error = BrokerError("still down")

        reconciled, failed = await reconcile_pending_deletions(fake_client, ledger)

        assert (reconciled, failed) == (0, 1)
        assert ledger.path.exists()

    async def test_other_stream_records_not_deleted(self, fake_client, ledger) -> None:
        await ledger.append(
            PendingDeletionRecord(envelope_id="1-0", stream_name="other-stream", error="e")
        )

        reconciled, failed = await reconcile_pending_deletions(fake_client, ledger)

        assert (reconciled, failed) == (0, 1)
        assert fake_client.deleted == []
