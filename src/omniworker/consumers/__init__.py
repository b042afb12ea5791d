"""Worker-side consumption: the consume loop, settlement and shutdown."""

from __future__ import annotations

from omniworker.consumers.config import ConfigWorker
from omniworker.consumers.consumer_loop import ConsumerLoop, ConsumerMetrics
from omniworker.consumers.settlement import (
    AckDeleteManager,
    ModelSettlementResult,
    PendingDeletionLedger,
    PendingDeletionRecord,
    reconcile_pending_deletions,
)
from omniworker.consumers.shutdown import EnumShutdownPhase, ShutdownCoordinator

__all__: list[str] = [
    "AckDeleteManager",
    "ConfigWorker",
    "ConsumerLoop",
    "ConsumerMetrics",
    "EnumShutdownPhase",
    "ModelSettlementResult",
    "PendingDeletionLedger",
    "PendingDeletionRecord",
    "ShutdownCoordinator",
    "reconcile_pending_deletions",
]
