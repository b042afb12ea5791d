"""Execution supervision: handles, tracker, executor contract, advisory lock."""

from __future__ import annotations

from omniworker.execution.advisory_lock import AdvisoryLock
from omniworker.execution.models import (
    EnumExecutionStatus,
    ExecutionHandle,
    ModelExecutionOutcome,
    ProtocolAgentExecutor,
)
from omniworker.execution.tracker import ExecutionTracker

__all__ = [
    "AdvisoryLock",
    "EnumExecutionStatus",
    "ExecutionHandle",
    "ExecutionTracker",
    "ModelExecutionOutcome",
    "ProtocolAgentExecutor",
]
