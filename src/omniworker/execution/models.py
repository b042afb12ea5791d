"""Execution data model and the agent executor contract."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from omniworker.streams.models import ModelTaskEnvelope


class EnumExecutionStatus(StrEnum):
    """Terminal outcome of one execution as supervised by this process."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ModelExecutionOutcome(BaseModel):
    """What the agent executor reports back for one envelope."""

    model_config = ConfigDict(frozen=True)

    status: EnumExecutionStatus = EnumExecutionStatus.SUCCEEDED
    result: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == EnumExecutionStatus.SUCCEEDED


@dataclass(frozen=True)
class ExecutionHandle:
    """Local supervision record for one in-flight execution.

    The handle reflects local supervision only: after a timeout the work may
    still be running remotely. Setting ``cancel_token`` cancels the local
    execution (see ConsumerLoop.cancel_execution).
    """

    envelope_id: str
    correlation_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    cancel_token: asyncio.Event = field(default_factory=asyncio.Event, compare=False)

    def elapsed_seconds(self, now: datetime | None = None) -> float:
        return ((now or datetime.now(UTC)) - self.started_at).total_seconds()


@runtime_checkable
class ProtocolAgentExecutor(Protocol):
    """Opaque agent executor invoked once per decoded envelope.

    Implementations may raise; the consumer loop converts exceptions into a
    FAILED outcome. Returning None is treated as success with no result.
    """

    async def execute(self, envelope: ModelTaskEnvelope) -> ModelExecutionOutcome | None:
        ...


__all__ = [
    "EnumExecutionStatus",
    "ExecutionHandle",
    "ModelExecutionOutcome",
    "ProtocolAgentExecutor",
]
