"""Lifecycle event models.

Events are observational, not authoritative state: they live only in the
in-memory publisher queue and are lost if the process crashes before
delivery.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from omniworker.streams.models import ModelTaskEnvelope


class EnumLifecycleEventType(StrEnum):
    EXECUTION_STARTED = "execution.started"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_FAILED = "execution.failed"
    EXECUTION_TIMED_OUT = "execution.timed_out"
    DECODE_FAILED = "envelope.decode_failed"
    SETTLEMENT_FAILED = "envelope.settlement_failed"


class ModelLifecycleEvent(BaseModel):
    """An execution lifecycle event bound for the event sink."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: EnumLifecycleEventType
    payload: dict[str, Any] = Field(default_factory=dict)
    client_id: str | None = None
    project_id: str | None = None
    is_external_notification: bool = False
    is_streaming: bool = False
    ordering_context: dict[str, str] = Field(
        default_factory=dict,
        description="Logging context captured at enqueue, restored at delivery",
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def for_envelope(
        cls,
        event_type: EnumLifecycleEventType,
        envelope: ModelTaskEnvelope,
        payload: dict[str, Any] | None = None,
        *,
        ordering_context: dict[str, str] | None = None,
    ) -> ModelLifecycleEvent:
        """Build an event for an envelope, copying its routing metadata.

        Envelopes with ``notify=true`` metadata produce external
        notifications for terminal events; ``streaming=true`` marks events
        the sink should forward to live subscribers.
        """
        terminal = event_type in (
            EnumLifecycleEventType.EXECUTION_COMPLETED,
            EnumLifecycleEventType.EXECUTION_FAILED,
            EnumLifecycleEventType.EXECUTION_TIMED_OUT,
        )
        body: dict[str, Any] = {
            "envelope_id": envelope.envelope_id,
            "correlation_id": envelope.correlation_id,
            "agent_id": envelope.agent_id,
            "action": envelope.action.value,
        }
        body.update(payload or {})
        return cls(
            event_type=event_type,
            payload=body,
            client_id=envelope.client_id,
            project_id=envelope.project_id,
            is_external_notification=terminal
            and envelope.metadata.get("notify", "").lower() == "true",
            is_streaming=envelope.metadata.get("streaming", "").lower() == "true",
            ordering_context=ordering_context or {},
        )


__all__: list[str] = ["EnumLifecycleEventType", "ModelLifecycleEvent"]
