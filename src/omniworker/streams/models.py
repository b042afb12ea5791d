"""Data models for the task stream.

ModelTaskEnvelope is the unit of work carried by the stream. It is immutable
once appended; the broker assigns ``envelope_id`` at append time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EnumTaskAction(StrEnum):
    """What the agent executor should do with the task."""

    START = "START"
    RESUME = "RESUME"


class ModelTaskEnvelope(BaseModel):
    """A task envelope as read from (or about to be appended to) the stream."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    envelope_id: str | None = Field(
        default=None,
        description="Broker-assigned entry id; None until appended",
    )
    correlation_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    action: EnumTaskAction = Field(default=EnumTaskAction.START)
    payload: dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, str] = Field(
        default_factory=dict,
        description="Flat routing metadata passed through the wire verbatim",
    )

    @field_validator("enqueued_at", mode="before")
    @classmethod
    def ensure_utc_aware(cls, v: object) -> object:
        if not isinstance(v, datetime):
            return v
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        if v.utcoffset() == timedelta(0):
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @property
    def client_id(self) -> str | None:
        return self.metadata.get("clientId")

    @property
    def project_id(self) -> str | None:
        return self.metadata.get("projectId")


class ModelConsumerInfo(BaseModel):
    """A registered consumer as reported by the broker."""

    model_config = ConfigDict(frozen=True)

    name: str
    idle_ms: int = Field(ge=0)
    pending_count: int = Field(ge=0)

    @property
    def idle_seconds(self) -> float:
        return self.idle_ms / 1000.0


@dataclass(frozen=True)
class ConsumerIdentity:
    """The identity one worker process uses inside the consumer group.

    One identity per process, never shared. Created at process start and
    removed at graceful shutdown or reclaimed by the dead-consumer cleaner.
    """

    name: str
    group_name: str
    stream_name: str

    @classmethod
    def from_environment(
        cls,
        group_name: str,
        stream_name: str,
        env_var: str = "HOSTNAME",
    ) -> ConsumerIdentity:
        """Derive the identity from the process environment.

        Falls back to a random token when the variable is unset, which makes
        the consumer unmatched by any membership source; the cleaner then
        removes it once it has been idle past the safety threshold.
        """
        name = os.environ.get(env_var, "").strip()
        if not name:
            name = f"worker-{uuid4().hex[:12]}"
        return cls(name=name, group_name=group_name, stream_name=stream_name)


__all__ = [
    "ConsumerIdentity",
    "EnumTaskAction",
    "ModelConsumerInfo",
    "ModelTaskEnvelope",
]
