# SPDX-FileCopyrightText: 2025 OmniNode.ai Inc.
# SPDX-License-Identifier: MIT

"""Event Publisher Configuration Model.

Uses pydantic-settings for automatic environment variable loading.
When no sink URL is configured, events are written to the log instead.
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigEventPublisher(BaseSettings):
    """Configuration for lifecycle event delivery."""

    model_config = SettingsConfigDict(
        env_prefix="OMNIWORKER_EVENTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        frozen=True,
        extra="ignore",
        validate_default=True,
    )

    sink_url: str | None = Field(
        default=None,
        description="HTTP endpoint receiving lifecycle events (POST JSON)",
    )
    notification_url: str | None = Field(
        default=None,
        description="HTTP endpoint for events flagged as external notifications",
    )
    request_timeout_seconds: float = Field(default=5.0, ge=0.1, le=60.0)
    max_queue_size: int = Field(
        default=0,
        ge=0,
        le=1_000_000,
        description="Queue bound; 0 means unbounded",
    )
    flush_timeout_seconds: float = Field(default=10.0, ge=0.0, le=300.0)

    @field_validator("sink_url", "notification_url", mode="after")
    @classmethod
    def validate_http_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v:
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https://: {v!r}")
        return v


__all__: list[str] = ["ConfigEventPublisher"]
