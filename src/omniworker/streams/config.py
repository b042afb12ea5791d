"""Configuration for the Redis stream connection and producer retries.

Loads from environment variables with OMNIWORKER_STREAM_ prefix.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigStream(BaseSettings):
    """Configuration for the task stream, its consumer group, and sends.

    Environment variables use the OMNIWORKER_STREAM_ prefix.
    Example: OMNIWORKER_STREAM_REDIS_URL=redis://valkey:6379/0
    """

    model_config = SettingsConfigDict(
        env_prefix="OMNIWORKER_STREAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Broker connection
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis/Valkey connection URL",
    )
    socket_timeout_seconds: float = Field(
        default=10.0,
        ge=0.5,
        le=120.0,
        description=(
            "Socket timeout for broker calls. Must exceed the claim block "
            "time or blocking reads will time out client-side."
        ),
    )

    # Stream topology
    stream_name: str = Field(
        default="agent-executions",
        min_length=1,
        description="Stream key holding task envelopes",
    )
    group_name: str = Field(
        default="agent-workers",
        min_length=1,
        description="Consumer group shared by all worker processes",
    )
    consumer_name_env: str = Field(
        default="HOSTNAME",
        min_length=1,
        description=(
            "Environment variable holding the process identity used as the "
            "consumer name (the pod name under Kubernetes)"
        ),
    )

    # Reclaim of entries released back to the group
    reclaim_idle_ms: int = Field(
        default=2_100_000,
        ge=1000,
        description=(
            "Entries pending longer than this are claimable by any consumer. "
            "Must exceed the worker execution timeout; checked at startup."
        ),
    )

    # Producer retries
    send_max_retries: int = Field(default=3, ge=0, le=20)
    send_initial_delay_seconds: float = Field(default=0.5, ge=0.0, le=60.0)
    send_backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)


__all__ = ["ConfigStream"]
