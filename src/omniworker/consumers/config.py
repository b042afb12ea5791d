"""Configuration for worker processes.

Loads from environment variables with OMNIWORKER_WORKER_ prefix.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigWorker(BaseSettings):
    """Configuration for the consumer loop, settlement and shutdown.

    Environment variables use the OMNIWORKER_WORKER_ prefix.
    Example: OMNIWORKER_WORKER_BATCH_SIZE=4
    """

    model_config = SettingsConfigDict(
        env_prefix="OMNIWORKER_WORKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Concurrency
    batch_size: int = Field(
        default=3,
        ge=1,
        le=256,
        description="Maximum concurrently executing tasks per process",
    )
    claim_block_ms: int = Field(
        default=5000,
        ge=0,
        le=60_000,
        description="How long one claim call blocks waiting for new entries",
    )
    claim_error_backoff_seconds: float = Field(default=1.0, ge=0.0, le=60.0)

    # Execution
    execution_timeout_seconds: float = Field(
        default=1800.0,
        gt=0,
        le=86_400,
        description="Hard local timeout for one agent execution",
    )
    executor: str | None = Field(
        default=None,
        description="Import path of the agent executor, 'package.module:attr'",
    )
    advisory_lock_enabled: bool = Field(default=True)

    # Settlement
    aggressive_delete: bool = Field(
        default=False,
        description="XDEL entries after acknowledging them",
    )
    pending_deletion_ledger_path: Path = Field(
        default=Path("pending-deletions.jsonl"),
        description="Append-only ledger of failed deletes",
    )

    # Shutdown
    intake_stop_timeout_seconds: float = Field(
        default=0.9,
        gt=0,
        lt=1.0,
        description="Bound on waiting for the claim-wait to observe cancellation",
    )
    drain_poll_interval_seconds: float = Field(default=30.0, gt=0, le=600)
    sidecar_quit_url: str | None = Field(
        default=None,
        description="URL POSTed during teardown to stop a co-located proxy",
    )

    # Monitoring
    monitor_interval_seconds: float = Field(default=60.0, gt=0, le=3600)


__all__ = ["ConfigWorker"]
