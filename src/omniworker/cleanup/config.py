"""Configuration for the dead-consumer cleaner.

Loads from environment variables with OMNIWORKER_CLEANUP_ prefix.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class EnumMembershipSource(StrEnum):
    """Where the cleaner learns which worker identities are alive."""

    STATIC = "static"
    KUBERNETES = "kubernetes"


class ConfigCleanup(BaseSettings):
    """Configuration for periodic removal of ghost consumers.

    Environment variables use the OMNIWORKER_CLEANUP_ prefix.
    Example: OMNIWORKER_CLEANUP_DRY_RUN=true
    """

    model_config = SettingsConfigDict(
        env_prefix="OMNIWORKER_CLEANUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    interval_seconds: float = Field(default=3600.0, gt=0, le=86_400)
    execution_timeout_seconds: float = Field(
        default=1800.0,
        gt=0,
        description="Must match the workers' execution timeout",
    )
    safety_margin_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Added to the execution timeout before a consumer counts as idle",
    )
    dry_run: bool = Field(
        default=False,
        description="Log removal candidates without removing them",
    )

    # Membership
    membership_source: EnumMembershipSource = EnumMembershipSource.STATIC
    static_live_consumers: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Comma-separated live identities for the static source",
    )
    kubernetes_api_url: str = Field(default="https://kubernetes.default.svc")
    kubernetes_namespace: str = Field(default="default", min_length=1)
    kubernetes_label_selector: str = Field(default="app=omniworker")
    kubernetes_token_path: Path = Field(
        default=Path("/var/run/secrets/kubernetes.io/serviceaccount/token")
    )
    kubernetes_ca_path: Path = Field(
        default=Path("/var/run/secrets/kubernetes.io/serviceaccount/ca.crt")
    )
    request_timeout_seconds: float = Field(default=10.0, gt=0, le=120.0)

    @field_validator("static_live_consumers", mode="before")
    @classmethod
    def split_consumer_list(cls, v: object) -> object:
        if isinstance(v, str):
            return [name.strip() for name in v.split(",") if name.strip()]
        return v

    @property
    def idle_threshold_seconds(self) -> float:
        return self.execution_timeout_seconds + self.safety_margin_seconds


__all__ = ["ConfigCleanup", "EnumMembershipSource"]
