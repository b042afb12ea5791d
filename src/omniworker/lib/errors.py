"""Error codes and exception classes for omniworker.

This module is the single source of truth for error handling across all
omniworker modules. Errors carry a code from EnumWorkerErrorCode, a
human-readable message, and a details dictionary for structured logging.

Taxonomy:
    - TRANSIENT_BROKER: broker call failed, may succeed on retry
    - SEND_EXHAUSTED: producer retries exhausted, surfaced to the caller
    - DECODE_FAILED: wire entry cannot be decoded, permanent (poison message)
    - EXECUTOR_LOAD_FAILED: the configured agent executor cannot be imported
    - CONFIG_INVALID: settings that load individually but conflict

Execution timeouts and executor failures are terminal outcomes, not
exceptions (see omniworker.execution.models.EnumExecutionStatus).
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class EnumWorkerErrorCode(StrEnum):
    """Error codes for omniworker operations."""

    TRANSIENT_BROKER = "TRANSIENT_BROKER"
    SEND_EXHAUSTED = "SEND_EXHAUSTED"
    DECODE_FAILED = "DECODE_FAILED"
    EXECUTOR_LOAD_FAILED = "EXECUTOR_LOAD_FAILED"
    CONFIG_INVALID = "CONFIG_INVALID"


class WorkerError(Exception):
    """Base exception class for omniworker operations.

    Attributes:
        code: Error code from EnumWorkerErrorCode
        message: Human-readable error message
        details: Additional error context for logging
    """

    def __init__(
        self,
        code: EnumWorkerErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code}, message={self.message}, "
            f"details={self.details})"
        )


class BrokerError(WorkerError):
    """A stream broker call failed (connection, timeout, or server error)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(EnumWorkerErrorCode.TRANSIENT_BROKER, message, details)


class StreamSendError(WorkerError):
    """Appending an envelope failed after all retries.

    Attributes:
        attempts: Total number of append attempts made (initial + retries).
    """

    def __init__(
        self,
        message: str,
        attempts: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.attempts = attempts
        super().__init__(EnumWorkerErrorCode.SEND_EXHAUSTED, message, details)


class EnvelopeDecodeError(WorkerError):
    """A stream entry could not be decoded into a task envelope.

    Decode failures are permanent: there is no schema negotiation, so the
    entry is acknowledged and discarded rather than retried.
    """

    def __init__(
        self,
        message: str,
        entry_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.entry_id = entry_id
        super().__init__(EnumWorkerErrorCode.DECODE_FAILED, message, details)


class ExecutorLoadError(WorkerError):
    """The configured agent executor import path could not be loaded."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(EnumWorkerErrorCode.EXECUTOR_LOAD_FAILED, message, details)


class WorkerConfigError(WorkerError):
    """Worker settings conflict with each other."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(EnumWorkerErrorCode.CONFIG_INVALID, message, details)


__all__ = [
    "BrokerError",
    "EnumWorkerErrorCode",
    "EnvelopeDecodeError",
    "ExecutorLoadError",
    "StreamSendError",
    "WorkerConfigError",
    "WorkerError",
]
