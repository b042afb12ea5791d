"""Shared library code for omniworker (errors, logging context)."""

from omniworker.lib.errors import (
    BrokerError,
    EnumWorkerErrorCode,
    EnvelopeDecodeError,
    ExecutorLoadError,
    StreamSendError,
    WorkerConfigError,
    WorkerError,
)

__all__ = [
    "BrokerError",
    "EnumWorkerErrorCode",
    "EnvelopeDecodeError",
    "ExecutorLoadError",
    "StreamSendError",
    "WorkerConfigError",
    "WorkerError",
]
