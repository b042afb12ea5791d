"""Lifecycle event publishing.

A single FIFO queue and a single worker task per process deliver execution
lifecycle events to an HTTP sink (or the log when no sink is configured).
"""

from __future__ import annotations

from omniworker.publisher.event_publisher import EventPublisher
from omniworker.publisher.publisher_config import ConfigEventPublisher
from omniworker.publisher.publisher_models import (
    EnumLifecycleEventType,
    ModelLifecycleEvent,
)
from omniworker.publisher.sinks import HttpEventSink, LoggingEventSink, ProtocolEventSink

__all__: list[str] = [
    "ConfigEventPublisher",
    "EnumLifecycleEventType",
    "EventPublisher",
    "HttpEventSink",
    "LoggingEventSink",
    "ModelLifecycleEvent",
    "ProtocolEventSink",
]
