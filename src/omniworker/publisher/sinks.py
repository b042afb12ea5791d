"""Event sinks: where the publisher worker delivers lifecycle events."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

from omniworker.publisher.publisher_models import ModelLifecycleEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class ProtocolEventSink(Protocol):
    """Destination for lifecycle events. Both methods may raise."""

    async def deliver(self, event: ModelLifecycleEvent) -> None: ...

    async def notify(self, event: ModelLifecycleEvent) -> None: ...

    async def close(self) -> None: ...


class HttpEventSink:
    """POST events as JSON to the configured endpoints."""

    def __init__(
        self,
        sink_url: str,
        notification_url: str | None = None,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._sink_url = sink_url
        self._notification_url = notification_url
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def deliver(self, event: ModelLifecycleEvent) -> None:
        response = await self._client.post(
            self._sink_url,
            content=event.model_dump_json(),
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()

    async def notify(self, event: ModelLifecycleEvent) -> None:
        if self._notification_url is None:
            return
        response = await self._client.post(
            self._notification_url,
            content=event.model_dump_json(),
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


class LoggingEventSink:
    """Fallback sink that writes events to the log."""

    async def deliver(self, event: ModelLifecycleEvent) -> None:
        logger.info(
            "Lifecycle event %s",
            event.event_type.value,
            extra={"event_id": event.event_id, "event_payload": event.payload},
        )

    async def notify(self, event: ModelLifecycleEvent) -> None:
        logger.info(
            "External notification %s",
            event.event_type.value,
            extra={"event_id": event.event_id, "client_id": event.client_id},
        )

    async def close(self) -> None:
        return None


__all__: list[str] = ["HttpEventSink", "LoggingEventSink", "ProtocolEventSink"]
