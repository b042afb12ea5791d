# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Shared fixtures for omniworker tests.

Provides an in-memory stand-in for StreamClient so the consume loop,
settlement, shutdown and cleanup can be exercised without a broker.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from uuid import uuid4

import pytest

from omniworker.execution.models import ModelExecutionOutcome
from omniworker.lib.errors import BrokerError
from omniworker.publisher.publisher_models import ModelLifecycleEvent
from omniworker.streams.client import StreamEntry
from omniworker.streams.codec import MessageCodec
from omniworker.streams.models import ModelConsumerInfo, ModelTaskEnvelope


# =============================================================================
# Fakes
# =============================================================================


class FakeStreamClient:
    """In-memory stream and consumer group.

    Entries are handed out in append order; ``claim`` records the requested
    count of every call so tests can assert on claim sizing.
    """

    def __init__(
        self,
        stream_name: str = "agent-executions",
        group_name: str = "agent-workers",
    ) -> None:
        self.stream_name = stream_name
        self.group_name = group_name
        self.codec = MessageCodec()
        self.queued: list[StreamEntry] = []
        self.claim_calls: list[int] = []
        self.acked: list[str] = []
        self.deleted: list[str] = []
        self.removed_consumers: list[str] = []
        self.consumers: list[ModelConsumerInfo] = []
        self.locks: dict[str, str] = {}
        self.group_ensured = False
        self.closed = False

        self.claim_error: Exception | None = None
        self.ack_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.list_error: Exception | None = None

        self._seq = 0

    def _next_id(self) -> str:
        self._seq += 1
        return f"{self._seq}-0"

    def add_envelope(self, envelope: ModelTaskEnvelope) -> str:
        entry_id = self._next_id()
        self.queued.append((entry_id, self.codec.encode(envelope)))
        return entry_id

    def add_raw(self, fields: dict[str, str] | None) -> str:
        entry_id = self._next_id()
        self.queued.append((entry_id, fields))
        return entry_id

    async def ensure_group(self) -> None:
        self.group_ensured = True

    async def claim(self, consumer_name: str, count: int, block_ms: int) -> list[StreamEntry]:
        self.claim_calls.append(count)
        if self.claim_error is not None:
            raise self.claim_error
        if not self.queued:
            await asyncio.sleep(block_ms / 1000)
            return []
        taken, self.queued = self.queued[:count], self.queued[count:]
        return taken

    async def ack(self, entry_id: str) -> int:
        if self.ack_error is not None:
            raise self.ack_error
        self.acked.append(entry_id)
        return 1

    async def delete(self, entry_id: str) -> int:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(entry_id)
        return 1

    async def list_consumers(self) -> list[ModelConsumerInfo]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.consumers)

    async def remove_consumer(self, consumer_name: str) -> int:
        if self.remove_error is not None:
            raise self.remove_error
        self.removed_consumers.append(consumer_name)
        for info in self.consumers:
            if info.name == consumer_name:
                self.consumers.remove(info)
                return info.pending_count
        return 0

    async def acquire_lock(self, key: str, token: str, ttl_ms: int) -> bool:
        if key in self.locks:
            return False
        self.locks[key] = token
        return True

    async def release_lock(self, key: str, token: str) -> bool:
        if self.locks.get(key) == token:
            del self.locks[key]
            return True
        return False

    async def close(self) -> None:
        self.closed = True


class RecordingPublisher:
    """Collects published lifecycle events in order."""

    def __init__(self) -> None:
        self.events: list[ModelLifecycleEvent] = []
        self.stopped = False

    def start(self) -> None:
        return None

    def publish(self, event: ModelLifecycleEvent) -> bool:
        self.events.append(event)
        return True

    async def stop(self) -> None:
        self.stopped = True

    def event_types(self) -> list[str]:
        return [e.event_type.value for e in self.events]


class ScriptedExecutor:
    """Agent executor whose behaviour is set per test.

    ``gate`` holds every execution until set; ``behaviour`` decides the
    outcome once released.
    """

    def __init__(
        self,
        behaviour: Callable[[ModelTaskEnvelope], Awaitable[ModelExecutionOutcome | None]]
        | None = None,
    ) -> None:
        self.calls: list[str] = []
        self.gate = asyncio.Event()
        self.gate.set()
        self._behaviour = behaviour

    async def execute(self, envelope: ModelTaskEnvelope) -> ModelExecutionOutcome | None:
        self.calls.append(envelope.envelope_id or "")
        await self.gate.wait()
        if self._behaviour is not None:
            return await self._behaviour(envelope)
        return ModelExecutionOutcome(result={"agent": envelope.agent_id})


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_client() -> FakeStreamClient:
    return FakeStreamClient()


@pytest.fixture
def recording_publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def make_envelope() -> Callable[..., ModelTaskEnvelope]:
    def _make(**overrides: object) -> ModelTaskEnvelope:
        fields: dict[str, object] = {
            "correlation_id": f"corr-{uuid4().hex[:8]}",
            "agent_id": "agent-1",
            "payload": {"task": "summarize"},
            "metadata": {"clientId": "client-1", "projectId": "project-1"},
        }
        fields.update(overrides)
        return ModelTaskEnvelope(**fields)

    return _make


@pytest.fixture
def broker_error() -> BrokerError:
    return BrokerError("simulated broker outage")


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until true; raises TimeoutError after the timeout."""
    return _wait_until


@pytest.fixture
def make_executor() -> type[ScriptedExecutor]:
    return ScriptedExecutor
