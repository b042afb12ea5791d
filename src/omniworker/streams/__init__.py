"""Redis Streams access for task envelopes.

Key Components:
    - StreamClient: broker primitives (append/claim/ack/delete/consumer admin)
    - MessageCodec: envelope <-> flat wire fields
    - ConfigStream: connection, topology and producer retry settings
    - ModelTaskEnvelope / ConsumerIdentity: stream data model

Example:
    >>> from omniworker.streams import ConfigStream, StreamClient, ModelTaskEnvelope
    >>>
    >>> client = StreamClient(ConfigStream())
    >>> await client.ensure_group()
    >>> entry_id = await client.send(
    ...     ModelTaskEnvelope(correlation_id="c-1", agent_id="planner")
    ... )
"""

from __future__ import annotations

from omniworker.streams.client import StreamClient, StreamEntry, pool_consumer_name
from omniworker.streams.codec import MessageCodec
from omniworker.streams.config import ConfigStream
from omniworker.streams.models import (
    ConsumerIdentity,
    EnumTaskAction,
    ModelConsumerInfo,
    ModelTaskEnvelope,
)

__all__ = [
    "ConfigStream",
    "ConsumerIdentity",
    "EnumTaskAction",
    "MessageCodec",
    "ModelConsumerInfo",
    "ModelTaskEnvelope",
    "StreamClient",
    "StreamEntry",
    "pool_consumer_name",
]
