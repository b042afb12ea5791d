"""Wire codec for task envelopes.

Redis stream entries are flat ``str -> str`` maps. The task payload is
serialized to JSON and base64-encoded into the ``payload`` field so that
arbitrary nested task objects survive the flat format.

Wire fields:
    payload        base64(JSON(task payload))
    agentId        agent identifier
    correlationId  correlation id for tracing and the advisory lock
    action         START | RESUME
    timestamp      ISO-8601 enqueue time (UTC)
    <other>        routing metadata, passed through verbatim

Decoding failures raise EnvelopeDecodeError and are permanent.
"""

from __future__ import annotations

import base64
import json
from collections.abc import Mapping
from datetime import UTC, datetime

from pydantic import ValidationError

from omniworker.lib.errors import EnvelopeDecodeError
from omniworker.streams.models import ModelTaskEnvelope

FIELD_PAYLOAD = "payload"
FIELD_AGENT_ID = "agentId"
FIELD_CORRELATION_ID = "correlationId"
FIELD_ACTION = "action"
FIELD_TIMESTAMP = "timestamp"

RESERVED_FIELDS = frozenset(
    {FIELD_PAYLOAD, FIELD_AGENT_ID, FIELD_CORRELATION_ID, FIELD_ACTION, FIELD_TIMESTAMP}
)
REQUIRED_FIELDS = (FIELD_PAYLOAD, FIELD_AGENT_ID, FIELD_CORRELATION_ID)


class MessageCodec:
    """Encode/decode ModelTaskEnvelope to and from stream entry fields."""

    def encode(self, envelope: ModelTaskEnvelope) -> dict[str, str]:
        """Encode an envelope into flat wire fields.

        Routing metadata may not shadow a reserved field name.

        Raises:
            ValueError: If metadata uses a reserved key or the payload is not
                JSON-serializable.
        """
        clashes = RESERVED_FIELDS.intersection(envelope.metadata)
        if clashes:
            raise ValueError(
                f"Metadata keys collide with reserved wire fields: {sorted(clashes)}"
            )
        try:
            payload_json = json.dumps(envelope.payload, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Task payload is not JSON-serializable: {e}") from e

        fields = dict(envelope.metadata)
        fields[FIELD_PAYLOAD] = base64.b64encode(payload_json.encode("utf-8")).decode(
            "ascii"
        )
        fields[FIELD_AGENT_ID] = envelope.agent_id
        fields[FIELD_CORRELATION_ID] = envelope.correlation_id
        fields[FIELD_ACTION] = envelope.action.value
        fields[FIELD_TIMESTAMP] = envelope.enqueued_at.astimezone(UTC).isoformat()
        return fields

    def decode(self, entry_id: str, fields: Mapping[str, str] | None) -> ModelTaskEnvelope:
        """Decode wire fields into an envelope.

        Args:
            entry_id: Broker-assigned entry id.
            fields: Entry fields. None for entries deleted while pending.

        Raises:
            EnvelopeDecodeError: If any field is missing or malformed.
        """
        if not fields:
            raise EnvelopeDecodeError("Entry has no fields", entry_id=entry_id)

        missing = [name for name in REQUIRED_FIELDS if not fields.get(name)]
        if missing:
            raise EnvelopeDecodeError(
                f"Missing required fields: {missing}",
                entry_id=entry_id,
                details={"missing": missing},
            )

        try:
            raw = base64.b64decode(fields[FIELD_PAYLOAD], validate=True)
            payload = json.loads(raw.decode("utf-8"))
        except (ValueError, RecursionError) as e:
            # binascii.Error, UnicodeDecodeError and JSONDecodeError are ValueErrors;
            # non-ASCII base64 input raises a plain ValueError
            raise EnvelopeDecodeError(
                f"Undecodable payload: {e}", entry_id=entry_id
            ) from e
        if not isinstance(payload, dict):
            raise EnvelopeDecodeError(
                f"Payload must be a JSON object, got {type(payload).__name__}",
                entry_id=entry_id,
            )

        timestamp = fields.get(FIELD_TIMESTAMP)
        try:
            enqueued_at = (
                datetime.fromisoformat(timestamp) if timestamp else datetime.now(UTC)
            )
        except ValueError as e:
            raise EnvelopeDecodeError(
                f"Invalid timestamp {timestamp!r}", entry_id=entry_id
            ) from e

        metadata = {k: v for k, v in fields.items() if k not in RESERVED_FIELDS}

        try:
            return ModelTaskEnvelope(
                envelope_id=entry_id,
                correlation_id=fields[FIELD_CORRELATION_ID],
                agent_id=fields[FIELD_AGENT_ID],
                action=fields.get(FIELD_ACTION) or "START",
                payload=payload,
                enqueued_at=enqueued_at,
                metadata=metadata,
            )
        except ValidationError as e:
            raise EnvelopeDecodeError(
                f"Envelope validation failed: {e.error_count()} error(s)",
                entry_id=entry_id,
                details={"errors": e.errors(include_url=False)},
            ) from e


__all__ = ["MessageCodec", "RESERVED_FIELDS"]
