"""Per-task logging context.

Execution tasks and the event publisher worker run interleaved on one event
loop, so contextual fields (correlation id, envelope id) are carried in a
ContextVar rather than on the logger. ``ContextFieldsFilter`` stamps the
current context onto every log record so formatters can reference
``%(correlation_id)s``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar

_log_context: ContextVar[Mapping[str, str] | None] = ContextVar(
    "omniworker_log_context", default=None
)

LOG_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - "
    "[correlation_id=%(correlation_id)s] %(message)s"
)


def current_context() -> dict[str, str]:
    """Return a copy of the logging context for the running task."""
    ctx = _log_context.get()
    return dict(ctx) if ctx else {}


@contextmanager
def bound_context(fields: Mapping[str, str]) -> Iterator[None]:
    """Bind ``fields`` (merged over the current context) for a block."""
    merged = {**current_context(), **fields}
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


class ContextFieldsFilter(logging.Filter):
    """Copy the current logging context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = current_context()
        for key, value in ctx.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for an omniworker process entrypoint."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        handler.addFilter(ContextFieldsFilter())


__all__ = [
    "ContextFieldsFilter",
    "LOG_FORMAT",
    "bound_context",
    "configure_logging",
    "current_context",
]
