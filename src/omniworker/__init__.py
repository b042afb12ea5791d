"""OmniWorker - elastic stream workers for long-running agent executions.

This package consumes agent execution tasks from a Redis Streams consumer
group, runs them with bounded concurrency, settles every entry exactly once,
and shuts down in three phases without dropping work.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("omniworker")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
