# SPDX-FileCopyrightText: 2025 OmniNode.ai Inc.
# SPDX-License-Identifier: MIT

"""Worker process entrypoint.

Usage:
    python -m omniworker.runtime start
    python -m omniworker.runtime start --dry-run

SIGTERM and SIGINT start graceful shutdown once; later signals are logged
and ignored, leaving forced termination to the process supervisor.

Dry-run validation checklist:
    1. Configuration loads from the environment
    2. The reclaim threshold exceeds the execution timeout
    3. The configured agent executor imports and implements execute()

Exit codes:
    0 - clean shutdown, or all dry-run checks pass
    1 - dry-run check failed, the worker could not be built, or the consume
        loop exited unexpectedly
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from omniworker.lib.errors import ExecutorLoadError, WorkerConfigError
from omniworker.lib.log_context import configure_logging

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="OmniWorker agent execution worker",
        prog="python -m omniworker.runtime",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    start_parser = sub.add_parser("start", help="Start consuming agent executions")
    start_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and the executor import, then exit",
    )
    return parser.parse_args(argv)


def _dry_run() -> int:
    from pydantic import ValidationError

    from omniworker.consumers.config import ConfigWorker
    from omniworker.publisher.publisher_config import ConfigEventPublisher
    from omniworker.runtime.wiring import check_reclaim_threshold, load_executor
    from omniworker.streams.config import ConfigStream

    try:
        stream_config = ConfigStream()
        worker_config = ConfigWorker()
        ConfigEventPublisher()
        check_reclaim_threshold(stream_config, worker_config)
    except ValidationError as e:
        print(f"[FAIL] configuration: {e}")
        return 1
    except WorkerConfigError as e:
        print(f"[FAIL] configuration: {e.message}")
        return 1
    print("[OK]   configuration")

    if not worker_config.executor:
        print("[FAIL] executor: OMNIWORKER_WORKER_EXECUTOR is not set")
        return 1
    try:
        load_executor(worker_config.executor)
    except ExecutorLoadError as e:
        print(f"[FAIL] executor: {e.message}")
        return 1
    print(f"[OK]   executor {worker_config.executor}")
    return 0


async def _run_worker() -> int:
    from omniworker.runtime.wiring import build_worker_runtime

    runtime = build_worker_runtime()
    coordinator = runtime.coordinator
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, coordinator.request_shutdown, sig.name)
    return await runtime.run()


def _do_start(args: argparse.Namespace) -> int:
    if args.dry_run:
        return _dry_run()
    try:
        return asyncio.run(_run_worker())
    except (ExecutorLoadError, WorkerConfigError) as e:
        logger.error(f"Cannot start worker: {e.message}")
        return 1


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "start":
        return _do_start(args)
    else:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
