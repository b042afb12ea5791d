"""Entry point for the dead-consumer cleaner and ledger reconciliation.

Usage:
    python -m omniworker.cleanup run
    python -m omniworker.cleanup run --once --dry-run
    python -m omniworker.cleanup reconcile-deletions

Exit codes:
    0 - run completed (or stopped by signal)
    1 - a one-shot run aborted, or some deletions could not be reconciled
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from omniworker.lib.log_context import configure_logging

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="OmniWorker dead-consumer cleaner",
        prog="python -m omniworker.cleanup",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Remove dead consumers periodically")
    run_parser.add_argument(
        "--once", action="store_true", help="Run a single pass and exit"
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Report candidates without removing (overrides OMNIWORKER_CLEANUP_DRY_RUN)",
    )

    sub.add_parser(
        "reconcile-deletions",
        help="Re-issue deletes recorded in the pending deletion ledger",
    )
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    from omniworker.cleanup.config import ConfigCleanup
    from omniworker.cleanup.dead_consumer_cleaner import DeadConsumerCleaner
    from omniworker.cleanup.membership import build_membership_source
    from omniworker.streams.client import StreamClient
    from omniworker.streams.config import ConfigStream

    overrides = {"dry_run": True} if args.dry_run else {}
    config = ConfigCleanup(**overrides)
    client = StreamClient(ConfigStream())
    membership = build_membership_source(config)
    cleaner = DeadConsumerCleaner(config, client, membership)

    try:
        if args.once:
            report = await cleaner.run_once()
            return 1 if report.aborted else 0

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        logger.info(
            "Cleaner started",
            extra={
                "interval_seconds": config.interval_seconds,
                "threshold_seconds": config.idle_threshold_seconds,
                "dry_run": config.dry_run,
            },
        )
        await cleaner.run_forever(stop_event)
        return 0
    finally:
        await membership.close()
        await client.close()


async def _reconcile() -> int:
    from omniworker.consumers.config import ConfigWorker
    from omniworker.consumers.settlement import (
        PendingDeletionLedger,
        reconcile_pending_deletions,
    )
    from omniworker.streams.client import StreamClient
    from omniworker.streams.config import ConfigStream

    client = StreamClient(ConfigStream())
    ledger = PendingDeletionLedger(ConfigWorker().pending_deletion_ledger_path)
    try:
        reconciled, failed = await reconcile_pending_deletions(client, ledger)
    finally:
        await client.close()
    logger.info(
        "Reconciliation finished",
        extra={"reconciled": reconciled, "failed": failed},
    )
    return 1 if failed else 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "run":
        return asyncio.run(_run(args))
    elif args.command == "reconcile-deletions":
        return asyncio.run(_reconcile())
    else:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
