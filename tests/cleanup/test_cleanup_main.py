"""Tests for the cleaner entrypoint."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from omniworker.cleanup.__main__ import _parse_args, main


class TestParseArgs:
    def test_run_once_dry_run(self) -> None:
        args = _parse_args(["run", "--once", "--dry-run"])
        assert args.command == "run"
        assert args.once is True
        assert args.dry_run is True

    def test_dry_run_defaults_to_config(self) -> None:
        args = _parse_args(["run"])
        assert args.once is False
        assert args.dry_run is None

    def test_reconcile(self) -> None:
        assert _parse_args(["reconcile-deletions"]).command == "reconcile-deletions"

    def test_unknown_command(self) -> None:
        with pytest.raises(SystemExit):
            _parse_args(["purge"])


class TestMain:
    def test_reconcile_exit_code_reflects_failures(self) -> None:
        with patch(
            "omniworker.consumers.settlement.reconcile_pending_deletions",
            new=AsyncMock(return_value=(3, 1)),
        ), patch("omniworker.streams.client.StreamClient.close", new=AsyncMock()):
            assert main(["reconcile-deletions"]) == 1

    def test_reconcile_success(self) -> None:
        with patch(
            "omniworker.consumers.settlement.reconcile_pending_deletions",
            new=AsyncMock(return_value=(2, 0)),
        ), patch("omniworker.streams.client.StreamClient.close", new=AsyncMock()):
            assert main(["reconcile-deletions"]) == 0
