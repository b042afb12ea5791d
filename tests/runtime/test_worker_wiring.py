# SPDX-FileCopyrightText: 2025 OmniNode.ai Inc.
# SPDX-License-Identifier: MIT

"""Tests for omniworker.runtime wiring and the start entrypoint."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from omniworker.consumers.config import ConfigWorker
from omniworker.consumers.shutdown import EnumShutdownPhase
from omniworker.lib.errors import ExecutorLoadError, WorkerConfigError
from omniworker.runtime.__main__ import main
from omniworker.runtime.wiring import (
    build_worker_runtime,
    check_reclaim_threshold,
    load_executor,
)
from omniworker.streams.config import ConfigStream


class EchoExecutor:
    async def execute(self, envelope):
        return None


ECHO_EXECUTOR = EchoExecutor()


def make_echo_executor() -> EchoExecutor:
    return EchoExecutor()


NOT_AN_EXECUTOR = 42


# =============================================================================
# Executor Loading
# =============================================================================


class TestLoadExecutor:
    def test_class_is_instantiated(self) -> None:
        assert isinstance(load_executor(f"{__name__}:EchoExecutor"), EchoExecutor)

    def test_instance_used_as_is(self) -> None:
        assert load_executor(f"{__name__}:ECHO_EXECUTOR") is ECHO_EXECUTOR

    def test_factory_is_called(self) -> None:
        assert isinstance(load_executor(f"{__name__}:make_echo_executor"), EchoExecutor)

    @pytest.mark.parametrize(
        "import_path",
        [
            "no-colon-here",
            ":EchoExecutor",
            "omniworker_no_such_module:Executor",
            "json:NoSuchAttribute",
            "json:JSONDecoder",
            "json:loads",
            f"{__name__}:NOT_AN_EXECUTOR",
        ],
    )
    def test_invalid_paths(self, import_path: str) -> None:
        with pytest.raises(ExecutorLoadError):
            load_executor(import_path)


# =============================================================================
# Wiring
# =============================================================================


@pytest.fixture
def worker_config(tmp_path: Path) -> ConfigWorker:
    return ConfigWorker(
        executor=None,
        drain_poll_interval_seconds=0.01,
        claim_block_ms=20,
        pending_deletion_ledger_path=tmp_path / "pending.jsonl",
    )


class TestBuildWorkerRuntime:
    def test_identity_from_environment(
        self, monkeypatch: pytest.MonkeyPatch, worker_config, fake_client, recording_publisher
    ) -> None:
        monkeypatch.setenv("HOSTNAME", "omniworker-5d8f-abcde")

        runtime = build_worker_runtime(
            executor=EchoExecutor(),
            stream_config=ConfigStream(group_name="g", stream_name="s"),
            worker_config=worker_config,
            client=fake_client,
            publisher=recording_publisher,
        )

        assert runtime.identity.name == "omniworker-5d8f-abcde"
        assert runtime.identity.group_name == "g"
        assert runtime.consumer_loop.consumer_name == "omniworker-5d8f-abcde"
        assert runtime.coordinator.phase == EnumShutdownPhase.RUNNING

    def test_missing_executor_configuration(self, worker_config, fake_client) -> None:
        with pytest.raises(ExecutorLoadError, match="No agent executor configured"):
            build_worker_runtime(worker_config=worker_config, client=fake_client)

    def test_executor_loaded_from_config(
        self, worker_config, fake_client, recording_publisher
    ) -> None:
        config = worker_config.model_copy(update={"executor": f"{__name__}:EchoExecutor"})
        runtime = build_worker_runtime(
            worker_config=config, client=fake_client, publisher=recording_publisher
        )
        assert isinstance(runtime.consumer_loop._executor, EchoExecutor)

    async def test_run_until_shutdown(
        self, worker_config, fake_client, recording_publisher, make_envelope, wait_until
    ) -> None:
        fake_client.add_envelope(make_envelope())
        runtime = build_worker_runtime(
            executor=EchoExecutor(),
            worker_config=worker_config,
            client=fake_client,
            publisher=recording_publisher,
        )

        run_task = asyncio.create_task(runtime.run())
        await wait_until(lambda: len(fake_client.acked) == 1)
        runtime.coordinator.request_shutdown("test")

        assert await asyncio.wait_for(run_task, timeout=5) == 0
        assert fake_client.group_ensured
        assert fake_client.removed_consumers == [runtime.identity.name]
        assert fake_client.closed

    async def test_consume_loop_crash_shuts_down_with_error(
        self, monkeypatch: pytest.MonkeyPatch, worker_config, fake_client, recording_publisher
    ) -> None:
        runtime = build_worker_runtime(
            executor=EchoExecutor(),
            worker_config=worker_config,
            client=fake_client,
            publisher=recording_publisher,
        )

        async def crash(available: int) -> int:
            raise RuntimeError("claim bookkeeping broke")

        monkeypatch.setattr(runtime.consumer_loop, "claim_and_dispatch", crash)

        assert await asyncio.wait_for(runtime.run(), timeout=5) == 1
        assert runtime.coordinator.reason == "consume loop crashed"
        assert fake_client.removed_consumers == [runtime.identity.name]
        assert fake_client.closed
        assert recording_publisher.stopped

    def test_reclaim_threshold_below_execution_timeout_rejected(
        self, worker_config, fake_client
    ) -> None:
        long_running = worker_config.model_copy(update={"execution_timeout_seconds": 3600})

        with pytest.raises(WorkerConfigError, match="must exceed"):
            build_worker_runtime(
                executor=EchoExecutor(),
                stream_config=ConfigStream(reclaim_idle_ms=2_100_000),
                worker_config=long_running,
                client=fake_client,
            )


class TestCheckReclaimThreshold:
    @pytest.mark.parametrize(
        ("reclaim_idle_ms", "ok"),
        [(1_799_999, False), (1_800_000, False), (1_800_001, True), (2_100_000, True)],
    )
    def test_boundary(self, worker_config, reclaim_idle_ms: int, ok: bool) -> None:
        stream_config = ConfigStream(reclaim_idle_ms=reclaim_idle_ms)
        config = worker_config.model_copy(update={"execution_timeout_seconds": 1800})

        if ok:
            check_reclaim_threshold(stream_config, config)
        else:
            with pytest.raises(WorkerConfigError):
                check_reclaim_threshold(stream_config, config)


# =============================================================================
# Entrypoint
# =============================================================================


class TestMain:
    def test_dry_run_passes_with_executor(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("OMNIWORKER_WORKER_EXECUTOR", f"{__name__}:EchoExecutor")

        assert main(["start", "--dry-run"]) == 0
        assert "[OK]   executor" in capsys.readouterr().out

    def test_dry_run_fails_without_executor(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.delenv("OMNIWORKER_WORKER_EXECUTOR", raising=False)

        assert main(["start", "--dry-run"]) == 1
        assert "[FAIL] executor" in capsys.readouterr().out

    def test_dry_run_fails_on_bad_executor(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OMNIWORKER_WORKER_EXECUTOR", "json:loads")
        assert main(["start", "--dry-run"]) == 1

    def test_dry_run_fails_on_reclaim_threshold(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("OMNIWORKER_WORKER_EXECUTOR", f"{__name__}:EchoExecutor")
        monkeypatch.setenv("OMNIWORKER_WORKER_EXECUTION_TIMEOUT_SECONDS", "3600")
        monkeypatch.setenv("OMNIWORKER_STREAM_RECLAIM_IDLE_MS", "2100000")

        assert main(["start", "--dry-run"]) == 1
        assert "[FAIL] configuration" in capsys.readouterr().out

    def test_requires_command(self) -> None:
        with pytest.raises(SystemExit):
            main([])
