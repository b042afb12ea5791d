"""Tests for membership sources and cleanup configuration."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from omniworker.cleanup.config import ConfigCleanup, EnumMembershipSource
from omniworker.cleanup.membership import (
    KubernetesMembershipSource,
    MembershipError,
    StaticMembershipSource,
    build_membership_source,
)


def _pod(name: str, phase: str) -> dict:
    return {"metadata": {"name": name}, "status": {"phase": phase}}


class TestKubernetesMembershipSource:
    async def test_pending_and_running_pods_are_live(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "items": [
                        _pod("worker-0", "Running"),
                        _pod("worker-1", "Pending"),
                        _pod("worker-2", "Succeeded"),
                        _pod("worker-3", "Failed"),
                    ]
                },
            )

        source = KubernetesMembershipSource(
            api_url="https://k8s.local",
            namespace="agents",
            label_selector="app=omniworker",
            client=httpx.AsyncClient(
                base_url="https://k8s.local", transport=httpx.MockTransport(handler)
            ),
        )

        live = await source.live_identities()

        assert live == {"worker-0", "worker-1"}
        assert seen[0].url.path == "/api/v1/namespaces/agents/pods"
        assert seen[0].url.params["labelSelector"] == "app=omniworker"

    async def test_api_error_raises_membership_error(self) -> None:
        source = KubernetesMembershipSource(
            api_url="https://k8s.local",
            namespace="agents",
            label_selector="app=omniworker",
            client=httpx.AsyncClient(
                base_url="https://k8s.local",
                transport=httpx.MockTransport(lambda request: httpx.Response(403)),
            ),
        )

        with pytest.raises(MembershipError):
            await source.live_identities()

    async def test_service_account_token_sent(self, tmp_path: Path) -> None:
        token_path = tmp_path / "token"
        token_path.write_text("sa-token\n")
        source = KubernetesMembershipSource(
            api_url="https://k8s.local",
            namespace="agents",
            label_selector="",
            token_path=token_path,
            ca_path=tmp_path / "missing-ca.crt",
        )

        assert source._client.headers["Authorization"] == "Bearer sa-token"
        await source.close()


class TestStaticMembershipSource:
    async def test_returns_copy(self) -> None:
        source = StaticMembershipSource(["a", "b"])
        live = await source.live_identities()
        live.add("c")
        assert await source.live_identities() == {"a", "b"}


class TestConfigCleanup:
    def test_defaults(self) -> None:
        config = ConfigCleanup()
        assert config.interval_seconds == 3600
        assert config.idle_threshold_seconds == 2100
        assert config.dry_run is False

    def test_comma_separated_live_consumers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OMNIWORKER_CLEANUP_STATIC_LIVE_CONSUMERS", "worker-0, worker-1,")
        assert ConfigCleanup().static_live_consumers == ["worker-0", "worker-1"]

    def test_build_static_source(self) -> None:
        source = build_membership_source(ConfigCleanup(static_live_consumers=["w"]))
        assert isinstance(source, StaticMembershipSource)

    async def test_build_kubernetes_source(self, tmp_path: Path) -> None:
        config = ConfigCleanup(
            membership_source=EnumMembershipSource.KUBERNETES,
            kubernetes_token_path=tmp_path / "no-token",
            kubernetes_ca_path=tmp_path / "no-ca",
        )
        source = build_membership_source(config)
        assert isinstance(source, KubernetesMembershipSource)
        await source.close()
