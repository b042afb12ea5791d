"""Sources of live worker identities for the dead-consumer cleaner."""

from __future__ import annotations

import logging
import ssl
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx

from omniworker.cleanup.config import ConfigCleanup, EnumMembershipSource

logger = logging.getLogger(__name__)

# Pods in these phases may still hold (or be about to take) leases
LIVE_POD_PHASES = frozenset({"Pending", "Running"})


class MembershipError(Exception):
    """The live identity set could not be determined."""


@runtime_checkable
class ProtocolMembershipSource(Protocol):
    async def live_identities(self) -> set[str]: ...

    async def close(self) -> None: ...


class StaticMembershipSource:
    """Fixed set of live identities, typically from configuration."""

    def __init__(self, identities: Iterable[str]) -> None:
        self._identities = frozenset(identities)

    async def live_identities(self) -> set[str]:
        return set(self._identities)

    async def close(self) -> None:
        return None


class KubernetesMembershipSource:
    """Lists worker pods through the Kubernetes REST API.

    Pod names are the worker identities (consumer names default to
    ``HOSTNAME``). Uses the in-cluster service account token and CA bundle
    unless an ``httpx.AsyncClient`` is supplied.
    """

    def __init__(
        self,
        api_url: str,
        namespace: str,
        label_selector: str,
        token_path: Path | None = None,
        ca_path: Path | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._namespace = namespace
        self._label_selector = label_selector
        self._owns_client = client is None
        self._client = client or self._build_client(
            api_url, token_path, ca_path, timeout_seconds
        )

    @staticmethod
    def _build_client(
        api_url: str,
        token_path: Path | None,
        ca_path: Path | None,
        timeout_seconds: float,
    ) -> httpx.AsyncClient:
        headers: dict[str, str] = {}
        if token_path is not None and token_path.exists():
            headers["Authorization"] = f"Bearer {token_path.read_text().strip()}"
        verify: ssl.SSLContext | bool = True
        if ca_path is not None and ca_path.exists():
            verify = ssl.create_default_context(cafile=str(ca_path))
        return httpx.AsyncClient(
            base_url=api_url, headers=headers, verify=verify, timeout=timeout_seconds
        )

    async def live_identities(self) -> set[str]:
        params = {"labelSelector": self._label_selector} if self._label_selector else None
        try:
            response = await self._client.get(
                f"/api/v1/namespaces/{self._namespace}/pods", params=params
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MembershipError(f"Failed to list pods in {self._namespace}: {e}") from e

        live: set[str] = set()
        for pod in body.get("items", []):
            name = pod.get("metadata", {}).get("name")
            phase = pod.get("status", {}).get("phase")
            if name and phase in LIVE_POD_PHASES:
                live.add(name)
        logger.debug(
            "Kubernetes membership fetched",
            extra={"namespace": self._namespace, "live": len(live)},
        )
        return live

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_membership_source(config: ConfigCleanup) -> ProtocolMembershipSource:
    """Create the membership source selected by configuration."""
    if config.membership_source == EnumMembershipSource.KUBERNETES:
        return KubernetesMembershipSource(
            api_url=config.kubernetes_api_url,
            namespace=config.kubernetes_namespace,
            label_selector=config.kubernetes_label_selector,
            token_path=config.kubernetes_token_path,
            ca_path=config.kubernetes_ca_path,
            timeout_seconds=config.request_timeout_seconds,
        )
    return StaticMembershipSource(config.static_live_consumers)


__all__ = [
    "KubernetesMembershipSource",
    "LIVE_POD_PHASES",
    "MembershipError",
    "ProtocolMembershipSource",
    "StaticMembershipSource",
    "build_membership_source",
]
