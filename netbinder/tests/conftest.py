"""Shared pytest fixtures for netbinder tests."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from netbinder.errors import SandboxNotFound
from netbinder.network.catalog import NetworkCatalog
from netbinder.runtime.base import PodIdentity, PodStatus, RuntimeHost
from netbinder.runtime.registry import PodRegistry


def write_conf(net_dir: Path, filename: str, name: str, plugin_type: str = "bridge", **extra) -> Path:
    """Write a single-network CNI config file."""
    net_dir.mkdir(parents=True, exist_ok=True)
    path = net_dir / filename
    path.write_text(json.dumps({"cniVersion": "0.2.0", "name": name, "type": plugin_type, **extra}))
    return path


class FakeRuntime(RuntimeHost):
    """In-memory runtime: sandboxes map to netns paths, pods live in a PodRegistry."""

    def __init__(self):
        self.registry = PodRegistry()
        self.sandboxes: dict[str, str] = {}
        self.marker_ports: dict[str, list[str]] = {}
        self.scan_timeouts: list[float | None] = []

    def add_pod(self, pod: PodIdentity, netns: str | None = None) -> PodIdentity:
        self.registry.register(pod)
        self.sandboxes[pod.sandbox_id] = netns or f"/proc/{len(self.sandboxes) + 100}/ns/net"
        return pod

    async def get_netns(self, sandbox_id: str) -> str:
        if sandbox_id not in self.sandboxes:
            raise SandboxNotFound(sandbox_id)
        return self.sandboxes[sandbox_id]

    def get_pod_by_name(self, namespace: str, name: str) -> PodIdentity | None:
        return self.registry.get(namespace, name)

    def get_pod_status(self, namespace: str, name: str) -> PodStatus | None:
        return self.registry.status(namespace, name)

    async def find_ports_by_pod_marker(self, pod_name: str, timeout: float | None = None) -> list[str]:
        self.scan_timeouts.append(timeout)
        return list(self.marker_ports.get(pod_name, []))


@pytest.fixture
def net_dir(tmp_path: Path) -> Path:
    """Empty CNI config directory."""
    path = tmp_path / "net.d"
    path.mkdir()
    return path


@pytest.fixture
def catalog(net_dir: Path, tmp_path: Path) -> NetworkCatalog:
    """Catalog over the temporary config directory."""
    return NetworkCatalog(
        net_dir=net_dir,
        cni_bin_dir=str(tmp_path / "bin"),
        vendor_dir_template=str(tmp_path / "vendor" / "{name}" / "bin"),
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()
