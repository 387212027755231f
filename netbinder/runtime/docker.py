"""Docker-backed runtime collaborator.

Resolves sandbox network namespaces from the Docker daemon and, for
teardown paths that only know a pod's name, finds the host-side veth of
every container whose hostname marks it as belonging to that pod.

Port discovery by marker:
    1. List containers, keep those with Config.Hostname == pod_name or
       HOSTNAME=<pod_name> in Config.Env
    2. nsenter into each container and read the peer ifindex of the pod
       interface ("2: eth0@if123: <...>")
    3. Match that ifindex against /sys/class/net/*/ifindex on the host
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import docker
from docker.errors import APIError, NotFound

from netbinder.config import settings
from netbinder.errors import DeadlineExceeded, SandboxNotFound
from netbinder.network.cmd import run_cmd
from netbinder.runtime.base import PodIdentity, PodStatus, RuntimeHost
from netbinder.runtime.registry import PodRegistry, get_pod_registry

logger = logging.getLogger(__name__)

SYS_CLASS_NET = "/sys/class/net"


def parse_peer_ifindex(ip_link_output: str, interface_name: str) -> int | None:
    """Extract the peer ifindex of a veth from `ip -o link show` output."""
    for line in ip_link_output.splitlines():
        parts = line.split(":")
        if len(parts) < 2:
            continue
        name_field = parts[1].strip()
        if "@if" not in name_field:
            continue
        iface, peer = name_field.split("@if", 1)
        if iface != interface_name:
            continue
        try:
            return int(peer)
        except ValueError:
            return None
    return None


def host_interface_by_ifindex(ifindex: int, sys_class_net: str = SYS_CLASS_NET) -> str | None:
    """Find the host interface name with a given ifindex."""
    root = Path(sys_class_net)
    if not root.is_dir():
        return None
    for entry in root.iterdir():
        try:
            if int((entry / "ifindex").read_text().strip()) == ifindex:
                return entry.name
        except (OSError, ValueError):
            continue
    return None


def has_pod_marker(container_attrs: dict, pod_name: str) -> bool:
    """Check whether a container's config marks it as part of pod_name."""
    config = container_attrs.get("Config") or {}
    if config.get("Hostname") == pod_name:
        return True
    return f"HOSTNAME={pod_name}" in (config.get("Env") or [])


class DockerRuntime(RuntimeHost):
    """RuntimeHost implementation backed by the Docker daemon and a PodRegistry."""

    def __init__(
        self,
        registry: PodRegistry | None = None,
        interface_name: str | None = None,
        sys_class_net: str = SYS_CLASS_NET,
    ):
        self._docker: docker.DockerClient | None = None
        self.registry = registry or get_pod_registry()
        self.interface_name = interface_name or settings.pod_interface_name
        self.sys_class_net = sys_class_net

    @property
    def docker(self) -> docker.DockerClient:
        """Lazy-initialize Docker client."""
        if self._docker is None:
            self._docker = docker.DockerClient(base_url=settings.docker_socket)
        return self._docker

    async def get_netns(self, sandbox_id: str) -> str:
        try:
            container = await asyncio.to_thread(self.docker.containers.get, sandbox_id)
        except NotFound:
            raise SandboxNotFound(sandbox_id)
        except APIError as e:
            raise SandboxNotFound(sandbox_id, str(e))

        if container.status != "running":
            raise SandboxNotFound(sandbox_id, f"container is {container.status}")

        pid = container.attrs.get("State", {}).get("Pid")
        if not pid:
            raise SandboxNotFound(sandbox_id, "no init process")
        return f"/proc/{pid}/ns/net"

    def get_pod_by_name(self, namespace: str, name: str) -> PodIdentity | None:
        return self.registry.get(namespace, name)

    def get_pod_status(self, namespace: str, name: str) -> PodStatus | None:
        return self.registry.status(namespace, name)

    async def find_ports_by_pod_marker(self, pod_name: str, timeout: float | None = None) -> list[str]:
        if timeout is None:
            timeout = settings.flow_timeout

        try:
            containers = await asyncio.wait_for(
                asyncio.to_thread(self.docker.containers.list), timeout
            )
        except asyncio.TimeoutError:
            raise DeadlineExceeded("docker containers list", timeout)
        ports: list[str] = []

        for container in containers:
            if not has_pod_marker(container.attrs, pod_name):
                continue

            pid = container.attrs.get("State", {}).get("Pid")
            if not pid:
                continue

            code, stdout, stderr = await run_cmd([
                "nsenter", "-t", str(pid), "-n",
                "ip", "-o", "link", "show", self.interface_name,
            ], timeout=timeout)
            if code != 0:
                logger.debug(f"No {self.interface_name} in {container.name}: {stderr.strip()}")
                continue

            peer = parse_peer_ifindex(stdout, self.interface_name)
            if peer is None:
                continue

            host_iface = host_interface_by_ifindex(peer, self.sys_class_net)
            if host_iface and host_iface not in ports:
                logger.debug(f"Pod {pod_name} container {container.name} -> port {host_iface}")
                ports.append(host_iface)

        return ports
