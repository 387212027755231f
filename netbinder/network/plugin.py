"""CNI plugin invocation.

One PluginInvoker call maps to exactly one execution of a CNI plugin
binary for one (network, pod) pair:

    CNI_COMMAND=ADD|DEL  CNI_CONTAINERID  CNI_NETNS  CNI_IFNAME
    CNI_ARGS=K8S_POD_NAMESPACE=..;K8S_POD_NAME=..;K8S_POD_INFRA_CONTAINER_ID=..
    CNI_PATH=<plugin search paths>
    stdin: the network's raw config

The plugin's exit status and output are the only source of truth. There
are no retries here; idempotency of ADD on an already attached pod is a
contract of the plugin.
"""

from __future__ import annotations

import asyncio
import ipaddress
import itertools
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from netbinder.config import settings
from netbinder.errors import DeadlineExceeded, ErrorCategory, PluginFailure
from netbinder.network.catalog import NetworkDefinition
from netbinder.network.cmd import run_cmd
from netbinder.runtime.base import PodIdentity

logger = logging.getLogger(__name__)

CNI_ADD = "ADD"
CNI_DEL = "DEL"


@dataclass(frozen=True)
class RuntimeConf:
    """Per-invocation runtime parameters handed to the plugin."""

    container_id: str
    netns: str
    ifname: str
    args: tuple[tuple[str, str], ...] = ()

    @property
    def cni_args(self) -> str:
        """Args in CNI_ARGS form (KEY=VALUE;KEY=VALUE)."""
        return ";".join(f"{k}={v}" for k, v in self.args)


@dataclass(frozen=True)
class AttachmentResult:
    """Addresses a plugin assigned to a pod on one network."""

    network: str
    ip4: ipaddress.IPv4Interface | None = None
    ip6: ipaddress.IPv6Interface | None = None
    assigned_at: int = 0  # Logical timestamp, increases with every attach
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def primary_ip(self) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
        """IPv4 address if assigned, else IPv6, else None."""
        if self.ip4 is not None:
            return self.ip4.ip
        if self.ip6 is not None:
            return self.ip6.ip
        return None


def build_runtime_conf(
    pod: PodIdentity,
    netns: str,
    ifname: str | None = None,
) -> RuntimeConf:
    """Build the runtime descriptor for a pod's sandbox."""
    logger.debug(f"Got netns path {netns} for pod {pod.key}")
    return RuntimeConf(
        container_id=pod.sandbox_id,
        netns=netns,
        ifname=ifname or settings.pod_interface_name,
        args=(
            ("K8S_POD_NAMESPACE", pod.namespace),
            ("K8S_POD_NAME", pod.name),
            ("K8S_POD_INFRA_CONTAINER_ID", pod.sandbox_id),
        ),
    )


def find_plugin(plugin_type: str, search_paths: tuple[str, ...] | list[str]) -> Path | None:
    """Locate an executable plugin binary in the search paths, in order."""
    for directory in search_paths:
        candidate = Path(directory) / plugin_type
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate
    return None


def parse_result(network: str, stdout: str, assigned_at: int = 0) -> AttachmentResult:
    """Parse a CNI ADD result.

    Accepts both the legacy shape ({"ip4": {"ip": ...}, "ip6": {...}}) and
    the current one ({"ips": [{"version": "4", "address": ...}]}).

    Raises:
        PluginFailure: If the output is not a JSON object or an address is invalid
    """
    try:
        data = json.loads(stdout) if stdout.strip() else {}
    except ValueError as e:
        raise PluginFailure(network, f"invalid plugin result: {e}") from e
    if not isinstance(data, dict):
        raise PluginFailure(network, "invalid plugin result: expected a JSON object")

    ip4: ipaddress.IPv4Interface | None = None
    ip6: ipaddress.IPv6Interface | None = None

    try:
        if "ips" in data:
            for entry in data.get("ips") or []:
                iface = ipaddress.ip_interface(entry["address"])
                if iface.version == 4 and ip4 is None:
                    ip4 = iface
                elif iface.version == 6 and ip6 is None:
                    ip6 = iface
        else:
            if data.get("ip4"):
                ip4 = ipaddress.IPv4Interface(data["ip4"]["ip"])
            if data.get("ip6"):
                ip6 = ipaddress.IPv6Interface(data["ip6"]["ip"])
    except (KeyError, TypeError, ValueError) as e:
        raise PluginFailure(network, f"invalid address in plugin result: {e}") from e

    return AttachmentResult(network=network, ip4=ip4, ip6=ip6, assigned_at=assigned_at, raw=data)


def plugin_error_message(stdout: str, stderr: str, returncode: int) -> str:
    """Extract the error message a failed plugin reported."""
    try:
        data = json.loads(stdout)
    except ValueError:
        data = None

    if isinstance(data, dict) and data.get("msg"):
        message = str(data["msg"])
        if data.get("details"):
            message += f": {data['details']}"
        if data.get("code") is not None:
            message += f" (code {data['code']})"
        return message

    return stderr.strip() or stdout.strip() or f"plugin exited with status {returncode}"


class PluginInvoker:
    """Invokes CNI plugins for (network, pod) pairs.

    Usage:
        invoker = PluginInvoker()
        result = await invoker.attach(network, pod, "/proc/1234/ns/net")
        await invoker.detach(network, pod, "/proc/1234/ns/net")
    """

    def __init__(self, ifname: str | None = None, timeout: float | None = None):
        self.ifname = ifname or settings.pod_interface_name
        self.timeout = timeout if timeout is not None else settings.plugin_timeout
        self._clock = itertools.count(1)

    async def attach(
        self,
        network: NetworkDefinition,
        pod: PodIdentity,
        netns: str,
        timeout: float | None = None,
    ) -> AttachmentResult:
        """Attach the pod's sandbox to a network.

        Raises:
            PluginFailure: If the plugin fails or returns an invalid result
            DeadlineExceeded: If the plugin does not finish in time
        """
        rt = build_runtime_conf(pod, netns, self.ifname)
        stdout = await self._exec(CNI_ADD, network, rt, timeout)
        result = parse_result(network.name, stdout, next(self._clock))
        logger.info(
            f"Attached pod {pod.key} to network {network.name}: "
            f"ip4={result.ip4} ip6={result.ip6}",
            extra={"pod": pod.key, "sandbox_id": pod.sandbox_id, "network": network.name},
        )
        return result

    async def detach(
        self,
        network: NetworkDefinition,
        pod: PodIdentity,
        netns: str,
        timeout: float | None = None,
    ) -> None:
        """Detach the pod's sandbox from a network.

        Raises:
            PluginFailure: If the plugin fails
            DeadlineExceeded: If the plugin does not finish in time
        """
        rt = build_runtime_conf(pod, netns, self.ifname)
        await self._exec(CNI_DEL, network, rt, timeout)
        logger.info(
            f"Detached pod {pod.key} from network {network.name}",
            extra={"pod": pod.key, "sandbox_id": pod.sandbox_id, "network": network.name},
        )

    async def _exec(
        self,
        command: str,
        network: NetworkDefinition,
        rt: RuntimeConf,
        timeout: float | None,
    ) -> str:
        plugin = await asyncio.to_thread(find_plugin, network.plugin_type, network.plugin_search_paths)
        if plugin is None:
            raise PluginFailure(
                network.name,
                f"failed to find plugin {network.plugin_type!r} in path "
                f"{list(network.plugin_search_paths)}",
            )

        env = dict(os.environ)
        env.update({
            "CNI_COMMAND": command,
            "CNI_CONTAINERID": rt.container_id,
            "CNI_NETNS": rt.netns,
            "CNI_IFNAME": rt.ifname,
            "CNI_ARGS": rt.cni_args,
            "CNI_PATH": os.pathsep.join(network.plugin_search_paths),
        })

        logger.debug(
            f"About to run {command} with type={network.plugin_type}, "
            f"path={list(network.plugin_search_paths)}"
        )
        try:
            code, stdout, stderr = await run_cmd(
                [str(plugin)],
                stdin=network.raw_config,
                env=env,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except DeadlineExceeded as e:
            raise DeadlineExceeded(f"CNI {command} on network {network.name}", e.timeout) from e
        if code != 0:
            message = plugin_error_message(stdout, stderr, code)
            logger.error(
                f"Error running {command} for network {network.name}: {message}",
                extra={
                    "sandbox_id": rt.container_id,
                    "network": network.name,
                    "operation": command,
                    "error_category": ErrorCategory.PLUGIN_FAILURE.value,
                },
            )
            raise PluginFailure(network.name, message)
        return stdout
