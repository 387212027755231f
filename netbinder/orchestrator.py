"""Pod network attachment orchestrator.

SetUpPod / TearDownPod / Status across one or more CNI networks.

Set up attaches the selected networks in order and stops at the first
failure. Networks attached before the failure stay attached and are
recorded, so a repeated set up for the same sandbox only invokes the
plugin for what is still missing.

Tear down detaches the selected networks in reverse order and does not
stop on failure; every network gets its own outcome so the caller can
retry exactly the ones that failed.

Nothing here retries or rolls back. The caller serializes operations for
the same pod.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from netbinder.errors import (
    DeadlineExceeded,
    MalformedAddress,
    NetbinderError,
    PluginFailure,
    PodNotFound,
)
from netbinder.network.catalog import NetworkCatalog, NetworkDefinition
from netbinder.network.plugin import AttachmentResult, PluginInvoker
from netbinder.network.selector import select_networks
from netbinder.runtime.base import PodIdentity, RuntimeHost

logger = logging.getLogger(__name__)


def _context(
    pod: PodIdentity,
    operation: str,
    network: str | None = None,
    error: NetbinderError | None = None,
) -> dict[str, Any]:
    """Log context for one pod operation."""
    context: dict[str, Any] = {"pod": pod.key, "sandbox_id": pod.sandbox_id, "operation": operation}
    if network:
        context["network"] = network
    if error is not None:
        context["error_category"] = error.category.value
    return context


class OutcomeState(str, Enum):
    """Per-network result of a set up or tear down."""
    ATTACHED = "attached"
    ALREADY_ATTACHED = "already_attached"  # Recorded from an earlier set up
    DETACHED = "detached"
    FAILED = "failed"
    SKIPPED = "skipped"  # Not attempted after an earlier failure


@dataclass
class NetworkOutcome:
    """What happened to one network during an operation."""

    network: str
    state: OutcomeState
    result: AttachmentResult | None = None
    error: NetbinderError | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"network": self.network, "state": self.state.value}
        if self.result is not None:
            data["ip4"] = str(self.result.ip4) if self.result.ip4 else None
            data["ip6"] = str(self.result.ip6) if self.result.ip6 else None
        if self.error is not None:
            data["error"] = self.error.to_structured().to_dict()
        return data


@dataclass
class AttachmentReport:
    """Outcomes of one SetUpPod/TearDownPod call, in processing order."""

    pod: str
    operation: str  # "setup" or "teardown"
    outcomes: list[NetworkOutcome] = field(default_factory=list)
    primary_ip: str | None = None

    @property
    def ok(self) -> bool:
        return not any(o.state == OutcomeState.FAILED for o in self.outcomes)

    @property
    def succeeded(self) -> list[str]:
        return [
            o.network for o in self.outcomes
            if o.state in (OutcomeState.ATTACHED, OutcomeState.ALREADY_ATTACHED, OutcomeState.DETACHED)
        ]

    @property
    def failed_networks(self) -> list[str]:
        return [o.network for o in self.outcomes if o.state == OutcomeState.FAILED]

    @property
    def pending_networks(self) -> list[str]:
        """Networks a retry still has to process (failed + skipped)."""
        return [
            o.network for o in self.outcomes
            if o.state in (OutcomeState.FAILED, OutcomeState.SKIPPED)
        ]

    @property
    def first_error(self) -> NetbinderError | None:
        for outcome in self.outcomes:
            if outcome.error is not None:
                return outcome.error
        return None

    def raise_for_failure(self) -> None:
        """Raise the first per-network error, if any."""
        error = self.first_error
        if error is not None:
            raise error

    def to_dict(self) -> dict[str, Any]:
        return {
            "pod": self.pod,
            "operation": self.operation,
            "ok": self.ok,
            "primary_ip": self.primary_ip,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class AttachmentOrchestrator:
    """Attaches and detaches pods to their selected CNI networks.

    Usage:
        orchestrator = AttachmentOrchestrator(runtime, NetworkCatalog(), PluginInvoker())
        report = await orchestrator.set_up_pod("default", "web-0", sandbox_id)
        if not report.ok:
            # retry later; only report.pending_networks will be invoked again
            ...
        ip = await orchestrator.status("default", "web-0")
    """

    def __init__(
        self,
        runtime: RuntimeHost,
        catalog: NetworkCatalog | None = None,
        invoker: PluginInvoker | None = None,
    ):
        self.runtime = runtime
        self.catalog = catalog or NetworkCatalog()
        self.invoker = invoker or PluginInvoker()
        # (pod key, sandbox id) -> network name -> result
        self._attachments: dict[tuple[str, str], dict[str, AttachmentResult]] = {}

    def _resolve_pod(self, namespace: str, name: str, sandbox_id: str) -> PodIdentity:
        pod = self.runtime.get_pod_by_name(namespace, name)
        if pod is None:
            raise PodNotFound(namespace, name)
        if sandbox_id and pod.sandbox_id != sandbox_id:
            # The registry may hold the previous sandbox of a restarted pod
            pod = PodIdentity(
                namespace=pod.namespace,
                name=pod.name,
                sandbox_id=sandbox_id,
                labels=pod.labels,
                annotations=pod.annotations,
            )
        return pod

    async def _select(self, pod: PodIdentity) -> tuple[NetworkDefinition, ...]:
        # Networks may be created on the fly, so always rescan
        return await asyncio.to_thread(select_networks, pod, self.catalog, True)

    def _set_pod_ip(self, pod: PodIdentity, result: AttachmentResult) -> str | None:
        ip = result.primary_ip
        if ip is None:
            return None
        status = self.runtime.get_pod_status(pod.namespace, pod.name)
        if status is not None:
            status.pod_ip = str(ip)
        return str(ip)

    def attachments(self, namespace: str, name: str) -> list[AttachmentResult]:
        """Recorded attachments of a pod across all its sandboxes."""
        key = f"{namespace}/{name}"
        return [
            result
            for (pod_key, _), results in self._attachments.items()
            if pod_key == key
            for result in results.values()
        ]

    def forget_pod(self, namespace: str, name: str) -> int:
        """Drop a pod's attachment records for every sandbox.

        Returns the number of sandboxes whose records were dropped.
        """
        key = f"{namespace}/{name}"
        stale = [k for k in self._attachments if k[0] == key]
        for k in stale:
            del self._attachments[k]
        if stale:
            logger.debug(f"Forgot attachment records of pod {key} ({len(stale)} sandboxes)")
        return len(stale)

    async def set_up_pod(
        self,
        namespace: str,
        name: str,
        sandbox_id: str,
        timeout: float | None = None,
    ) -> AttachmentReport:
        """Attach a pod's sandbox to every selected network, in order.

        Raises:
            SandboxNotFound: If the sandbox has no network namespace
            PodNotFound: If the pod is unknown
            NoNetworksAvailable: If the catalog is empty
            MalformedNetworkSelection: If the pod's network list is malformed
        """
        netns = await self.runtime.get_netns(sandbox_id)
        pod = self._resolve_pod(namespace, name, sandbox_id)
        networks = await self._select(pod)

        report = AttachmentReport(pod=pod.key, operation="setup")
        recorded = self._attachments.setdefault((pod.key, pod.sandbox_id), {})
        failed = False

        for network in networks:
            if failed:
                report.outcomes.append(NetworkOutcome(network.name, OutcomeState.SKIPPED))
                continue

            existing = recorded.get(network.name)
            if existing is not None:
                logger.debug(f"Pod {pod.key} already attached to {network.name}")
                report.outcomes.append(
                    NetworkOutcome(network.name, OutcomeState.ALREADY_ATTACHED, result=existing)
                )
                report.primary_ip = self._set_pod_ip(pod, existing) or report.primary_ip
                continue

            try:
                result = await self.invoker.attach(network, pod, netns, timeout=timeout)
            except (PluginFailure, DeadlineExceeded) as e:
                logger.error(
                    f"Error adding pod {pod.key} to network {network.name}: {e}",
                    extra=_context(pod, "setup", network.name, e),
                )
                report.outcomes.append(NetworkOutcome(network.name, OutcomeState.FAILED, error=e))
                failed = True
                continue

            recorded[network.name] = result
            report.outcomes.append(NetworkOutcome(network.name, OutcomeState.ATTACHED, result=result))
            report.primary_ip = self._set_pod_ip(pod, result) or report.primary_ip

        if not failed:
            logger.info(
                f"Pod {pod.key} set up on networks {report.succeeded}, ip={report.primary_ip}",
                extra=_context(pod, "setup"),
            )
        return report

    async def tear_down_pod(
        self,
        namespace: str,
        name: str,
        sandbox_id: str,
        timeout: float | None = None,
    ) -> AttachmentReport:
        """Detach a pod's sandbox from every selected network, in reverse order.

        Raises:
            SandboxNotFound: If the sandbox has no network namespace
            PodNotFound: If the pod is unknown
            NoNetworksAvailable: If the catalog is empty
            MalformedNetworkSelection: If the pod's network list is malformed
        """
        netns = await self.runtime.get_netns(sandbox_id)
        pod = self._resolve_pod(namespace, name, sandbox_id)
        networks = await self._select(pod)

        report = AttachmentReport(pod=pod.key, operation="teardown")
        recorded = self._attachments.get((pod.key, pod.sandbox_id), {})

        for network in reversed(networks):
            try:
                await self.invoker.detach(network, pod, netns, timeout=timeout)
            except (PluginFailure, DeadlineExceeded) as e:
                logger.error(
                    f"Error deleting pod {pod.key} from network {network.name}: {e}",
                    extra=_context(pod, "teardown", network.name, e),
                )
                report.outcomes.append(NetworkOutcome(network.name, OutcomeState.FAILED, error=e))
                continue

            recorded.pop(network.name, None)
            report.outcomes.append(NetworkOutcome(network.name, OutcomeState.DETACHED))

        if not recorded:
            self._attachments.pop((pod.key, pod.sandbox_id), None)

        if report.ok:
            logger.info(
                f"Pod {pod.key} torn down from networks {report.succeeded}",
                extra=_context(pod, "teardown"),
            )
        return report

    async def status(
        self, namespace: str, name: str
    ) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
        """Return the pod's recorded primary IP.

        Raises:
            PodNotFound: If the pod is unknown
            MalformedAddress: If the recorded address cannot be parsed
        """
        status = self.runtime.get_pod_status(namespace, name)
        if status is None or self.runtime.get_pod_by_name(namespace, name) is None:
            raise PodNotFound(namespace, name)
        if not status.pod_ip:
            return None
        try:
            return ipaddress.ip_address(status.pod_ip)
        except ValueError:
            raise MalformedAddress(status.pod_ip)
