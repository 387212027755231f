"""Base interface for the container runtime collaborator.

The orchestrator never talks to the runtime directly. It needs three
things from it: the network namespace of a sandbox, the pod object for a
(namespace, name) pair, and, when tearing down without a sandbox handle,
the switch ports that belong to a pod.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Mapping


@dataclass(frozen=True)
class PodIdentity:
    """Identity of a pod as supplied by the node agent.

    Attributes:
        namespace: Pod namespace
        name: Pod name
        sandbox_id: Infra (sandbox) container ID
        labels: Pod labels
        annotations: Pod annotations
    """

    namespace: str
    name: str
    sandbox_id: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Unique key for this pod."""
        return f"{self.namespace}/{self.name}"


@dataclass
class PodStatus:
    """Externally visible network status of a pod.

    pod_ip is a single slot: each successfully attached network overwrites
    it, so it holds the address from the last network processed.
    """

    pod_ip: str = ""


class RuntimeHost(ABC):
    """Abstract runtime collaborator interface."""

    @abstractmethod
    async def get_netns(self, sandbox_id: str) -> str:
        """Return the network namespace path of a sandbox.

        Raises:
            SandboxNotFound: If the sandbox is unknown or not running
        """

    @abstractmethod
    def get_pod_by_name(self, namespace: str, name: str) -> PodIdentity | None:
        """Return the pod identity, or None if the pod is unknown."""

    @abstractmethod
    def get_pod_status(self, namespace: str, name: str) -> PodStatus | None:
        """Return the mutable status record of a pod, or None if unknown."""

    @abstractmethod
    async def find_ports_by_pod_marker(self, pod_name: str, timeout: float | None = None) -> list[str]:
        """Return host-side switch port names of containers marked with pod_name.

        Zero matches is not an error. Every runtime call the scan makes is
        bounded by timeout; exceeding it raises DeadlineExceeded.
        """
