"""Container runtime collaborators for netbinder."""

from netbinder.runtime.base import PodIdentity, PodStatus, RuntimeHost
from netbinder.runtime.docker import DockerRuntime
from netbinder.runtime.registry import PodRegistry, get_pod_registry

__all__ = [
    "PodIdentity",
    "PodStatus",
    "RuntimeHost",
    "DockerRuntime",
    "PodRegistry",
    "get_pod_registry",
]
