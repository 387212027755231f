"""In-process pod registry.

The node agent owns the pod object model; it pushes the identity of each
pod it is about to network here (see the /pods endpoints) and netbinder
keeps the visible status alongside it.
"""
from __future__ import annotations

import logging

from netbinder.runtime.base import PodIdentity, PodStatus

logger = logging.getLogger(__name__)


class PodRegistry:
    """Pods known to this node, keyed by namespace/name."""

    def __init__(self):
        self._pods: dict[str, PodIdentity] = {}
        self._status: dict[str, PodStatus] = {}

    @staticmethod
    def _key(namespace: str, name: str) -> str:
        return f"{namespace}/{name}"

    def register(self, pod: PodIdentity) -> PodIdentity:
        """Add or replace a pod. Existing status is kept."""
        self._pods[pod.key] = pod
        self._status.setdefault(pod.key, PodStatus())
        logger.debug(f"Registered pod {pod.key}")
        return pod

    def remove(self, namespace: str, name: str) -> bool:
        """Forget a pod and its status. Returns True if it was known."""
        key = self._key(namespace, name)
        self._status.pop(key, None)
        return self._pods.pop(key, None) is not None

    def get(self, namespace: str, name: str) -> PodIdentity | None:
        return self._pods.get(self._key(namespace, name))

    def status(self, namespace: str, name: str) -> PodStatus | None:
        return self._status.get(self._key(namespace, name))

    def list(self) -> list[PodIdentity]:
        return list(self._pods.values())


# Module-level singleton accessor
_pod_registry: PodRegistry | None = None


def get_pod_registry() -> PodRegistry:
    """Get the global PodRegistry instance."""
    global _pod_registry
    if _pod_registry is None:
        _pod_registry = PodRegistry()
    return _pod_registry
