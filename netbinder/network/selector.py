"""Network selection for pods.

Explicit sources accumulate in this order:
    1. The pod namespace is itself a network name
    2. Networks listed in the pod label (JSON array of names)
    3. Networks listed in the pod annotation (same key, same format)
Only when none of them match is the catalog default used.

Unknown names in the label/annotation are skipped. Duplicates are dropped,
keeping the first occurrence.
"""

from __future__ import annotations

import json
import logging

from netbinder.config import settings
from netbinder.errors import MalformedNetworkSelection, NoNetworksAvailable
from netbinder.network.catalog import NetworkCatalog, NetworkDefinition
from netbinder.runtime.base import PodIdentity

logger = logging.getLogger(__name__)


def parse_network_list(value: str | None, source: str = "label") -> list[str] | None:
    """Parse a network list label/annotation value.

    Returns:
        None when the value is absent, [] when it is empty, otherwise the
        list of names in the order given

    Raises:
        MalformedNetworkSelection: If the value is not a JSON array of strings
    """
    if value is None:
        return None
    if not value.strip():
        return []

    try:
        names = json.loads(value)
    except ValueError as e:
        raise MalformedNetworkSelection(source, value, str(e)) from e

    if not isinstance(names, list):
        raise MalformedNetworkSelection(source, value, "expected a JSON array")
    if not all(isinstance(n, str) for n in names):
        raise MalformedNetworkSelection(source, value, "network names must be strings")
    return names


def select_networks(
    pod: PodIdentity,
    catalog: NetworkCatalog,
    refresh: bool = True,
    network_key: str | None = None,
) -> tuple[NetworkDefinition, ...]:
    """Select the ordered networks a pod must be attached to.

    Args:
        pod: Pod identity with labels and annotations
        catalog: Network catalog handle
        refresh: Rescan the config directory first (networks can be
            created on the fly between calls)
        network_key: Label/annotation key (defaults to settings.pod_network_key)

    Returns:
        Non-empty tuple of network definitions in attach order

    Raises:
        NoNetworksAvailable: If the catalog is empty
        MalformedNetworkSelection: If the label or annotation is malformed
    """
    snapshot = catalog.refresh() if refresh else catalog.snapshot
    if len(snapshot) == 0:
        raise NoNetworksAvailable(str(catalog.net_dir))

    key = network_key or settings.pod_network_key
    selected: dict[str, NetworkDefinition] = {}

    def _add(name: str, source: str) -> None:
        network = snapshot.get(name)
        if network is None:
            logger.debug(f"Pod {pod.key}: {source} names unknown network {name!r}, skipping")
            return
        selected.setdefault(name, network)

    # Namespace is itself a network name
    if pod.namespace in snapshot:
        _add(pod.namespace, "namespace")

    for source, values in (("label", pod.labels), ("annotation", pod.annotations)):
        names = parse_network_list(values.get(key), source=f"{source} {key}")
        for name in names or []:
            _add(name, source)

    if not selected:
        # Return the default one
        return (snapshot.default,)

    return tuple(selected.values())
