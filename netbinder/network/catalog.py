"""CNI network catalog.

Discovers network definitions from the CNI configuration directory, one
network per file. Files are read in lexicographic order; the first file
that parses becomes the node's default network.

Each refresh builds a brand new CatalogSnapshot and publishes it with a
single reference swap, so a reader holding a snapshot always sees it whole
while a refresh is running elsewhere.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from netbinder.config import settings

logger = logging.getLogger(__name__)

# Extensions libcni treats as single-network config files
CONF_EXTENSIONS = (".conf", ".json")


class InvalidNetworkConfig(ValueError):
    """Raised when a network definition file cannot be parsed."""


@dataclass(frozen=True)
class NetworkDefinition:
    """A named network and the plugin that attaches pods to it."""

    name: str
    plugin_type: str
    plugin_search_paths: tuple[str, ...]
    raw_config: bytes  # Passed to the plugin as-is on stdin
    source: str = ""  # File the definition was loaded from


@dataclass(frozen=True)
class CatalogSnapshot:
    """Immutable view of all networks known at one point in time."""

    by_name: Mapping[str, NetworkDefinition] = field(
        default_factory=lambda: MappingProxyType({})
    )
    default: NetworkDefinition | None = None
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        return len(self.by_name)

    def __contains__(self, name: object) -> bool:
        return name in self.by_name

    def get(self, name: str) -> NetworkDefinition | None:
        return self.by_name.get(name)


def conf_files(net_dir: Path) -> list[Path]:
    """List network config files in a directory, sorted by path."""
    if not net_dir.is_dir():
        return []
    return sorted(
        p for p in net_dir.iterdir()
        if p.is_file() and p.suffix in CONF_EXTENSIONS
    )


def load_definition(
    path: Path,
    cni_bin_dir: str,
    vendor_dir_template: str,
) -> NetworkDefinition:
    """Parse one network definition file.

    Raises:
        InvalidNetworkConfig: If the file is unreadable or lacks name/type
    """
    try:
        raw = path.read_bytes()
        conf = json.loads(raw)
    except (OSError, ValueError) as e:
        raise InvalidNetworkConfig(f"{path}: {e}") from e

    if not isinstance(conf, dict):
        raise InvalidNetworkConfig(f"{path}: expected a JSON object")

    name = conf.get("name")
    plugin_type = conf.get("type")
    if not isinstance(name, str) or not name:
        raise InvalidNetworkConfig(f"{path}: missing network name")
    if not isinstance(plugin_type, str) or not plugin_type:
        raise InvalidNetworkConfig(f"{path}: missing plugin type")

    # Search for vendor-specific plugins as well as the default plugin dir
    search_paths = (cni_bin_dir, vendor_dir_template.format(name=name))

    return NetworkDefinition(
        name=name,
        plugin_type=plugin_type,
        plugin_search_paths=search_paths,
        raw_config=raw,
        source=str(path),
    )


class NetworkCatalog:
    """Holds the current snapshot of network definitions for this node.

    Usage:
        catalog = NetworkCatalog()
        snapshot = catalog.refresh()
        network = catalog.lookup("tenant-a")
    """

    def __init__(
        self,
        net_dir: str | Path | None = None,
        cni_bin_dir: str | None = None,
        vendor_dir_template: str | None = None,
    ):
        self.net_dir = Path(net_dir or settings.cni_net_dir)
        self.cni_bin_dir = cni_bin_dir or settings.cni_bin_dir
        self.vendor_dir_template = vendor_dir_template or settings.vendor_cni_dir_template
        self._snapshot = CatalogSnapshot()
        self._publish_lock = threading.Lock()

    @property
    def snapshot(self) -> CatalogSnapshot:
        """The most recently published snapshot."""
        return self._snapshot

    def refresh(self) -> CatalogSnapshot:
        """Rescan the config directory and publish a new snapshot.

        Files that fail to parse are skipped with a warning. An empty or
        missing directory produces an empty snapshot.
        """
        networks: dict[str, NetworkDefinition] = {}
        default: NetworkDefinition | None = None

        for path in conf_files(self.net_dir):
            try:
                definition = load_definition(
                    path, self.cni_bin_dir, self.vendor_dir_template
                )
            except InvalidNetworkConfig as e:
                logger.warning(f"Error loading CNI config file {path}: {e}")
                continue

            if definition.name in networks:
                logger.warning(
                    f"Duplicate network {definition.name!r} in {path}, "
                    f"keeping {networks[definition.name].source}"
                )
                continue

            networks[definition.name] = definition
            if default is None:
                default = definition

        snapshot = CatalogSnapshot(by_name=MappingProxyType(networks), default=default)
        with self._publish_lock:
            self._snapshot = snapshot

        logger.debug(
            f"Loaded {len(networks)} networks from {self.net_dir}"
            + (f", default {default.name}" if default else "")
        )
        return snapshot

    def lookup(self, name: str) -> NetworkDefinition | None:
        """Get a network definition by name from the current snapshot."""
        return self._snapshot.get(name)

    def names(self) -> list[str]:
        """Sorted names of all networks in the current snapshot."""
        return sorted(self._snapshot.by_name)
