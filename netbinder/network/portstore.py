"""Persisted pod -> switch port bindings.

The attach path records which OVS port serves a pod so teardown can find
it directly instead of scanning runtime state. Bindings are kept in a JSON
file in the workspace directory and survive agent restarts.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from netbinder.config import settings

logger = logging.getLogger(__name__)

# State persistence path (in workspace directory)
STATE_PERSISTENCE_FILE = "port_bindings.json"


@dataclass
class PortBinding:
    """A switch port attached on behalf of a pod."""

    pod_key: str  # namespace/name
    port_name: str  # Host-side veth attached to the bridge
    sandbox_id: str = ""
    tenant_id: int | None = None
    mac: str | None = None
    ip: str | None = None
    bound_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class PortStore:
    """Keyed store of PortBindings, persisted atomically to disk.

    A pod may hold several bindings (one per port); they are keyed by
    pod key then port name.
    """

    def __init__(self, state_file: str | Path | None = None):
        if state_file is None:
            workspace = Path(settings.workspace_path)
            state_file = workspace / STATE_PERSISTENCE_FILE
        self._state_file = Path(state_file)
        self._bindings: dict[str, dict[str, PortBinding]] = {}
        self._lock = asyncio.Lock()
        self._loaded = False

    @property
    def state_file(self) -> Path:
        return self._state_file

    def _serialize_state(self) -> dict[str, Any]:
        return {
            "version": 1,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "bindings": {
                pod_key: [asdict(b) for b in ports.values()]
                for pod_key, ports in self._bindings.items()
            },
        }

    def _deserialize_state(self, data: dict[str, Any]) -> None:
        version = data.get("version", 1)
        if version != 1:
            logger.warning(f"Unknown port store version {version}, attempting load anyway")

        for pod_key, entries in data.get("bindings", {}).items():
            for entry in entries:
                binding = PortBinding(
                    pod_key=entry.get("pod_key", pod_key),
                    port_name=entry["port_name"],
                    sandbox_id=entry.get("sandbox_id", ""),
                    tenant_id=entry.get("tenant_id"),
                    mac=entry.get("mac"),
                    ip=entry.get("ip"),
                    bound_at=entry.get("bound_at") or datetime.now(timezone.utc).isoformat(),
                )
                self._bindings.setdefault(pod_key, {})[binding.port_name] = binding

    def _load(self) -> None:
        """Load bindings from disk once. A corrupt file starts fresh."""
        if self._loaded:
            return
        self._loaded = True

        if not self._state_file.exists():
            logger.info("No persisted port bindings found, starting fresh")
            return

        try:
            with open(self._state_file, "r") as f:
                data = json.load(f)
            self._deserialize_state(data)
            logger.info(f"Loaded port bindings for {len(self._bindings)} pods")
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Corrupted port store, starting fresh: {e}")
            self._bindings.clear()

    def _save(self) -> None:
        """Write bindings to disk via temp file + rename."""
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._state_file.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._serialize_state(), f, indent=2)
        tmp_path.rename(self._state_file)

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await asyncio.to_thread(self._load)

    async def bind(self, binding: PortBinding) -> None:
        """Record (or replace) a binding."""
        async with self._lock:
            await self._ensure_loaded()
            self._bindings.setdefault(binding.pod_key, {})[binding.port_name] = binding
            await asyncio.to_thread(self._save)
        logger.debug(f"Bound port {binding.port_name} to pod {binding.pod_key}")

    async def unbind(self, pod_key: str, port_name: str | None = None) -> list[PortBinding]:
        """Forget one port of a pod, or all of them when port_name is None."""
        async with self._lock:
            await self._ensure_loaded()
            ports = self._bindings.get(pod_key, {})
            if port_name is None:
                removed = list(ports.values())
                self._bindings.pop(pod_key, None)
            else:
                removed = [ports.pop(port_name)] if port_name in ports else []
                if not ports:
                    self._bindings.pop(pod_key, None)
            if removed:
                await asyncio.to_thread(self._save)
        return removed

    async def get(self, pod_key: str) -> list[PortBinding]:
        """All bindings recorded for a pod."""
        await self._ensure_loaded()
        return list(self._bindings.get(pod_key, {}).values())

    async def find_by_pod_name(self, pod_name: str) -> list[PortBinding]:
        """Bindings of every pod with this name, across namespaces."""
        await self._ensure_loaded()
        return [
            b
            for pod_key, ports in self._bindings.items()
            if pod_key.rsplit("/", 1)[-1] == pod_name
            for b in ports.values()
        ]

    async def all(self) -> list[PortBinding]:
        await self._ensure_loaded()
        return [b for ports in self._bindings.values() for b in ports.values()]
