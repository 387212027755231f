"""Node agent <-> netbinder protocol schemas.

These Pydantic models define the data structures exchanged between the
hosting node agent and netbinder over HTTP.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from netbinder.version import __version__


# --- Health / catalog ---

class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = __version__
    timestamp: datetime


class NetworkInfo(BaseModel):
    """One network definition from the catalog."""
    name: str
    plugin_type: str
    plugin_search_paths: list[str] = Field(default_factory=list)
    source: str = ""
    is_default: bool = False


class NetworkListResponse(BaseModel):
    net_dir: str
    networks: list[NetworkInfo] = Field(default_factory=list)
    default: str | None = None


# --- Pods ---

class RegisterPodRequest(BaseModel):
    """Node agent -> netbinder: identity of a pod about to be networked."""
    sandbox_id: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class PodInfo(BaseModel):
    namespace: str
    name: str
    sandbox_id: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    pod_ip: str | None = None


class PodNetworkRequest(BaseModel):
    """Node agent -> netbinder: set up or tear down a pod sandbox."""
    sandbox_id: str
    timeout: float | None = Field(default=None, gt=0)  # Per plugin call (seconds)


class NetworkOutcomeInfo(BaseModel):
    network: str
    state: str  # attached, already_attached, detached, failed, skipped
    ip4: str | None = None
    ip6: str | None = None
    error: dict[str, Any] | None = None


class PodNetworkResponse(BaseModel):
    """Per-network outcomes of a set up or tear down."""
    success: bool
    pod: str
    operation: str
    primary_ip: str | None = None
    outcomes: list[NetworkOutcomeInfo] = Field(default_factory=list)
    failed_networks: list[str] = Field(default_factory=list)
    pending_networks: list[str] = Field(default_factory=list)


class PodStatusResponse(BaseModel):
    namespace: str
    name: str
    ip: str | None = None


# --- Flows and ports ---

class FlowRuleSetRequest(BaseModel):
    """A tenant isolation rule set for one pod interface."""
    tenant_id: int = Field(ge=0, le=0xFFFFFFFF)
    mac: str = Field(min_length=1)
    ip: str = Field(min_length=1)
    switch_port: str = Field(min_length=1)
    timeout: float | None = Field(default=None, gt=0)


class FlowResponse(BaseModel):
    success: bool = True
    tenant_id: int
    rules: list[str] = Field(default_factory=list)


class FlowDumpResponse(BaseModel):
    bridge: str
    tenant_id: int | None = None
    flow_count: int = 0
    flows: list[str] = Field(default_factory=list)


class AttachPortRequest(BaseModel):
    """Attach a pod's host-side veth to the bridge (and optionally program its flows)."""
    namespace: str
    name: str
    port_name: str
    sandbox_id: str = ""
    tenant_id: int | None = Field(default=None, ge=0, le=0xFFFFFFFF)
    mac: str | None = None
    ip: str | None = None
    timeout: float | None = Field(default=None, gt=0)


class PortBindingInfo(BaseModel):
    pod_key: str
    port_name: str
    sandbox_id: str = ""
    tenant_id: int | None = None
    mac: str | None = None
    ip: str | None = None
    bound_at: str


class TeardownPortsRequest(BaseModel):
    """Tear down a pod's switch state. Only the pod name is required."""
    pod_name: str
    namespace: str | None = None
    tenant_id: int | None = Field(default=None, ge=0, le=0xFFFFFFFF)
    mac: str | None = None
    ip: str | None = None
    switch_port: str | None = None
    timeout: float | None = Field(default=None, gt=0)


class TeardownPortsResponse(BaseModel):
    success: bool
    pod_name: str
    rules_deleted: int = 0
    ports_detached: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
