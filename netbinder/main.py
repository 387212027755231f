"""Netbinder - per-node pod network attachment agent.

This agent runs on each node next to the container runtime and handles:
- Network selection and CNI plugin attach/detach for pod sandboxes
- Tenant isolation flows on the shared OVS bridge
- Pod switch port attach/teardown
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from netbinder.config import settings
from netbinder.errors import HTTP_STATUS_BY_CATEGORY, NetbinderError
from netbinder.logging_config import setup_logging
from netbinder.network.catalog import NetworkCatalog
from netbinder.network.flows import FlowController, FlowRuleSet
from netbinder.network.plugin import PluginInvoker
from netbinder.network.portstore import PortStore
from netbinder.orchestrator import AttachmentOrchestrator, AttachmentReport
from netbinder.runtime.base import PodIdentity
from netbinder.runtime.docker import DockerRuntime
from netbinder.runtime.registry import get_pod_registry
from netbinder.schemas import (
    AttachPortRequest,
    FlowDumpResponse,
    FlowResponse,
    FlowRuleSetRequest,
    HealthResponse,
    NetworkInfo,
    NetworkListResponse,
    NetworkOutcomeInfo,
    PodInfo,
    PodNetworkRequest,
    PodNetworkResponse,
    PodStatusResponse,
    PortBindingInfo,
    RegisterPodRequest,
    TeardownPortsRequest,
    TeardownPortsResponse,
)
from netbinder.version import __version__

# Configure structured logging
setup_logging()
logger = logging.getLogger(__name__)

# Lazily built collaborators
_catalog: NetworkCatalog | None = None
_runtime: DockerRuntime | None = None
_orchestrator: AttachmentOrchestrator | None = None
_flow_controller: FlowController | None = None


def get_catalog() -> NetworkCatalog:
    """Lazy-initialize the network catalog."""
    global _catalog
    if _catalog is None:
        _catalog = NetworkCatalog()
    return _catalog


def get_runtime() -> DockerRuntime:
    """Lazy-initialize the Docker runtime collaborator."""
    global _runtime
    if _runtime is None:
        _runtime = DockerRuntime(registry=get_pod_registry())
    return _runtime


def get_orchestrator() -> AttachmentOrchestrator:
    """Lazy-initialize the attachment orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = AttachmentOrchestrator(
            runtime=get_runtime(),
            catalog=get_catalog(),
            invoker=PluginInvoker(),
        )
    return _orchestrator


def get_flow_controller() -> FlowController:
    """Lazy-initialize the flow controller."""
    global _flow_controller
    if _flow_controller is None:
        _flow_controller = FlowController(runtime=get_runtime(), port_store=PortStore())
    return _flow_controller


def report_to_response(report: AttachmentReport) -> PodNetworkResponse:
    """Convert an orchestrator report to its schema."""
    return PodNetworkResponse(
        success=report.ok,
        pod=report.pod,
        operation=report.operation,
        primary_ip=report.primary_ip,
        outcomes=[NetworkOutcomeInfo(**o.to_dict()) for o in report.outcomes],
        failed_networks=report.failed_networks,
        pending_networks=report.pending_networks,
    )


def _failure_status(report: AttachmentReport) -> int:
    error = report.first_error
    if error is None:
        return 200
    return HTTP_STATUS_BY_CATEGORY.get(error.category, 500)


def _rule_set(tenant_id: int | None, mac: str | None, ip: str | None, port: str | None) -> FlowRuleSet | None:
    """Build a rule set from optional request fields, or None if incomplete."""
    if tenant_id is None or not mac or not ip or not port:
        return None
    try:
        return FlowRuleSet(tenant_id=tenant_id, mac=mac, ip=ip, switch_port=port)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - load the catalog on startup."""
    logger.info(f"Netbinder {__version__} starting...")
    logger.info(f"CNI config dir: {settings.cni_net_dir}, bridge: {settings.ovs_bridge_name}")

    snapshot = await asyncio.to_thread(get_catalog().refresh)
    if len(snapshot) == 0:
        logger.warning(f"No CNI networks found in {settings.cni_net_dir}")
    else:
        logger.info(f"Networks: {sorted(snapshot.by_name)}, default: {snapshot.default.name}")

    yield

    logger.info("Netbinder shutting down")


# Create FastAPI app
app = FastAPI(
    title="Netbinder",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(NetbinderError)
async def netbinder_error_handler(request: Request, exc: NetbinderError) -> JSONResponse:
    """Map netbinder errors to structured HTTP errors."""
    return JSONResponse(
        status_code=HTTP_STATUS_BY_CATEGORY.get(exc.category, 500),
        content={"detail": exc.to_structured().to_dict()},
    )


# --- Health Endpoints ---

@app.get("/health")
def health() -> HealthResponse:
    """Basic health check."""
    return HealthResponse(timestamp=datetime.now(timezone.utc))


@app.get("/networks")
def list_networks() -> NetworkListResponse:
    """Rescan and list the CNI networks available on this node."""
    catalog = get_catalog()
    snapshot = catalog.refresh()
    default = snapshot.default.name if snapshot.default else None
    return NetworkListResponse(
        net_dir=str(catalog.net_dir),
        default=default,
        networks=[
            NetworkInfo(
                name=n.name,
                plugin_type=n.plugin_type,
                plugin_search_paths=list(n.plugin_search_paths),
                source=n.source,
                is_default=n.name == default,
            )
            for n in (snapshot.by_name[name] for name in sorted(snapshot.by_name))
        ],
    )


# --- Pod Registry Endpoints ---

@app.put("/pods/{namespace}/{name}")
def register_pod(namespace: str, name: str, request: RegisterPodRequest) -> PodInfo:
    """Register (or update) the identity of a pod."""
    registry = get_pod_registry()
    pod = registry.register(PodIdentity(
        namespace=namespace,
        name=name,
        sandbox_id=request.sandbox_id,
        labels=dict(request.labels),
        annotations=dict(request.annotations),
    ))
    status = registry.status(namespace, name)
    return PodInfo(
        namespace=pod.namespace,
        name=pod.name,
        sandbox_id=pod.sandbox_id,
        labels=dict(pod.labels),
        annotations=dict(pod.annotations),
        pod_ip=(status.pod_ip or None) if status else None,
    )


@app.delete("/pods/{namespace}/{name}")
def unregister_pod(namespace: str, name: str):
    """Forget a pod and its attachment records."""
    get_orchestrator().forget_pod(namespace, name)
    if get_pod_registry().remove(namespace, name):
        return {"status": "removed", "pod": f"{namespace}/{name}"}
    return {"status": "not_found", "pod": f"{namespace}/{name}"}


# --- Attachment Endpoints ---

@app.post("/pods/{namespace}/{name}/setup")
async def set_up_pod(
    namespace: str, name: str, request: PodNetworkRequest, response: Response
) -> PodNetworkResponse:
    """Attach a pod sandbox to its selected networks.

    A failed network stops the set up; the response lists which networks
    are still pending so a retry can complete them.
    """
    logger.info(f"Setting up pod {namespace}/{name} sandbox {request.sandbox_id[:12]}")
    report = await get_orchestrator().set_up_pod(
        namespace, name, request.sandbox_id, timeout=request.timeout
    )
    response.status_code = _failure_status(report)
    return report_to_response(report)


@app.post("/pods/{namespace}/{name}/teardown")
async def tear_down_pod(
    namespace: str, name: str, request: PodNetworkRequest, response: Response
) -> PodNetworkResponse:
    """Detach a pod sandbox from its selected networks."""
    logger.info(f"Tearing down pod {namespace}/{name} sandbox {request.sandbox_id[:12]}")
    report = await get_orchestrator().tear_down_pod(
        namespace, name, request.sandbox_id, timeout=request.timeout
    )
    response.status_code = _failure_status(report)
    return report_to_response(report)


@app.get("/pods/{namespace}/{name}/status")
async def pod_status(namespace: str, name: str) -> PodStatusResponse:
    """Return a pod's primary IP."""
    ip = await get_orchestrator().status(namespace, name)
    return PodStatusResponse(namespace=namespace, name=name, ip=str(ip) if ip else None)


# --- Flow Endpoints ---

@app.post("/flows")
async def install_flows(request: FlowRuleSetRequest) -> FlowResponse:
    """Install the tenant isolation rules for a pod interface."""
    rules = _rule_set(request.tenant_id, request.mac, request.ip, request.switch_port)
    installed = await get_flow_controller().install(rules, timeout=request.timeout)
    return FlowResponse(tenant_id=request.tenant_id, rules=[r.add_spec() for r in installed])


@app.post("/flows/delete")
async def delete_flows(request: FlowRuleSetRequest) -> FlowResponse:
    """Delete the tenant isolation rules for a pod interface."""
    rules = _rule_set(request.tenant_id, request.mac, request.ip, request.switch_port)
    await get_flow_controller().delete(rules, timeout=request.timeout)
    return FlowResponse(tenant_id=request.tenant_id, rules=[r.del_spec() for r in rules.rules()])


@app.get("/flows/{tenant_id}")
async def dump_flows(tenant_id: int) -> FlowDumpResponse:
    """List the rules carrying a tenant's cookie."""
    controller = get_flow_controller()
    flows = await controller.dump_flows(tenant_id)
    return FlowDumpResponse(
        bridge=controller.bridge,
        tenant_id=tenant_id,
        flow_count=len(flows),
        flows=flows,
    )


# --- Port Endpoints ---

@app.post("/ports/attach")
async def attach_port(request: AttachPortRequest) -> PortBindingInfo:
    """Attach a pod's host-side veth to the bridge.

    When tenant_id, mac and ip are all given the isolation rules are
    installed once the port is on the bridge and recorded with the binding.
    """
    rules = _rule_set(request.tenant_id, request.mac, request.ip, request.port_name)
    binding = await get_flow_controller().attach_port(
        f"{request.namespace}/{request.name}",
        request.port_name,
        sandbox_id=request.sandbox_id,
        rules=rules,
        timeout=request.timeout,
    )
    return PortBindingInfo(**binding.__dict__)


@app.post("/ports/teardown")
async def tear_down_ports(request: TeardownPortsRequest) -> TeardownPortsResponse:
    """Remove a pod's isolation rules and detach its switch ports.

    Works with only the pod name: ports come from recorded bindings, or
    from a runtime scan when nothing was recorded.
    """
    rules = _rule_set(request.tenant_id, request.mac, request.ip, request.switch_port)
    pod_key = f"{request.namespace}/{request.pod_name}" if request.namespace else None
    report = await get_flow_controller().tear_down_pod(
        request.pod_name, rules=rules, pod_key=pod_key, timeout=request.timeout
    )
    return TeardownPortsResponse(success=not report.errors, **report.to_dict())


# --- Entry point ---

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "netbinder.main:app",
        host=settings.agent_host,
        port=settings.agent_port,
        reload=False,
    )
