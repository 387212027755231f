"""OVS flow programming for tenant isolation.

Each pod wired to the shared bridge gets three rules, all tagged with a
cookie equal to its tenant identifier (VNID):

    table 0  in_port=<port>                         -> set tun_id=<vnid>, goto table 1
    table 1  tun_id=<vnid>,dl_dst=<mac>             -> output:<port>
    table 1  tun_id=<vnid>,arp,nw_dst=<ip>          -> output:<port>

Table 0 tags everything the pod sends with its tenant. Table 1 only
delivers traffic (unicast and ARP) whose tag matches, so tenants sharing
the bridge never see each other's frames.

Adding a flow whose match and priority already exist replaces it, so
install() is safe to repeat. Deletion matches the same predicates plus the
exact cookie (cookie=<vnid>/-1) and is a no-op when nothing matches.

Rule 1 names the switch port and ovs-ofctl resolves port names on the
bridge, so a port is added before its rules are installed.

Usage:
    controller = FlowController(runtime=DockerRuntime())
    rules = FlowRuleSet(tenant_id=42, mac="aa:bb:cc:dd:ee:ff", ip="10.0.0.5", switch_port="vnet3")
    # Adds the port to the bridge, then installs its rules
    await controller.attach_port("default/web-0", "vnet3", rules=rules)

    # Later, with only the pod name at hand
    report = await controller.tear_down_pod("web-0")
"""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from netbinder.config import settings
from netbinder.errors import DeadlineExceeded, SwitchCommandFailure
from netbinder.network.cmd import ovs_ofctl, ovs_vsctl
from netbinder.network.portstore import PortBinding, PortStore
from netbinder.runtime.base import RuntimeHost

logger = logging.getLogger(__name__)

MAC_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
MAX_TENANT_ID = 0xFFFFFFFF

TABLE_CLASSIFY = 0
TABLE_DELIVER = 1


@dataclass(frozen=True)
class FlowRule:
    """One OpenFlow rule in ovs-ofctl syntax."""

    table: int
    cookie: int
    match: str
    actions: str
    priority: int = 100

    @property
    def cookie_hex(self) -> str:
        return f"0x{self.cookie:x}"

    def add_spec(self) -> str:
        """Flow spec for ovs-ofctl add-flow."""
        return (
            f"table={self.table},priority={self.priority},cookie={self.cookie_hex},"
            f"{self.match},actions={self.actions}"
        )

    def del_spec(self) -> str:
        """Match spec for ovs-ofctl del-flows (exact cookie match)."""
        return f"table={self.table},cookie={self.cookie_hex}/-1,{self.match}"


@dataclass(frozen=True)
class FlowRuleSet:
    """The isolation rules of one pod interface on the shared bridge."""

    tenant_id: int
    mac: str
    ip: str
    switch_port: str

    def __post_init__(self):
        if not 0 <= self.tenant_id <= MAX_TENANT_ID:
            raise ValueError(f"tenant_id must fit in 32 bits: {self.tenant_id}")
        mac = self.mac.lower()
        if not MAC_RE.match(mac):
            raise ValueError(f"invalid MAC address: {self.mac!r}")
        object.__setattr__(self, "mac", mac)
        object.__setattr__(self, "ip", str(ipaddress.IPv4Address(self.ip)))
        if not self.switch_port:
            raise ValueError("switch_port must not be empty")

    def rules(self, priority: int | None = None) -> list[FlowRule]:
        """Derive the three isolation rules, all with cookie == tenant_id."""
        prio = priority if priority is not None else settings.flow_priority
        vnid = f"0x{self.tenant_id:x}"
        return [
            # Tag traffic leaving the pod with its tenant
            FlowRule(
                table=TABLE_CLASSIFY,
                cookie=self.tenant_id,
                match=f"in_port={self.switch_port}",
                actions=f"set_field:{vnid}->tun_id,goto_table:{TABLE_DELIVER}",
                priority=prio,
            ),
            # Deliver tenant unicast for this pod's MAC
            FlowRule(
                table=TABLE_DELIVER,
                cookie=self.tenant_id,
                match=f"tun_id={vnid},dl_dst={self.mac}",
                actions=f"output:{self.switch_port}",
                priority=prio,
            ),
            # Deliver tenant ARP for this pod's IP
            FlowRule(
                table=TABLE_DELIVER,
                cookie=self.tenant_id,
                match=f"tun_id={vnid},dl_type=0x0806,nw_dst={self.ip}",
                actions=f"output:{self.switch_port}",
                priority=prio,
            ),
        ]

    @classmethod
    def from_binding(cls, binding: PortBinding) -> FlowRuleSet | None:
        """Rebuild the rule set recorded with a port binding, if complete."""
        if binding.tenant_id is None or not binding.mac or not binding.ip:
            return None
        return cls(
            tenant_id=binding.tenant_id,
            mac=binding.mac,
            ip=binding.ip,
            switch_port=binding.port_name,
        )


@dataclass
class FlowTeardownReport:
    """Summary of a pod teardown on the switch."""

    pod_name: str
    rules_deleted: int = 0
    ports_detached: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pod_name": self.pod_name,
            "rules_deleted": self.rules_deleted,
            "ports_detached": self.ports_detached,
            "errors": self.errors,
        }


def parse_dump_flows(stdout: str) -> list[str]:
    """Flow lines from ovs-ofctl dump-flows output, without the reply header."""
    flows = []
    for line in stdout.strip().split("\n"):
        line = line.strip()
        if not line or line.startswith(("NXST_FLOW", "OFPST_FLOW")):
            continue
        flows.append(line)
    return flows


class FlowController:
    """Programs tenant isolation rules and pod ports on the shared bridge."""

    def __init__(
        self,
        runtime: RuntimeHost | None = None,
        port_store: PortStore | None = None,
        bridge: str | None = None,
        protocol: str | None = None,
        timeout: float | None = None,
    ):
        self.runtime = runtime
        self.port_store = port_store or PortStore()
        self.bridge = bridge or settings.ovs_bridge_name
        self.protocol = protocol or settings.openflow_version
        self.timeout = timeout if timeout is not None else settings.flow_timeout

    async def _ofctl(self, operation: str, *args: str, timeout: float | None = None) -> str:
        try:
            code, stdout, stderr = await ovs_ofctl(
                *args,
                protocol=self.protocol,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except DeadlineExceeded as e:
            raise DeadlineExceeded(f"ovs-ofctl {operation}", e.timeout) from e
        if code != 0:
            raise SwitchCommandFailure(operation, stderr.strip() or f"exit status {code}")
        return stdout

    async def _vsctl(self, operation: str, *args: str, timeout: float | None = None) -> str:
        try:
            code, stdout, stderr = await ovs_vsctl(
                *args,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except DeadlineExceeded as e:
            raise DeadlineExceeded(f"ovs-vsctl {operation}", e.timeout) from e
        if code != 0:
            raise SwitchCommandFailure(operation, stderr.strip() or f"exit status {code}")
        return stdout

    # =========================================================================
    # Flow rules
    # =========================================================================

    async def install(self, rules: FlowRuleSet, timeout: float | None = None) -> list[FlowRule]:
        """Install the three isolation rules of a rule set.

        The rule set's switch port must already be on the bridge.

        Raises:
            SwitchCommandFailure: If ovs-ofctl rejects a rule
            DeadlineExceeded: If a command does not finish in time
        """
        installed = rules.rules()
        for rule in installed:
            await self._ofctl("add-flow", "add-flow", self.bridge, rule.add_spec(), timeout=timeout)
        logger.info(
            f"Installed flows for tenant {rules.tenant_id} "
            f"mac={rules.mac} ip={rules.ip} port={rules.switch_port}",
            extra={"tenant_id": rules.tenant_id, "port": rules.switch_port, "operation": "install"},
        )
        return installed

    async def delete(self, rules: FlowRuleSet, timeout: float | None = None) -> int:
        """Delete the three isolation rules of a rule set.

        Returns the number of delete commands issued. Deleting rules that
        are already gone succeeds.
        """
        deleted = 0
        for rule in rules.rules():
            await self._ofctl("del-flows", "del-flows", self.bridge, rule.del_spec(), timeout=timeout)
            deleted += 1
        logger.info(
            f"Deleted flows for tenant {rules.tenant_id} port={rules.switch_port}",
            extra={"tenant_id": rules.tenant_id, "port": rules.switch_port, "operation": "delete"},
        )
        return deleted

    async def delete_by_cookie(self, tenant_id: int, timeout: float | None = None) -> None:
        """Delete every rule carrying a tenant's cookie, whatever its match."""
        await self._ofctl(
            "del-flows", "del-flows", self.bridge, f"cookie=0x{tenant_id:x}/-1", timeout=timeout
        )
        logger.info(
            f"Deleted all flows with cookie {tenant_id}",
            extra={"tenant_id": tenant_id, "operation": "delete"},
        )

    async def dump_flows(self, tenant_id: int | None = None, timeout: float | None = None) -> list[str]:
        """List installed rules, optionally only those carrying a tenant's cookie."""
        args = ["dump-flows", self.bridge]
        if tenant_id is not None:
            args.append(f"cookie=0x{tenant_id:x}/-1")
        stdout = await self._ofctl("dump-flows", *args, timeout=timeout)
        return parse_dump_flows(stdout)

    # =========================================================================
    # Ports
    # =========================================================================

    async def attach_port(
        self,
        pod_key: str,
        port_name: str,
        sandbox_id: str = "",
        rules: FlowRuleSet | None = None,
        timeout: float | None = None,
    ) -> PortBinding:
        """Attach a pod's host-side veth to the bridge and record the binding.

        When rules are given they are installed once the port is on the
        bridge. The binding is recorded before that, so a failed install
        still leaves the port findable by tear_down_pod.
        """
        if rules is not None and rules.switch_port != port_name:
            raise ValueError(f"rule set is for port {rules.switch_port}, not {port_name}")

        await self._vsctl(
            "add-port", "--may-exist", "add-port", self.bridge, port_name, timeout=timeout
        )
        binding = PortBinding(
            pod_key=pod_key,
            port_name=port_name,
            sandbox_id=sandbox_id,
            tenant_id=rules.tenant_id if rules else None,
            mac=rules.mac if rules else None,
            ip=rules.ip if rules else None,
        )
        await self.port_store.bind(binding)
        logger.info(
            f"Attached port {port_name} for pod {pod_key} to {self.bridge}",
            extra={"pod": pod_key, "sandbox_id": sandbox_id, "port": port_name},
        )

        if rules is not None:
            await self.install(rules, timeout=timeout)
        return binding

    async def detach_port(self, port_name: str, timeout: float | None = None) -> None:
        """Remove a port from the bridge. Missing ports are ignored."""
        await self._vsctl(
            "del-port", "--if-exists", "del-port", self.bridge, port_name, timeout=timeout
        )
        logger.info(f"Detached port {port_name} from {self.bridge}", extra={"port": port_name})

    async def find_pod_ports(
        self,
        pod_name: str,
        pod_key: str | None = None,
        timeout: float | None = None,
    ) -> list[str]:
        """Locate the switch ports of a pod.

        Recorded bindings are used when present. Otherwise the runtime is
        scanned for containers marked with the pod name, bounded by timeout.
        Any number of matches, including none, is returned as-is.

        Raises:
            DeadlineExceeded: If the runtime scan does not finish in time
        """
        if pod_key:
            bindings = await self.port_store.get(pod_key)
        else:
            bindings = await self.port_store.find_by_pod_name(pod_name)
        if bindings:
            return [b.port_name for b in bindings]

        if self.runtime is None:
            return []

        ports = await self.runtime.find_ports_by_pod_marker(
            pod_name, timeout=timeout if timeout is not None else self.timeout
        )
        if ports:
            logger.info(
                f"Found ports {ports} for pod {pod_name} by runtime scan",
                extra={"pod": pod_key or pod_name, "operation": "scan"},
            )
        return ports

    async def tear_down_pod(
        self,
        pod_name: str,
        rules: FlowRuleSet | None = None,
        pod_key: str | None = None,
        timeout: float | None = None,
    ) -> FlowTeardownReport:
        """Remove a pod's isolation rules and detach its ports.

        Rules come from the caller or, when omitted, from the recorded
        bindings. Rule deletion errors and a runtime scan timeout propagate
        (the teardown can simply be repeated). Port detach errors are
        collected in the report.
        """
        report = FlowTeardownReport(pod_name=pod_name)
        context = {"pod": pod_key or pod_name, "operation": "teardown"}

        if pod_key:
            bindings = await self.port_store.get(pod_key)
        else:
            bindings = await self.port_store.find_by_pod_name(pod_name)
        rule_sets = [rules] if rules else [
            rs for rs in (FlowRuleSet.from_binding(b) for b in bindings) if rs is not None
        ]
        for rule_set in rule_sets:
            report.rules_deleted += await self.delete(rule_set, timeout=timeout)

        for port_name in await self.find_pod_ports(pod_name, pod_key, timeout=timeout):
            try:
                await self.detach_port(port_name, timeout=timeout)
                report.ports_detached.append(port_name)
            except (SwitchCommandFailure, DeadlineExceeded) as e:
                logger.warning(
                    f"Failed to detach port {port_name} of pod {pod_name}: {e}",
                    extra={**context, "port": port_name, "error_category": e.category.value},
                )
                report.errors.append(f"Port {port_name}: {e}")

        for binding in bindings:
            if binding.port_name in report.ports_detached:
                await self.port_store.unbind(binding.pod_key, binding.port_name)

        logger.info(f"Pod {pod_name} switch teardown: {report.to_dict()}", extra=context)
        return report
