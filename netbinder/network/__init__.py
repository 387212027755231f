"""Network module for pod attachment and tenant isolation.

This module provides:
- CNI network catalog (one network definition per config file)
- Network selection for pods (namespace, label, annotation, default)
- CNI plugin invocation (ADD/DEL per network and pod)
- OVS flow programming for tenant isolation
- Persisted pod -> switch port bindings
"""

from netbinder.network.catalog import CatalogSnapshot, NetworkCatalog, NetworkDefinition
from netbinder.network.selector import parse_network_list, select_networks
from netbinder.network.plugin import AttachmentResult, PluginInvoker, RuntimeConf
from netbinder.network.portstore import PortBinding, PortStore
from netbinder.network.flows import FlowController, FlowRule, FlowRuleSet, FlowTeardownReport

__all__ = [
    # Catalog
    "CatalogSnapshot",
    "NetworkCatalog",
    "NetworkDefinition",
    # Selection
    "parse_network_list",
    "select_networks",
    # CNI plugins
    "AttachmentResult",
    "PluginInvoker",
    "RuntimeConf",
    # Port bindings
    "PortBinding",
    "PortStore",
    # Tenant isolation
    "FlowController",
    "FlowRule",
    "FlowRuleSet",
    "FlowTeardownReport",
]
