"""Netbinder configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Netbinder settings loaded from environment variables."""

    # HTTP surface for the hosting node agent
    agent_host: str = "127.0.0.1"
    agent_port: int = 8011

    # CNI network definitions and plugin binaries
    cni_net_dir: str = "/etc/cni/net.d"
    cni_bin_dir: str = "/opt/cni/bin"
    vendor_cni_dir_template: str = "/opt/{name}/bin"  # Vendor-specific plugins per network

    # Pod label/annotation listing extra networks as a JSON array
    pod_network_key: str = "net.experimental.kubernetes.io/networks"

    # Interface created inside the pod sandbox
    pod_interface_name: str = "eth0"

    # Plugin invocation timeout (seconds)
    plugin_timeout: float = 60.0

    # OVS tenant isolation
    ovs_bridge_name: str = "obr0"
    openflow_version: str = "OpenFlow13"
    flow_priority: int = 100
    flow_timeout: float = 10.0  # Per ovs-ofctl/ovs-vsctl command

    # Docker settings
    docker_socket: str = "unix:///var/run/docker.sock"

    # Workspace for persisted state (pod -> switch port bindings)
    workspace_path: str = "/var/lib/netbinder"

    # Logging configuration
    log_format: str = "json"  # "json" or "text"
    log_level: str = "INFO"

    class Config:
        env_prefix = "NETBINDER_"


settings = Settings()
