"""Tests for CNI plugin invocation.

The invoker tests run small shell scripts as plugins so the real
environment and stdin contract are exercised.
"""

import ipaddress
import json
import logging
import stat
from pathlib import Path

import pytest

from netbinder.errors import DeadlineExceeded, PluginFailure
from netbinder.network.catalog import NetworkDefinition
from netbinder.network.plugin import (
    AttachmentResult,
    PluginInvoker,
    build_runtime_conf,
    find_plugin,
    parse_result,
    plugin_error_message,
)
from netbinder.runtime.base import PodIdentity

POD = PodIdentity("tenant-a", "web-1", sandbox_id="abc123def456")


def _make_plugin(directory: Path, name: str, body: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def _network(bin_dir: Path, plugin_type: str = "fake", name: str = "net1") -> NetworkDefinition:
    raw = json.dumps({"cniVersion": "0.2.0", "name": name, "type": plugin_type}).encode()
    return NetworkDefinition(
        name=name,
        plugin_type=plugin_type,
        plugin_search_paths=(str(bin_dir), str(bin_dir.parent / "vendor")),
        raw_config=raw,
    )


# --- Runtime conf ---

def test_runtime_conf_args_order():
    rt = build_runtime_conf(POD, "/proc/42/ns/net", "eth0")

    assert rt.container_id == "abc123def456"
    assert rt.netns == "/proc/42/ns/net"
    assert rt.ifname == "eth0"
    assert rt.cni_args == (
        "K8S_POD_NAMESPACE=tenant-a;K8S_POD_NAME=web-1;"
        "K8S_POD_INFRA_CONTAINER_ID=abc123def456"
    )


def test_runtime_conf_default_ifname():
    assert build_runtime_conf(POD, "/proc/42/ns/net").ifname == "eth0"


# --- Result parsing ---

def test_parse_legacy_result():
    stdout = json.dumps({"ip4": {"ip": "10.1.2.3/24", "gateway": "10.1.2.1"}})

    result = parse_result("net1", stdout, assigned_at=7)

    assert result.ip4 == ipaddress.IPv4Interface("10.1.2.3/24")
    assert result.ip6 is None
    assert result.assigned_at == 7
    assert result.primary_ip == ipaddress.IPv4Address("10.1.2.3")


def test_parse_current_result():
    stdout = json.dumps({
        "cniVersion": "0.4.0",
        "ips": [
            {"version": "6", "address": "fd00::5/64"},
            {"version": "4", "address": "10.0.0.5/16"},
        ],
    })

    result = parse_result("net1", stdout)

    assert result.ip4 == ipaddress.IPv4Interface("10.0.0.5/16")
    assert result.ip6 == ipaddress.IPv6Interface("fd00::5/64")
    assert result.primary_ip == ipaddress.IPv4Address("10.0.0.5")


def test_parse_ipv6_only_primary():
    result = parse_result("net1", json.dumps({"ip6": {"ip": "fd00::9/64"}}))

    assert result.primary_ip == ipaddress.IPv6Address("fd00::9")


def test_parse_empty_output():
    result = parse_result("net1", "")

    assert result == AttachmentResult(network="net1")
    assert result.primary_ip is None


@pytest.mark.parametrize("stdout", ["garbage", "[]", '{"ip4": {"ip": "300.1.1.1/24"}}', '{"ips": [{}]}'])
def test_parse_invalid_result(stdout):
    with pytest.raises(PluginFailure) as exc_info:
        parse_result("net1", stdout)

    assert exc_info.value.network == "net1"


def test_error_message_from_cni_error():
    stdout = json.dumps({"code": 11, "msg": "no IP addresses available", "details": "range full"})

    assert plugin_error_message(stdout, "", 1) == "no IP addresses available: range full (code 11)"


def test_error_message_falls_back_to_stderr():
    assert plugin_error_message("", "boom\n", 1) == "boom"
    assert plugin_error_message("", "", 3) == "plugin exited with status 3"


# --- Plugin lookup ---

def test_find_plugin_search_order(tmp_path):
    first = _make_plugin(tmp_path / "a", "bridge", "exit 0\n")
    _make_plugin(tmp_path / "b", "bridge", "exit 0\n")

    assert find_plugin("bridge", [str(tmp_path / "a"), str(tmp_path / "b")]) == first


def test_find_plugin_vendor_dir(tmp_path):
    vendor = _make_plugin(tmp_path / "vendor", "ovs", "exit 0\n")

    assert find_plugin("ovs", [str(tmp_path / "bin"), str(tmp_path / "vendor")]) == vendor


def test_find_plugin_ignores_non_executable(tmp_path):
    (tmp_path / "bridge").write_text("#!/bin/sh\n")

    assert find_plugin("bridge", [str(tmp_path)]) is None


# --- Invoker ---

@pytest.mark.asyncio
async def test_attach_passes_cni_environment(tmp_path):
    bin_dir = tmp_path / "bin"
    env_file = tmp_path / "env.txt"
    stdin_file = tmp_path / "stdin.json"
    _make_plugin(bin_dir, "fake", f"""
cat > {stdin_file}
echo "$CNI_COMMAND|$CNI_CONTAINERID|$CNI_NETNS|$CNI_IFNAME|$CNI_ARGS" > {env_file}
echo '{{"ip4": {{"ip": "10.9.0.4/24"}}}}'
""")
    network = _network(bin_dir)

    result = await PluginInvoker(timeout=10).attach(network, POD, "/proc/42/ns/net")

    assert result.network == "net1"
    assert str(result.primary_ip) == "10.9.0.4"
    assert env_file.read_text().strip() == (
        "ADD|abc123def456|/proc/42/ns/net|eth0|"
        "K8S_POD_NAMESPACE=tenant-a;K8S_POD_NAME=web-1;"
        "K8S_POD_INFRA_CONTAINER_ID=abc123def456"
    )
    assert stdin_file.read_bytes() == network.raw_config


@pytest.mark.asyncio
async def test_attach_timestamps_increase(tmp_path):
    bin_dir = tmp_path / "bin"
    _make_plugin(bin_dir, "fake", "echo '{}'\n")
    invoker = PluginInvoker(timeout=10)
    network = _network(bin_dir)

    first = await invoker.attach(network, POD, "/proc/42/ns/net")
    second = await invoker.attach(network, POD, "/proc/42/ns/net")

    assert second.assigned_at > first.assigned_at


@pytest.mark.asyncio
async def test_detach_runs_del(tmp_path):
    bin_dir = tmp_path / "bin"
    marker = tmp_path / "command.txt"
    _make_plugin(bin_dir, "fake", f'echo "$CNI_COMMAND" > {marker}\n')

    await PluginInvoker(timeout=10).detach(_network(bin_dir), POD, "/proc/42/ns/net")

    assert marker.read_text().strip() == "DEL"


@pytest.mark.asyncio
async def test_plugin_error_raises_failure(tmp_path):
    bin_dir = tmp_path / "bin"
    _make_plugin(bin_dir, "fake", """
echo '{"code": 7, "msg": "invalid config"}'
exit 1
""")

    with pytest.raises(PluginFailure) as exc_info:
        await PluginInvoker(timeout=10).attach(_network(bin_dir), POD, "/proc/42/ns/net")

    assert exc_info.value.network == "net1"
    assert "invalid config" in exc_info.value.cause


@pytest.mark.asyncio
async def test_missing_plugin_raises_failure(tmp_path):
    with pytest.raises(PluginFailure) as exc_info:
        await PluginInvoker(timeout=10).attach(
            _network(tmp_path / "bin", plugin_type="nope"), POD, "/proc/42/ns/net"
        )

    assert "failed to find plugin 'nope'" in exc_info.value.cause


@pytest.mark.asyncio
async def test_slow_plugin_exceeds_deadline(tmp_path):
    bin_dir = tmp_path / "bin"
    _make_plugin(bin_dir, "fake", "exec sleep 5\n")

    with pytest.raises(DeadlineExceeded) as exc_info:
        await PluginInvoker().attach(_network(bin_dir), POD, "/proc/42/ns/net", timeout=0.2)

    assert exc_info.value.operation == "CNI ADD on network net1"
    assert exc_info.value.timeout == 0.2


@pytest.mark.asyncio
async def test_attach_log_carries_pod_context(tmp_path, caplog):
    caplog.set_level(logging.INFO, logger="netbinder.network.plugin")
    bin_dir = tmp_path / "bin"
    _make_plugin(bin_dir, "fake", "echo '{}'\n")

    await PluginInvoker(timeout=10).attach(_network(bin_dir), POD, "/proc/42/ns/net")

    [record] = [r for r in caplog.records if r.getMessage().startswith("Attached pod")]
    assert record.pod == "tenant-a/web-1"
    assert record.sandbox_id == "abc123def456"
    assert record.network == "net1"


@pytest.mark.asyncio
async def test_plugin_error_log_carries_category(tmp_path, caplog):
    bin_dir = tmp_path / "bin"
    _make_plugin(bin_dir, "fake", "echo 'no lease' >&2\nexit 1\n")

    with pytest.raises(PluginFailure):
        await PluginInvoker(timeout=10).attach(_network(bin_dir), POD, "/proc/42/ns/net")

    [record] = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert record.network == "net1"
    assert record.operation == "ADD"
    assert record.error_category == "plugin_failure"
