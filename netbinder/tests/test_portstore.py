"""Tests for persisted pod -> switch port bindings."""

import json
from unittest.mock import patch

import pytest

from netbinder.network.portstore import PortBinding, PortStore


@pytest.fixture
def state_file(tmp_path):
    return tmp_path / "state" / "port_bindings.json"


@pytest.mark.asyncio
async def test_bind_persists_across_instances(state_file):
    store = PortStore(state_file=state_file)
    await store.bind(PortBinding("ns1/web", "vnet3", sandbox_id="sbx1", tenant_id=42,
                                 mac="aa:bb:cc:dd:ee:01", ip="10.0.0.5"))

    reloaded = PortStore(state_file=state_file)
    bindings = await reloaded.get("ns1/web")

    assert len(bindings) == 1
    assert bindings[0].port_name == "vnet3"
    assert bindings[0].tenant_id == 42
    assert bindings[0].ip == "10.0.0.5"


@pytest.mark.asyncio
async def test_state_file_format(state_file):
    store = PortStore(state_file=state_file)
    await store.bind(PortBinding("ns1/web", "vnet3"))

    data = json.loads(state_file.read_text())

    assert data["version"] == 1
    assert data["bindings"]["ns1/web"][0]["port_name"] == "vnet3"
    assert not state_file.with_suffix(".tmp").exists()


@pytest.mark.asyncio
async def test_bind_replaces_same_port(state_file):
    store = PortStore(state_file=state_file)
    await store.bind(PortBinding("ns1/web", "vnet3", sandbox_id="old"))
    await store.bind(PortBinding("ns1/web", "vnet3", sandbox_id="new"))

    assert [b.sandbox_id for b in await store.get("ns1/web")] == ["new"]


@pytest.mark.asyncio
async def test_unbind_one_port(state_file):
    store = PortStore(state_file=state_file)
    await store.bind(PortBinding("ns1/web", "vnet3"))
    await store.bind(PortBinding("ns1/web", "vnet4"))

    removed = await store.unbind("ns1/web", "vnet3")

    assert [b.port_name for b in removed] == ["vnet3"]
    assert [b.port_name for b in await PortStore(state_file=state_file).get("ns1/web")] == ["vnet4"]


@pytest.mark.asyncio
async def test_unbind_all_ports(state_file):
    store = PortStore(state_file=state_file)
    await store.bind(PortBinding("ns1/web", "vnet3"))
    await store.bind(PortBinding("ns1/web", "vnet4"))

    removed = await store.unbind("ns1/web")

    assert len(removed) == 2
    assert await store.get("ns1/web") == []
    assert await store.all() == []


@pytest.mark.asyncio
async def test_unbind_unknown_is_empty(state_file):
    store = PortStore(state_file=state_file)

    assert await store.unbind("ns1/ghost") == []
    assert not state_file.exists()


@pytest.mark.asyncio
async def test_find_by_pod_name_across_namespaces(state_file):
    store = PortStore(state_file=state_file)
    await store.bind(PortBinding("ns1/web", "vnet3"))
    await store.bind(PortBinding("ns2/web", "vnet5"))
    await store.bind(PortBinding("ns1/db", "vnet6"))

    ports = sorted(b.port_name for b in await store.find_by_pod_name("web"))

    assert ports == ["vnet3", "vnet5"]


@pytest.mark.asyncio
async def test_corrupt_file_starts_fresh(state_file):
    state_file.parent.mkdir(parents=True)
    state_file.write_text("{broken")

    store = PortStore(state_file=state_file)

    assert await store.all() == []


@pytest.mark.asyncio
async def test_missing_file_starts_empty(state_file):
    assert await PortStore(state_file=state_file).get("ns1/web") == []


@pytest.mark.asyncio
async def test_file_io_runs_in_worker_thread(state_file):
    store = PortStore(state_file=state_file)
    calls = []

    async def fake_to_thread(func, *args, **kwargs):
        calls.append(func.__name__)
        return func(*args, **kwargs)

    with patch("netbinder.network.portstore.asyncio.to_thread", side_effect=fake_to_thread):
        await store.bind(PortBinding("ns1/web", "vnet3"))
        await store.unbind("ns1/web", "vnet3")

    assert calls == ["_load", "_save", "_save"]
    assert json.loads(state_file.read_text())["bindings"] == {}
