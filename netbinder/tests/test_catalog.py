"""Tests for the CNI network catalog.

These tests verify:
1. Definitions are loaded from sorted config files
2. The first parsed file becomes the default
3. Broken files are skipped without failing the refresh
4. Snapshots are immutable and replaced wholesale on refresh
"""

import json

import pytest

from conftest import write_conf
from netbinder.network.catalog import (
    CatalogSnapshot,
    InvalidNetworkConfig,
    NetworkCatalog,
    conf_files,
    load_definition,
)


def test_refresh_empty_directory(catalog):
    """An empty config directory yields an empty snapshot, not an error."""
    snapshot = catalog.refresh()

    assert len(snapshot) == 0
    assert snapshot.default is None


def test_refresh_missing_directory(tmp_path):
    """A missing config directory also yields an empty snapshot."""
    catalog = NetworkCatalog(net_dir=tmp_path / "does-not-exist")

    snapshot = catalog.refresh()

    assert len(snapshot) == 0


def test_default_is_first_sorted_file(catalog, net_dir):
    """The default network is the one whose file sorts first."""
    write_conf(net_dir, "20-beta.conf", "beta")
    write_conf(net_dir, "10-alpha.conf", "alpha")

    snapshot = catalog.refresh()

    assert snapshot.default.name == "alpha"
    assert sorted(snapshot.by_name) == ["alpha", "beta"]


def test_default_follows_filename_not_network_name(catalog, net_dir):
    """Sort order is by file name, not by network name."""
    write_conf(net_dir, "00-zeta.conf", "zeta")
    write_conf(net_dir, "99-alpha.conf", "alpha")

    assert catalog.refresh().default.name == "zeta"


def test_broken_file_is_skipped(catalog, net_dir, caplog):
    """A file that fails to parse is skipped with a warning."""
    (net_dir / "00-broken.conf").write_text("{not json")
    write_conf(net_dir, "10-good.conf", "good")

    snapshot = catalog.refresh()

    assert list(snapshot.by_name) == ["good"]
    assert snapshot.default.name == "good"
    assert "00-broken.conf" in caplog.text


def test_file_without_type_is_skipped(catalog, net_dir):
    (net_dir / "00-notype.conf").write_text(json.dumps({"name": "notype"}))

    assert len(catalog.refresh()) == 0


def test_non_config_extensions_ignored(catalog, net_dir):
    """Only .conf and .json files are considered."""
    write_conf(net_dir, "10-net.conf", "net")
    (net_dir / "README.md").write_text("# not a network")
    (net_dir / "10-net.conf.bak").write_text(json.dumps({"name": "bak", "type": "bridge"}))

    assert list(catalog.refresh().by_name) == ["net"]


def test_duplicate_name_keeps_first(catalog, net_dir):
    """Network names are unique; the first file wins."""
    first = write_conf(net_dir, "10-a.conf", "dup", plugin_type="bridge")
    write_conf(net_dir, "20-b.conf", "dup", plugin_type="macvlan")

    snapshot = catalog.refresh()

    assert len(snapshot) == 1
    assert snapshot.get("dup").plugin_type == "bridge"
    assert snapshot.get("dup").source == str(first)


def test_plugin_search_paths(tmp_path):
    """Default plugin dir comes first, then the vendor dir for the network."""
    path = write_conf(tmp_path, "10-tenant.conf", "tenant-a", plugin_type="ovs")

    definition = load_definition(path, "/opt/cni/bin", "/opt/{name}/bin")

    assert definition.plugin_search_paths == ("/opt/cni/bin", "/opt/tenant-a/bin")
    assert definition.plugin_type == "ovs"
    assert json.loads(definition.raw_config)["name"] == "tenant-a"


def test_load_definition_rejects_non_object(tmp_path):
    path = tmp_path / "10-list.conf"
    path.write_text("[1, 2, 3]")

    with pytest.raises(InvalidNetworkConfig):
        load_definition(path, "/opt/cni/bin", "/opt/{name}/bin")


def test_conf_files_sorted(net_dir):
    write_conf(net_dir, "b.json", "b")
    write_conf(net_dir, "a.conf", "a")

    assert [p.name for p in conf_files(net_dir)] == ["a.conf", "b.json"]


def test_lookup(catalog, net_dir):
    write_conf(net_dir, "10-a.conf", "a")
    catalog.refresh()

    assert catalog.lookup("a").name == "a"
    assert catalog.lookup("missing") is None


def test_refresh_publishes_new_snapshot(catalog, net_dir):
    """A refresh swaps in a new snapshot; an old reference stays unchanged."""
    write_conf(net_dir, "10-a.conf", "a")
    old = catalog.refresh()

    write_conf(net_dir, "20-b.conf", "b")
    new = catalog.refresh()

    assert old is not new
    assert list(old.by_name) == ["a"]
    assert sorted(new.by_name) == ["a", "b"]
    assert catalog.snapshot is new


def test_snapshot_is_read_only(catalog, net_dir):
    write_conf(net_dir, "10-a.conf", "a")
    snapshot = catalog.refresh()

    with pytest.raises(TypeError):
        snapshot.by_name["b"] = snapshot.by_name["a"]


def test_empty_snapshot_defaults():
    snapshot = CatalogSnapshot()

    assert len(snapshot) == 0
    assert "anything" not in snapshot
    assert snapshot.get("anything") is None
