import pytest

from converge.compat import (
    BUILTIN,
    Incompatibility,
    find_incompatible,
    load_entries,
    probe_versions,
    upstream_version,
    version_matches,
)
from converge.errors import ConfigError


@pytest.mark.parametrize("raw,want", [
    ("2:26.0.0-0ubuntu1", "26.0.0"),
    ("25.03.0-1", "25.03.0"),
    ("3.5.0+ds1-1", "3.5.0"),
    ("19.2.1\n", "19.2.1"),
])
def test_upstream_version(raw, want):
    assert upstream_version(raw) == want


def test_version_matches_component_wise():
    assert version_matches("25.03.0-1", "25.03")
    assert version_matches("2:26.0.1-0ubuntu1", "26.0")
    assert not version_matches("25.031.0", "25.03")
    assert not version_matches("24.09.1", "25.03")


def test_builtin_pair_is_found():
    hits = find_incompatible({"ovn": "25.03.0", "neutron": "26.0.0", "nova": "31.0.0"})

    assert hits == list(BUILTIN)
    assert hits[0].describe().startswith("ovn 25.03 with neutron 26.0: ")


def test_half_a_pair_is_not_a_hit():
    assert find_incompatible({"ovn": "25.03.0", "neutron": "25.1.0"}) == []
    assert find_incompatible({"ovn": "25.03.0", "neutron": None}) == []


def test_entries_from_config():
    cfg = {"compat": [{"versions": {"ovs": "3.5", "ovn": "24.09"}, "note": "tunnel mtu"}]}

    entries = load_entries(cfg)

    assert entries[: len(BUILTIN)] == list(BUILTIN)
    assert entries[-1] == Incompatibility({"ovs": "3.5", "ovn": "24.09"}, "tunnel mtu")
    assert find_incompatible({"ovs": "3.5.0", "ovn": "24.09.2"}, entries) == [entries[-1]]


@pytest.mark.parametrize("compat", [
    {"versions": {"ovn": "25.03"}},
    [{"versions": {"ovn": "25.03"}}],
    ["ovn=25.03"],
])
def test_bad_entries(compat):
    with pytest.raises(ConfigError):
        load_entries({"compat": compat})


def test_probe_versions(runner):
    runner.on("dpkg-query", (1, "", "dpkg-query: no packages found matching x"))
    runner.on("dpkg-query -W -f ${Version} ovn-common", "25.03.0-0ubuntu1")
    runner.on("dpkg-query -W -f ${Version} neutron-common", "2:26.0.0-0ubuntu1")
    runner.on("dpkg-query -W -f ${Version} nova-common", (2, "", "dpkg-query: database is locked"))

    versions, warnings = probe_versions(runner)

    assert versions["ovn"] == "25.03.0"
    assert versions["neutron"] == "26.0.0"
    assert versions["ceph"] is None
    assert versions["nova"] is None
    assert len(warnings) == 1
    assert "nova-common" in warnings[0]
    assert runner.mutations() == []
