"""
Component version pairs known not to work together.

Kept as data so a new bad pairing is a config entry, not a code change:

    compat:
      - versions: {ovn: "25.03", neutron: "26.0"}
        note: ovn-controller installs no flows into br-int
"""

from __future__ import annotations

import dataclasses
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ConfigError
from .runner import Runner
from .util import cfg_get

# component -> package whose version stands for it
PACKAGES = {
    "ovn": "ovn-common",
    "ovs": "openvswitch-common",
    "neutron": "neutron-common",
    "nova": "nova-common",
    "ceph": "ceph-common",
}

_EPOCH = re.compile(r"^\d+:")


@dataclasses.dataclass(frozen=True)
class Incompatibility:
    versions: Mapping[str, str]
    note: str = ""

    def describe(self) -> str:
        pair = " with ".join(f"{c} {v}" for c, v in self.versions.items())
        return f"{pair}: {self.note}" if self.note else pair


BUILTIN: Tuple[Incompatibility, ...] = (
    Incompatibility(
        {"ovn": "25.03", "neutron": "26.0"},
        "ovn-controller stops processing (chassis nb_cfg 0, no br-int flows); "
        "needs a database re-init",
    ),
)


def upstream_version(raw: str) -> str:
    """'2:26.0.0-9' -> '26.0.0'"""
    v = _EPOCH.sub("", raw.strip())
    return v.split("-", 1)[0].split("+", 1)[0]


def version_matches(installed: str, prefix: str) -> bool:
    """Component-wise prefix match: '25.03' matches '25.03.0' but not '25.031'."""
    have = upstream_version(installed).split(".")
    want = str(prefix).split(".")
    return have[: len(want)] == want


def load_entries(cfg: Mapping[str, Any]) -> List[Incompatibility]:
    out = list(BUILTIN)
    extra = cfg_get(cfg, "compat", []) or []
    if not isinstance(extra, list):
        raise ConfigError("compat must be a list")
    for e in extra:
        versions = e.get("versions") if isinstance(e, Mapping) else None
        if not isinstance(versions, Mapping) or len(versions) < 2:
            raise ConfigError(f"compat entry needs 'versions' with two or more components: {e!r}")
        out.append(Incompatibility({str(k): str(v) for k, v in versions.items()}, str(e.get("note", ""))))
    return out


def find_incompatible(
    installed: Mapping[str, Optional[str]], entries: Sequence[Incompatibility] = BUILTIN
) -> List[Incompatibility]:
    hits = []
    for entry in entries:
        if all(
            installed.get(c) and version_matches(installed[c], v)
            for c, v in entry.versions.items()
        ):
            hits.append(entry)
    return hits


def probe_versions(
    runner: Runner, packages: Mapping[str, str] = PACKAGES
) -> Tuple[Dict[str, Optional[str]], List[str]]:
    """Installed version per component; None when the package is absent."""
    versions: Dict[str, Optional[str]] = {}
    warnings: List[str] = []
    for component, pkg in packages.items():
        cp = runner.execute("dpkg-query", ["-W", "-f", "${Version}", pkg], mutating=False)
        if cp.ok and cp.stdout.strip():
            versions[component] = upstream_version(cp.stdout)
            continue
        versions[component] = None
        if "no packages found" not in cp.stderr.lower():
            warnings.append(f"cannot read {pkg} version: {cp.display()} exited {cp.exit_code}")
    return versions, warnings
