"""
Open vSwitch: bridges, ports, Open_vSwitch external-ids and flows.
"""

from __future__ import annotations

import re
from typing import List, Optional, Tuple

from ..errors import ConfigError, ProbeError
from ..model import ProbeResult, ResourceDescriptor
from .base import Adapter

DEFAULT_PRIORITY = 32768
_PRIORITY = re.compile(r"(?:^|[\s,])priority=(\d+)")
_TABLE = re.compile(r"(?:^|[\s,])table=(\d+)")


def unquote(s: str) -> str:
    s = s.strip()
    if len(s) >= 2 and s[0] == s[-1] == '"':
        return s[1:-1].replace('\\"', '"')
    return s


def parse_flows(dump: str) -> List[Tuple[int, int, str]]:
    """(table, priority, actions) for each line of ovs-ofctl dump-flows."""
    flows = []
    for line in dump.splitlines():
        if "actions=" not in line:
            continue
        match, _, actions = line.partition("actions=")
        m = _PRIORITY.search(match)
        t = _TABLE.search(match)
        flows.append(
            (
                int(t.group(1)) if t else 0,
                int(m.group(1)) if m else DEFAULT_PRIORITY,
                actions.strip(),
            )
        )
    return flows


class OVSAdapter(Adapter):
    system = "ovs"

    def bridge_exists(self, name: str) -> bool:
        # br-exists: 0 = exists, 2 = no such bridge, anything else is an error
        cp = self.runner.execute("ovs-vsctl", ["br-exists", name], mutating=False)
        if cp.exit_code == 0:
            return True
        if cp.exit_code == 2:
            return False
        raise ProbeError(f"ovs-vsctl br-exists {name} exited {cp.exit_code}", cp.argv, cp.stderr)


class BridgeAdapter(OVSAdapter):
    kind = "bridge"
    attributes = ("fail_mode",)

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        if not self.bridge_exists(desc.identifier):
            return ProbeResult.missing()
        cp = self.query("ovs-vsctl", "get", "bridge", desc.identifier, "fail_mode")
        mode = cp.stdout.strip()
        return ProbeResult(True, {"fail_mode": "" if mode == "[]" else unquote(mode)})

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        name = desc.identifier
        self.act("ovs-vsctl", "--may-exist", "add-br", name)
        if "fail_mode" in desc.desired:
            mode = desc.get("fail_mode") or ""
            if mode:
                self.act("ovs-vsctl", "set-fail-mode", name, mode)
            else:
                self.act("ovs-vsctl", "clear", "bridge", name, "fail_mode")


class BridgePortAdapter(OVSAdapter):
    """A port (usually the physical NIC) attached to a bridge."""

    kind = "bridge-port"
    attributes = ("bridge",)

    def validate(self, desc: ResourceDescriptor) -> None:
        if not desc.get("bridge"):
            raise ConfigError(f"{desc.key}: 'bridge' is required")

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        cp = self.runner.execute("ovs-vsctl", ["port-to-br", desc.identifier], mutating=False)
        if cp.ok:
            return ProbeResult(True, {"bridge": cp.stdout.strip()})
        if "no port named" in cp.stderr:
            return ProbeResult.missing()
        raise ProbeError(f"ovs-vsctl port-to-br exited {cp.exit_code}", cp.argv, cp.stderr)

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        port = desc.identifier
        bridge = desc.get("bridge")
        current: Optional[str] = observed.attributes.get("bridge")
        if observed.exists and current and current != bridge:
            self.act("ovs-vsctl", "del-port", current, port)
        self.act("ovs-vsctl", "--may-exist", "add-br", bridge)
        self.act("ovs-vsctl", "--may-exist", "add-port", bridge, port)


class ExternalIdAdapter(OVSAdapter):
    """external_ids on the Open_vSwitch root record (ovn-remote, system-id...)."""

    kind = "external-id"
    attributes = ("value",)

    def validate(self, desc: ResourceDescriptor) -> None:
        if desc.get("value") in (None, ""):
            raise ConfigError(f"{desc.key}: 'value' is required")

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        cp = self.query(
            "ovs-vsctl", "--if-exists", "get", "open_vswitch", ".",
            f"external_ids:{desc.identifier}",
        )
        value = unquote(cp.stdout)
        if not value:
            return ProbeResult.missing()
        return ProbeResult(True, {"value": value})

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        value = str(desc.get("value")).replace('"', '\\"')
        self.act(
            "ovs-vsctl", "set", "open_vswitch", ".",
            f'external_ids:{desc.identifier}="{value}"',
        )


class FlowAdapter(OVSAdapter):
    """A single OpenFlow rule, e.g. the NORMAL fallback on the provider bridge."""

    kind = "flow"

    def validate(self, desc: ResourceDescriptor) -> None:
        if not desc.get("bridge") or not desc.get("actions"):
            raise ConfigError(f"{desc.key}: 'bridge' and 'actions' are required")

    def wanted(self, desc: ResourceDescriptor) -> Tuple[int, int, str]:
        return (
            int(desc.get("table", 0)),
            int(desc.get("priority", DEFAULT_PRIORITY)),
            str(desc.get("actions")),
        )

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        cp = self.query("ovs-ofctl", "dump-flows", desc.get("bridge"))
        if self.wanted(desc) in parse_flows(cp.stdout):
            return ProbeResult(True)
        return ProbeResult.missing()

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        table, priority, actions = self.wanted(desc)
        spec = f"table={table},priority={priority},actions={actions}"
        self.act("ovs-ofctl", "add-flow", desc.get("bridge"), spec)
