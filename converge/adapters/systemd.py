"""
systemd units: active/inactive and enabled/disabled.
"""

from __future__ import annotations

from ..errors import ConfigError, ProbeError
from ..model import ProbeResult, ResourceDescriptor
from .base import Adapter

STATES = ("active", "inactive")
# is-enabled prints one of these; anything else on stdout is a probe error
ENABLED_STATES = (
    "enabled", "enabled-runtime", "linked", "linked-runtime", "alias", "static",
    "indirect", "disabled", "generated", "transient", "masked", "masked-runtime",
)


class UnitAdapter(Adapter):
    kind = "unit"
    system = "systemd"
    attributes = ("state", "enabled")
    settles = True

    def validate(self, desc: ResourceDescriptor) -> None:
        state = desc.get("state", "active")
        if state not in STATES:
            raise ConfigError(f"{desc.key}: state must be one of {', '.join(STATES)}")

    def expected(self, desc: ResourceDescriptor):
        d = super().expected(desc)
        d["state"] = desc.get("state", "active")
        return d

    def diff(self, desc: ResourceDescriptor, observed: ProbeResult):
        if not observed.exists:
            return {"exists": (True, observed.exists)}
        out = super().diff(desc, observed)
        want = desc.get("state", "active")
        got = observed.attributes.get("state")
        # "activating"/"failed" etc. all count as not active
        if (want == "active") != (got == "active"):
            out["state"] = (want, got)
        else:
            out.pop("state", None)
        return out

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        unit = desc.identifier
        # Both commands exit non-zero for inactive/disabled units; read stdout.
        active = self.runner.execute("systemctl", ["is-active", unit], mutating=False)
        state = active.stdout.strip()
        if not state:
            raise ProbeError(f"systemctl is-active {unit} gave no output", active.argv, active.stderr)

        enabled = self.runner.execute("systemctl", ["is-enabled", unit], mutating=False)
        mode = enabled.stdout.strip()
        if mode not in ENABLED_STATES:
            if "not-found" in mode or "No such file" in enabled.stderr:
                return ProbeResult.missing()
            raise ProbeError(f"systemctl is-enabled {unit}: {mode!r}", enabled.argv, enabled.stderr)

        return ProbeResult(
            True,
            {"state": state, "enabled": mode in ("enabled", "enabled-runtime", "alias", "static")},
        )

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        unit = desc.identifier
        delta = self.diff(desc, observed)
        if "enabled" in delta or (not observed.exists and desc.get("enabled") is not None):
            self.act("systemctl", "enable" if desc.get("enabled") else "disable", unit)
        if "state" in delta or not observed.exists:
            if desc.get("state", "active") == "active":
                verb = "restart" if observed.attributes.get("state") == "failed" else "start"
            else:
                verb = "stop"
            self.act("systemctl", verb, unit)
