"""
OVN/Neutron recovery.

diagnose() reads the health of the OVN control plane, classify() maps
the symptoms to the weakest strategy that fixes them, and Recovery runs
that strategy, re-probes with the bounded poll and escalates to the next
stronger strategy while the host is still unhealthy.

Strategies, weakest first:

    graceful-restart  restart ovn-central, ovn-host and the neutron units
    full-reset        delete the chassis, clear controller state and the
                      neutron hash ring, then restart
    database-reinit   recreate the NB/SB databases from their schemas and
                      let neutron repopulate them

Every action is preceded by the provider-bridge guard: fail_mode secure
is removed and the priority=0 NORMAL flow is re-added, so a host whose
only NIC sits on the provider bridge stays reachable while OVN is down.
"""

from __future__ import annotations

import dataclasses
import enum
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .adapters.mysql import DatabaseAdapter
from .adapters.ovs import parse_flows
from .compat import Incompatibility, find_incompatible, probe_versions
from .config import Settings
from .errors import ConfigError
from .model import Status, StepOutcome
from .poll import Poller
from .report import Reporter
from .runner import NOT_FOUND_EXIT, CommandResult, Runner
from .util import shell_join

OVN_SB = "unix:/var/run/ovn/ovnsb_db.sock"
NEUTRON_CONFIG = ("/etc/neutron/neutron.conf", "/etc/neutron/plugins/ml2/ml2_conf.ini")


class RecoveryStrategy(enum.Enum):
    GRACEFUL_RESTART = "graceful-restart"
    FULL_RESET = "full-reset"
    DATABASE_REINIT = "database-reinit"

    @property
    def rank(self) -> int:
        return list(RecoveryStrategy).index(self)


STRATEGIES = tuple(s.value for s in RecoveryStrategy)


def escalate(strategy: RecoveryStrategy) -> Optional[RecoveryStrategy]:
    order = list(RecoveryStrategy)
    i = order.index(strategy)
    return order[i + 1] if i + 1 < len(order) else None


# -------------------------
# Health
# -------------------------


@dataclasses.dataclass
class OvnHealth:
    """What diagnose() saw. None means the probe could not tell."""

    nb_reachable: Optional[bool] = None
    sb_reachable: Optional[bool] = None
    chassis: Optional[List[str]] = None
    chassis_nb_cfg: Optional[int] = None
    global_nb_cfg: Optional[int] = None
    br_int_flows: Optional[int] = None
    hash_ring: Optional[int] = None
    port_groups: Optional[int] = None
    versions: Dict[str, Optional[str]] = dataclasses.field(default_factory=dict)
    incompatible: List[Incompatibility] = dataclasses.field(default_factory=list)
    warnings: List[str] = dataclasses.field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["incompatible"] = [x.describe() for x in self.incompatible]
        return d


def symptoms(h: OvnHealth) -> List[Tuple[RecoveryStrategy, str]]:
    """Every problem found, each tagged with the weakest strategy that fixes it."""
    out: List[Tuple[RecoveryStrategy, str]] = []
    reinit = RecoveryStrategy.DATABASE_REINIT
    reset = RecoveryStrategy.FULL_RESET
    restart = RecoveryStrategy.GRACEFUL_RESTART

    if h.nb_reachable is False:
        out.append((reinit, "OVN northbound database unreachable"))
    if h.sb_reachable is False:
        out.append((reinit, "OVN southbound database unreachable"))
    if h.nb_reachable and h.port_groups == 0:
        out.append((reinit, "no Port_Group rows in the northbound database"))
    if h.chassis and h.br_int_flows == 0:
        out.append((reinit, "chassis registered but br-int has no flows"))

    if h.chassis is not None and not h.chassis:
        out.append((reset, "no chassis registered"))
    elif h.chassis and h.chassis_nb_cfg == 0 and h.global_nb_cfg:
        out.append((reset, f"chassis nb_cfg stuck at 0 (SB_Global nb_cfg {h.global_nb_cfg})"))
    elif (
        h.chassis
        and h.chassis_nb_cfg is not None
        and h.global_nb_cfg is not None
        and h.chassis_nb_cfg < h.global_nb_cfg
    ):
        out.append((
            restart,
            f"chassis nb_cfg {h.chassis_nb_cfg} behind SB_Global nb_cfg {h.global_nb_cfg}",
        ))

    if h.hash_ring == 0:
        out.append((restart, "neutron ovn_hash_ring is empty"))
    return out


def classify(h: OvnHealth) -> Optional[RecoveryStrategy]:
    """None when healthy, else the strongest strategy any symptom calls for.

    A known-bad version pair does not make a host unhealthy by itself, but
    when something is wrong it goes straight to database-reinit.
    """
    found = symptoms(h)
    if not found:
        return None
    if h.incompatible:
        return RecoveryStrategy.DATABASE_REINIT
    return max((s for s, _ in found), key=lambda s: s.rank)


# -------------------------
# Actions
# -------------------------


@dataclasses.dataclass(frozen=True)
class Action:
    name: str
    command: str
    args: Tuple[str, ...] = ()
    # evaluated right before running; False skips the action
    when: Optional[Callable[[], bool]] = None

    def display(self) -> str:
        return shell_join([self.command, *self.args])


class Recovery:
    def __init__(
        self,
        settings: Settings,
        runner: Runner,
        entries: Sequence[Incompatibility] = (),
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.options = settings.recovery
        self.runner = runner
        self.entries = list(entries)
        self.sleep = sleep
        self.mysql = DatabaseAdapter(
            runner,
            defaults_file=settings.mysql_defaults_file,
            host=settings.mysql_host,
            user=settings.mysql_user,
        )

    # -------------------------
    # Diagnosis
    # -------------------------

    def _read(self, h: OvnHealth, what: str, command: str, *args: str) -> Optional[CommandResult]:
        cp = self.runner.execute(command, args, mutating=False)
        if not cp.ok:
            h.warnings.append(
                f"{what}: {cp.display()} exited {cp.exit_code}: {cp.stderr.strip() or 'no output'}"
            )
            return None
        return cp

    def _reachable(self, h: OvnHealth, what: str, command: str) -> Optional[bool]:
        cp = self.runner.execute(command, ["--no-leader-only", "show"], mutating=False)
        if cp.ok:
            return True
        h.warnings.append(f"{what}: {cp.display()} exited {cp.exit_code}: {cp.stderr.strip()}")
        # a missing client binary says nothing about the database
        return None if cp.exit_code == NOT_FOUND_EXIT else False

    @staticmethod
    def _lines(cp: CommandResult) -> List[str]:
        return [x.strip() for x in cp.stdout.splitlines() if x.strip()]

    def _ints(self, h: OvnHealth, cp: Optional[CommandResult], what: str) -> List[int]:
        if cp is None:
            return []
        out = []
        for x in self._lines(cp):
            try:
                out.append(int(x))
            except ValueError:
                h.warnings.append(f"{what}: unexpected value {x!r}")
        return out

    def diagnose(self) -> OvnHealth:
        h = OvnHealth()
        h.nb_reachable = self._reachable(h, "northbound", "ovn-nbctl")
        h.sb_reachable = self._reachable(h, "southbound", "ovn-sbctl")

        if h.sb_reachable:
            cp = self._read(h, "chassis", "ovn-sbctl", "--bare", "--columns=name", "list", "Chassis")
            if cp is not None:
                h.chassis = self._lines(cp)
            cfgs = self._ints(h, self._read(
                h, "chassis nb_cfg", "ovn-sbctl", "--bare", "--columns=nb_cfg", "list", "Chassis"
            ), "chassis nb_cfg")
            if cfgs:
                h.chassis_nb_cfg = min(cfgs)
            cfgs = self._ints(h, self._read(
                h, "SB_Global nb_cfg", "ovn-sbctl", "--bare", "--columns=nb_cfg", "list", "SB_Global"
            ), "SB_Global nb_cfg")
            if cfgs:
                h.global_nb_cfg = cfgs[0]

        if h.nb_reachable:
            cp = self._read(h, "port groups", "ovn-nbctl", "--bare", "--columns=name", "list", "Port_Group")
            if cp is not None:
                h.port_groups = len(self._lines(cp))

        cp = self._read(h, "br-int flows", "ovs-ofctl", "dump-flows", self.options.integration_bridge)
        if cp is not None:
            h.br_int_flows = len(parse_flows(cp.stdout))

        cp = self._read(
            h, "hash ring", "mysql", *self.mysql.base_args(), self.options.neutron_db,
            "-e", "SELECT COUNT(*) FROM ovn_hash_ring",
        )
        counts = self._ints(h, cp, "hash ring")
        if counts:
            h.hash_ring = counts[0]

        h.versions, warnings = probe_versions(self.runner)
        h.warnings.extend(warnings)
        h.incompatible = find_incompatible(h.versions, self.entries)
        return h

    # -------------------------
    # Strategies
    # -------------------------

    def guard(self) -> List[Action]:
        br = self.options.provider_bridge
        return [
            Action("guard: fail_mode", "ovs-vsctl",
                   ("--if-exists", "remove", "bridge", br, "fail_mode", "secure")),
            Action("guard: NORMAL flow", "ovs-ofctl",
                   ("add-flow", br, "priority=0,actions=NORMAL")),
        ]

    def _unit(self, verb: str, unit: str) -> Action:
        return Action(f"{verb} {unit}", "systemctl", (verb, unit))

    def _clear_hash_ring(self) -> Action:
        return Action(
            "clear ovn_hash_ring", "mysql",
            tuple(self.mysql.base_args()) + (self.options.neutron_db, "-e", "DELETE FROM ovn_hash_ring"),
        )

    def _forget_controller(self) -> List[Action]:
        return [
            Action(f"clear external_ids:{key}", "ovs-vsctl",
                   ("--if-exists", "remove", "open_vswitch", ".", "external_ids", key))
            for key in ("ovn-installed", "ovn-remote-probe-interval")
        ]

    def _bridge_exists(self, name: str) -> Callable[[], bool]:
        def check() -> bool:
            cp = self.runner.execute("ovs-vsctl", ["br-exists", name], mutating=False)
            return cp.exit_code == 0
        return check

    def actions(self, strategy: RecoveryStrategy, health: OvnHealth) -> List[Action]:
        o = self.options
        neutron = list(o.neutron_units)

        if strategy is RecoveryStrategy.GRACEFUL_RESTART:
            return (
                [self._unit("restart", "ovn-central"), self._unit("restart", "ovn-host")]
                + [self._unit("restart", u) for u in neutron]
            )

        if strategy is RecoveryStrategy.FULL_RESET:
            out = [self._unit("stop", "ovn-host")]
            out += [
                Action(f"delete chassis {c}", "ovn-sbctl", ("chassis-del", c))
                for c in (health.chassis or [])
            ]
            out += self._forget_controller()
            out.append(self._clear_hash_ring())
            out += [self._unit("restart", "ovn-central"), self._unit("start", "ovn-host")]
            out += [self._unit("restart", u) for u in neutron]
            return out

        if not o.encap_ip or not o.system_id:
            raise ConfigError(
                "database-reinit needs recovery.encap_ip and recovery.system_id "
                "(or stack.controller.ip/hostname)"
            )
        nb = f"{o.ovn_db_dir}/ovnnb_db.db"
        sb = f"{o.ovn_db_dir}/ovnsb_db.db"
        out = [self._unit("stop", u) for u in reversed(neutron)]
        out += [self._unit("stop", "ovn-host"), self._unit("stop", "ovn-central")]
        out.append(Action("remove OVN databases", "rm", ("-f", nb, sb)))
        out += self._forget_controller()
        out.append(Action(
            f"flush {o.integration_bridge} flows", "ovs-ofctl", ("del-flows", o.integration_bridge),
            when=self._bridge_exists(o.integration_bridge),
        ))
        out += [
            Action("create northbound database", "ovsdb-tool",
                   ("create", nb, f"{o.ovn_schema_dir}/ovn-nb.ovsschema")),
            Action("create southbound database", "ovsdb-tool",
                   ("create", sb, f"{o.ovn_schema_dir}/ovn-sb.ovsschema")),
            Action("database permissions", "chmod", ("640", nb, sb)),
            self._unit("start", "ovn-central"),
        ]
        ids = {
            "ovn-remote": OVN_SB,
            "ovn-encap-type": "geneve",
            "ovn-encap-ip": o.encap_ip,
            "system-id": o.system_id,
            "ovn-bridge-mappings": f"{o.physnet}:{o.provider_bridge}",
            "ovn-monitor-all": "true",
        }
        out.append(Action(
            "set OVN external_ids", "ovs-vsctl",
            ("set", "open_vswitch", ".") + tuple(f'external_ids:{k}="{v}"' for k, v in ids.items()),
        ))
        out.append(self._unit("start", "ovn-host"))
        out.append(self._clear_hash_ring())
        sync = ["neutron-ovn-db-sync-util"]
        for f in NEUTRON_CONFIG:
            sync += ["--config-file", f]
        sync.append("--ovn-neutron_sync_mode=repair")
        out.append(Action("resync neutron into OVN", sync[0], tuple(sync[1:])))
        out += [self._unit("start", u) for u in neutron]
        return out

    # -------------------------
    # Running
    # -------------------------

    def run_action(self, strategy: RecoveryStrategy, action: Action) -> StepOutcome:
        ident = f"{strategy.value}: {action.name}"
        warnings = []
        for g in self.guard():
            cp = self.runner.execute(g.command, g.args)
            if not cp.ok:
                warnings.append(f"{g.name}: {cp.display()} exited {cp.exit_code}: {cp.stderr.strip()}")

        if action.when is not None and not action.when():
            return StepOutcome("recovery", ident, Status.SATISFIED, "skipped (nothing to do)",
                               tuple(warnings))
        cp = self.runner.execute(action.command, action.args)
        if not cp.ok:
            return StepOutcome(
                "recovery", ident, Status.FAILED,
                f"{action.display()} exited {cp.exit_code}: {cp.stderr.strip() or cp.stdout.strip()}",
                tuple(warnings),
            )
        return StepOutcome("recovery", ident, Status.CONVERGED, action.display(), tuple(warnings))

    def report_health(self, reporter: Reporter, label: str, h: OvnHealth, status: Status) -> None:
        found = symptoms(h)
        detail = "; ".join(reason for _, reason in found) or "healthy"
        warnings = list(h.warnings) + [f"known-bad versions: {x.describe()}" for x in h.incompatible]
        reporter.add(StepOutcome(
            "ovn-health", label, status, detail, tuple(warnings),
            observed={k: v for k, v in h.as_dict().items() if k != "warnings"},
        ))

    def recover(
        self,
        reporter: Reporter,
        *,
        strategy: Optional[RecoveryStrategy] = None,
        max_escalations: Optional[int] = None,
    ) -> Optional[RecoveryStrategy]:
        """Diagnose, act, re-probe, escalate. Returns the last strategy run."""
        limit = self.options.max_escalations if max_escalations is None else max_escalations
        health = self.diagnose()
        chosen = strategy or classify(health)

        if chosen is None:
            self.report_health(reporter, "initial", health, Status.SATISFIED)
            return None

        initial = Status.DRIFTED if symptoms(health) else Status.SATISFIED
        if self.settings.dry_run:
            self.report_health(reporter, "initial", health, initial)
            for g in self.guard():
                reporter.add(StepOutcome("recovery", f"{chosen.value}: {g.name}",
                                         Status.PENDING, f"planned: {g.display()}"))
            for a in self.actions(chosen, health):
                reporter.add(StepOutcome("recovery", f"{chosen.value}: {a.name}",
                                         Status.PENDING, f"planned: {a.display()}"))
            reporter.note(f"dry-run: would run {chosen.value}")
            return chosen

        self.report_health(reporter, "initial", health, initial)
        poller = Poller(
            interval=self.settings.poll_interval,
            attempts=self.settings.poll_attempts,
            sleep=self.sleep,
        )
        escalations = 0
        while True:
            reporter.note(f"running {chosen.value}")
            for action in self.actions(chosen, health):
                reporter.add(self.run_action(chosen, action))

            result = poller.until(self.diagnose, lambda h: not symptoms(h))
            health = result.value
            if result.ok:
                self.report_health(reporter, f"after {chosen.value}", health, Status.CONVERGED)
                return chosen

            nxt = escalate(chosen)
            if nxt is None or escalations >= limit:
                self.report_health(reporter, f"after {chosen.value}", health, Status.FAILED)
                return chosen
            self.report_health(reporter, f"after {chosen.value}", health, Status.DRIFTED)
            escalations += 1
            chosen = nxt
