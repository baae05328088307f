import pytest
from pytest import fixture

from converge.compat import BUILTIN
from converge.errors import ConfigError
from converge.model import Status
from converge.recovery import (
    OvnHealth,
    Recovery,
    RecoveryStrategy,
    classify,
    escalate,
    symptoms,
)
from converge.report import Reporter
from converge.test.fakes import BR_INT_FLOWS, HASH_RING, FakeRunner, healthy_ovn

RESTART = RecoveryStrategy.GRACEFUL_RESTART
RESET = RecoveryStrategy.FULL_RESET
REINIT = RecoveryStrategy.DATABASE_REINIT


def healthy(**kw):
    values = dict(
        nb_reachable=True, sb_reachable=True, chassis=["osctl1"],
        chassis_nb_cfg=7, global_nb_cfg=7, br_int_flows=40, hash_ring=3, port_groups=2,
    )
    values.update(kw)
    return OvnHealth(**values)


@fixture
def settings(settings):
    settings.recovery.encap_ip = "192.168.2.9"
    settings.recovery.system_id = "osctl1"
    return settings


@fixture
def recovery(settings, runner, sleeps):
    healthy_ovn(runner)
    return Recovery(settings, runner, BUILTIN, sleep=sleeps.append)


def statuses(rep, kind):
    return [(o.identifier, o.status) for o in rep.items if o.kind == kind]


# -------------------------
# Classification
# -------------------------


def test_healthy_host_needs_nothing():
    assert symptoms(healthy()) == []
    assert classify(healthy()) is None


def test_unknowns_are_not_symptoms():
    assert classify(OvnHealth()) is None


@pytest.mark.parametrize("kw,want", [
    ({"hash_ring": 0}, RESTART),
    ({"chassis_nb_cfg": 5}, RESTART),
    ({"chassis": []}, RESET),
    ({"chassis_nb_cfg": 0}, RESET),
    ({"br_int_flows": 0}, REINIT),
    ({"port_groups": 0}, REINIT),
    ({"nb_reachable": False}, REINIT),
    ({"sb_reachable": False, "chassis": None}, REINIT),
    ({"hash_ring": 0, "chassis": []}, RESET),
])
def test_classify(kw, want):
    assert classify(healthy(**kw)) is want


def test_nb_cfg_zero_on_fresh_databases_is_fine():
    assert classify(healthy(chassis_nb_cfg=0, global_nb_cfg=0)) is None


def test_bad_versions_alone_do_not_trigger_recovery():
    assert classify(healthy(incompatible=list(BUILTIN))) is None


def test_bad_versions_upgrade_any_symptom_to_reinit():
    assert classify(healthy(hash_ring=0, incompatible=list(BUILTIN))) is REINIT


def test_escalation_order():
    assert escalate(RESTART) is RESET
    assert escalate(RESET) is REINIT
    assert escalate(REINIT) is None


# -------------------------
# Diagnosis
# -------------------------


def test_diagnose(recovery, runner):
    h = recovery.diagnose()

    assert h.nb_reachable and h.sb_reachable
    assert h.chassis == ["osctl1"]
    assert (h.chassis_nb_cfg, h.global_nb_cfg) == (7, 7)
    assert h.port_groups == 2
    assert h.br_int_flows == 2
    assert h.hash_ring == 3
    assert h.warnings == []
    assert runner.mutations() == []


def test_missing_client_is_unknown_not_unreachable(recovery, runner):
    runner.on("ovn-nbctl", (127, "", "ovn-nbctl: command not found"))

    h = recovery.diagnose()

    assert h.nb_reachable is None
    assert h.port_groups is None
    assert any("northbound" in w for w in h.warnings)


def test_unreachable_southbound(recovery, runner):
    runner.on("ovn-sbctl --no-leader-only show", (1, "", "database connection failed"))

    h = recovery.diagnose()

    assert h.sb_reachable is False
    assert h.chassis is None
    assert classify(h) is REINIT


def test_diagnose_sees_known_bad_versions(recovery, runner):
    runner.on("dpkg-query -W -f ${Version} ovn-common", "25.03.0-0ubuntu1")
    runner.on("dpkg-query -W -f ${Version} neutron-common", "2:26.0.0-0ubuntu1")

    h = recovery.diagnose()

    assert h.incompatible == list(BUILTIN)
    assert h.as_dict()["incompatible"][0].startswith("ovn 25.03 with neutron 26.0")


# -------------------------
# Strategies
# -------------------------


def names(actions):
    return [a.name for a in actions]


def test_graceful_restart_actions(recovery):
    assert names(recovery.actions(RESTART, healthy())) == [
        "restart ovn-central",
        "restart ovn-host",
        "restart neutron-server",
        "restart neutron-ovn-metadata-agent",
    ]


def test_full_reset_deletes_every_chassis(recovery):
    acts = recovery.actions(RESET, healthy(chassis=["osctl1", "stale"]))

    assert names(acts)[:3] == ["stop ovn-host", "delete chassis osctl1", "delete chassis stale"]
    assert "clear ovn_hash_ring" in names(acts)
    assert names(acts)[-1] == "restart neutron-ovn-metadata-agent"


def test_database_reinit_actions(recovery):
    acts = {a.name: a for a in recovery.actions(REINIT, healthy())}
    order = list(acts)

    assert order[:4] == [
        "stop neutron-ovn-metadata-agent", "stop neutron-server", "stop ovn-host", "stop ovn-central",
    ]
    assert acts["remove OVN databases"].display() == (
        "rm -f /var/lib/ovn/ovnnb_db.db /var/lib/ovn/ovnsb_db.db"
    )
    assert acts["create northbound database"].args == (
        "create", "/var/lib/ovn/ovnnb_db.db", "/usr/share/ovn/ovn-nb.ovsschema",
    )
    ids = acts["set OVN external_ids"].args
    assert 'external_ids:ovn-encap-ip="192.168.2.9"' in ids
    assert 'external_ids:system-id="osctl1"' in ids
    assert 'external_ids:ovn-monitor-all="true"' in ids
    assert acts["resync neutron into OVN"].args[-1] == "--ovn-neutron_sync_mode=repair"
    assert order.index("start ovn-central") < order.index("set OVN external_ids")
    assert order.index("clear ovn_hash_ring") < order.index("resync neutron into OVN")
    assert order[-1] == "start neutron-ovn-metadata-agent"


def test_database_reinit_needs_controller_identity(settings, runner):
    settings.recovery.encap_ip = None

    with pytest.raises(ConfigError, match="encap_ip"):
        Recovery(settings, runner).actions(REINIT, healthy())


def test_guard_runs_before_every_action(recovery, runner):
    [action] = [a for a in recovery.actions(RESTART, healthy()) if a.name == "restart ovn-host"]

    outcome = recovery.run_action(RESTART, action)

    assert outcome.status is Status.CONVERGED
    assert runner.mutations() == [
        "ovs-vsctl --if-exists remove bridge br-provider fail_mode secure",
        "ovs-ofctl add-flow br-provider priority=0,actions=NORMAL",
        "systemctl restart ovn-host",
    ]


def test_guard_failure_is_a_warning(recovery, runner):
    runner.on("ovs-ofctl add-flow br-provider", (1, "", "br-provider is not a bridge"))
    action = recovery.actions(RESTART, healthy())[0]

    outcome = recovery.run_action(RESTART, action)

    assert outcome.status is Status.CONVERGED
    assert "br-provider is not a bridge" in outcome.warnings[0]


def test_failed_action(recovery, runner):
    runner.on("systemctl restart ovn-central", (1, "", "Job for ovn-central.service failed"))

    outcome = recovery.run_action(RESTART, recovery.actions(RESTART, healthy())[0])

    assert outcome.status is Status.FAILED
    assert outcome.identifier == "graceful-restart: restart ovn-central"
    assert "Job for ovn-central.service failed" in outcome.detail


def test_flush_is_skipped_without_br_int(recovery, runner):
    runner.on("ovs-vsctl br-exists br-int", (2, "", ""))
    [flush] = [a for a in recovery.actions(REINIT, healthy()) if a.name == "flush br-int flows"]

    outcome = recovery.run_action(REINIT, flush)

    assert outcome.status is Status.SATISFIED
    assert "ovs-ofctl del-flows br-int" not in runner.mutations()


# -------------------------
# recover()
# -------------------------


def test_recover_healthy_host_does_nothing(recovery, runner):
    rep = Reporter()

    assert recovery.recover(rep) is None
    assert statuses(rep, "ovn-health") == [("initial", Status.SATISFIED)]
    assert runner.mutations() == []
    assert rep.exit_code() == 0


def test_recover_graceful_restart(recovery, runner, sleeps):
    runner.on(HASH_RING, "0", "0", "3")
    rep = Reporter()

    assert recovery.recover(rep) is RESTART

    assert statuses(rep, "ovn-health") == [
        ("initial", Status.DRIFTED),
        ("after graceful-restart", Status.CONVERGED),
    ]
    assert all(s is Status.CONVERGED for _, s in statuses(rep, "recovery"))
    assert "systemctl restart neutron-server" in runner.mutations()
    # one failed re-probe before the hash ring was rebuilt
    assert sleeps == [1.0]
    assert rep.exit_code() == 0


def test_recover_escalates_until_limit(recovery, runner):
    runner.on(HASH_RING, "0")
    rep = Reporter()

    assert recovery.recover(rep, max_escalations=1) is RESET

    assert statuses(rep, "ovn-health") == [
        ("initial", Status.DRIFTED),
        ("after graceful-restart", Status.DRIFTED),
        ("after full-reset", Status.FAILED),
    ]
    assert "ovn-sbctl chassis-del osctl1" in runner.mutations()
    assert not any(m.startswith("ovsdb-tool") for m in runner.mutations())
    assert rep.exit_code() == 2


def test_recover_runs_out_of_strategies(recovery, runner):
    runner.on(HASH_RING, "0")
    rep = Reporter()

    assert recovery.recover(rep, max_escalations=5) is REINIT

    assert statuses(rep, "ovn-health")[-1] == ("after database-reinit", Status.FAILED)
    assert [n for n in rep.notes if n.startswith("running")] == [
        "running graceful-restart", "running full-reset", "running database-reinit",
    ]


def test_recover_known_bad_versions_go_straight_to_reinit(recovery, runner):
    runner.on("dpkg-query -W -f ${Version} ovn-common", "25.03.0-0ubuntu1")
    runner.on("dpkg-query -W -f ${Version} neutron-common", "2:26.0.0-0ubuntu1")
    runner.on("ovs-ofctl dump-flows br-int", "NXST_FLOW reply (xid=0x4):", BR_INT_FLOWS)
    rep = Reporter()

    assert recovery.recover(rep) is REINIT

    assert "neutron-ovn-db-sync-util" in " ".join(runner.mutations())
    assert statuses(rep, "ovn-health")[-1] == ("after database-reinit", Status.CONVERGED)
    initial = rep.items[0]
    assert any("known-bad versions" in w for w in initial.warnings)


def test_recover_forced_strategy_on_healthy_host(recovery, runner):
    rep = Reporter()

    assert recovery.recover(rep, strategy=RESET) is RESET

    assert statuses(rep, "ovn-health")[0] == ("initial", Status.SATISFIED)
    assert "systemctl stop ovn-host" in runner.mutations()


def test_recover_dry_run_only_plans(settings, sleeps):
    settings.dry_run = True
    runner = healthy_ovn(FakeRunner(dry_run=True))
    runner.on(HASH_RING, "0")
    rep = Reporter()

    assert Recovery(settings, runner, sleep=sleeps.append).recover(rep) is RESTART

    assert runner.mutations() == []
    planned = [o for o in rep.items if o.kind == "recovery"]
    assert all(o.status is Status.PENDING for o in planned)
    assert planned[0].detail == "planned: ovs-vsctl --if-exists remove bridge br-provider fail_mode secure"
    assert planned[-1].identifier == "graceful-restart: restart neutron-ovn-metadata-agent"
    assert rep.notes == ["dry-run: would run graceful-restart"]
    assert rep.exit_code(strict=True) == 2
