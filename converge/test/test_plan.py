import pytest

from converge.errors import ConfigError, PlanError
from converge.model import ResourceDescriptor, Status
from converge.test.fakes import thing


def by_key(outcomes):
    return {o.key: o for o in outcomes}


def test_order_is_topological_with_declaration_tiebreak(make_plan):
    plan = make_plan(
        thing("c", requires=["thing:b"]),
        thing("a"),
        thing("b", requires=["thing:a"]),
        thing("z"),
    )

    assert [d.key for d in plan.order()] == ["thing:a", "thing:b", "thing:c", "thing:z"]


def test_prerequisite_converges_before_dependent(make_plan, things):
    plan = make_plan(thing("db"), thing("svc", requires=["thing:db"]))

    outcomes = plan.run()

    assert things.applied == ["db", "svc"]
    assert all(o.status is Status.CONVERGED for o in outcomes)


def test_unknown_prerequisite_is_rejected_before_running(make_plan, things):
    plan = make_plan(thing("a", requires=["thing:nope"]))

    with pytest.raises(PlanError, match="unknown prerequisite thing:nope"):
        plan.order()
    assert things.probes == []


def test_cycle_is_rejected(make_plan):
    plan = make_plan(
        thing("a", requires=["thing:c"]),
        thing("b", requires=["thing:a"]),
        thing("c", requires=["thing:b"]),
    )

    with pytest.raises(PlanError, match="cycle"):
        plan.resolve()


def test_self_reference_is_rejected(make_plan):
    plan = make_plan(thing("a", requires=["thing:a"]))

    with pytest.raises(PlanError, match="requires itself"):
        plan.resolve()


def test_duplicate_key_is_rejected(make_plan):
    with pytest.raises(PlanError, match="Duplicate"):
        make_plan(thing("a"), thing("a", value="other"))


def test_unknown_kind_is_rejected(make_plan):
    with pytest.raises(ConfigError, match="Unknown resource kind: widget"):
        make_plan(ResourceDescriptor("widget", "w"))


def test_wildcard_gate_waits_for_every_resource_of_a_kind(make_plan):
    plan = make_plan(
        thing("api", kind="svc", requires=["thing:*"]),
        thing("db1"),
        thing("db2"),
    )

    assert plan.prerequisites("svc:api") == ["thing:db1", "thing:db2"]
    assert [d.key for d in plan.order()] == ["thing:db1", "thing:db2", "svc:api"]


def test_fail_fast_leaves_later_steps_pending(make_plan, things):
    things.failing["b"] = 1
    plan = make_plan(thing("a"), thing("b"), thing("c"), policy="fail-fast")

    outcomes = by_key(plan.run())

    assert outcomes["thing:a"].status is Status.CONVERGED
    assert outcomes["thing:b"].status is Status.FAILED
    assert outcomes["thing:c"].status is Status.PENDING
    assert "c" not in things.probes


def test_best_effort_blocks_only_dependents(make_plan, things):
    things.failing["db"] = 1
    plan = make_plan(
        thing("db"),
        thing("svc", requires=["thing:db"]),
        thing("other"),
        policy="best-effort",
    )

    outcomes = by_key(plan.run())

    assert outcomes["thing:db"].status is Status.FAILED
    assert outcomes["thing:svc"].status is Status.BLOCKED
    assert "thing:db" in outcomes["thing:svc"].detail
    assert outcomes["thing:other"].status is Status.CONVERGED
    assert "svc" not in things.probes


def test_blocked_propagates_down_the_chain(make_plan, things):
    things.failing["a"] = 1
    plan = make_plan(
        thing("a"),
        thing("b", requires=["thing:a"]),
        thing("c", requires=["thing:b"]),
        policy="best-effort",
    )

    outcomes = by_key(plan.run())

    assert outcomes["thing:b"].status is Status.BLOCKED
    assert outcomes["thing:c"].status is Status.BLOCKED
    assert "thing:b" in outcomes["thing:c"].detail


def test_failed_step_is_retried_whole(make_plan, things, sleeps):
    things.failing["a"] = 2
    plan = make_plan(thing("a"), retries=2, retry_interval=7.0)

    outcome = plan.run()[0]

    assert outcome.status is Status.CONVERGED
    assert things.applied == ["a", "a", "a"]
    assert sleeps == [7.0, 7.0]


def test_retries_run_out(make_plan, things):
    things.failing["a"] = 5
    plan = make_plan(thing("a"), retries=1)

    outcome = plan.run()[0]

    assert outcome.status is Status.FAILED
    assert things.applied == ["a", "a"]


def test_rerun_after_convergence_takes_no_actions(make_plan, things):
    descs = [thing("a"), thing("b", requires=["thing:a"]), thing("c", value=3)]
    make_plan(*descs).run()
    applied = list(things.applied)

    outcomes = make_plan(*descs).run()

    assert all(o.status is Status.SATISFIED for o in outcomes)
    assert things.applied == applied


def test_dry_run_probes_dependents_of_drifted_resources(make_plan, things):
    plan = make_plan(thing("a"), thing("b", requires=["thing:a"]), dry_run=True)

    outcomes = plan.run()

    assert [o.status for o in outcomes] == [Status.DRIFTED, Status.DRIFTED]
    assert things.applied == []
    assert things.probes == ["a", "b"]


def test_settling_kind_uses_plan_poll_settings(make_plan, units, sleeps):
    units.lag["nova-api"] = 1
    plan = make_plan(thing("nova-api", kind="svc"), poll_interval=4.0, poll_attempts=3)

    outcome = plan.run()[0]

    assert outcome.status is Status.CONVERGED
    assert sleeps == [4.0]


def test_select_keeps_ancestors_only(make_plan):
    plan = make_plan(
        thing("a"),
        thing("b", requires=["thing:a"]),
        thing("c", requires=["thing:b"]),
        thing("unrelated"),
    )

    sub = plan.select(["thing:b"])

    assert [d.key for d in sub.order()] == ["thing:a", "thing:b"]


def test_select_by_kind(make_plan):
    plan = make_plan(
        thing("db"),
        thing("api", kind="svc", requires=["thing:db"]),
        thing("other"),
    )

    sub = plan.select(kinds=["svc"])

    assert [d.key for d in sub.order()] == ["thing:db", "svc:api"]


def test_select_unknown_key(make_plan):
    plan = make_plan(thing("a"))

    with pytest.raises(PlanError, match="Unknown resource"):
        plan.select(["thing:b"])


def test_systems(make_plan):
    plan = make_plan(thing("a"), thing("api", kind="svc"))

    assert plan.systems() == ["memory", "systemd"]


def test_status_moves_to_terminal(make_plan):
    plan = make_plan(thing("a"))
    assert plan.status["thing:a"] is Status.PENDING

    plan.run()

    assert plan.status["thing:a"] is Status.CONVERGED
    assert plan.status["thing:a"].terminal


def test_action_that_lands_late_is_reported_converged_on_retry(make_plan, things, sleeps):
    things.lag["a"] = 1
    plan = make_plan(thing("a"), retries=1)

    outcome = plan.run()[0]

    assert outcome.status is Status.CONVERGED
    assert "earlier attempt" in outcome.detail
    assert outcome.attempts == 2
    assert things.applied == ["a"]
    assert plan.status["thing:a"] is Status.CONVERGED
    assert sleeps == [5.0]


def test_satisfied_on_retry_without_any_action_stays_satisfied(make_plan, things):
    things.state["a"] = {"value": "v"}
    things.blind_apply = False
    things.unreachable["a"] = 1
    plan = make_plan(thing("a"), retries=1)

    outcome = plan.run()[0]

    assert outcome.status is Status.SATISFIED
    assert things.applied == []
