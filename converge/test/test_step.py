from converge.model import Status
from converge.poll import Poller
from converge.step import ConvergenceStep, describe_diff
from converge.test.fakes import MemoryAdapter, thing


def make_step(adapter, desc, **kw):
    kw.setdefault("settle", Poller(interval=1.0, attempts=4, sleep=lambda s: None))
    return ConvergenceStep(desc, adapter, **kw)


def test_satisfied_takes_no_action(things):
    things.state["a"] = {"value": "v"}

    outcome = make_step(things, thing("a")).run()

    assert outcome.status is Status.SATISFIED
    assert things.applied == []
    assert things.probes == ["a"]


def test_missing_resource_converges_after_one_action(things):
    outcome = make_step(things, thing("a", value=3)).run()

    assert outcome.status is Status.CONVERGED
    assert things.applied == ["a"]
    assert things.state["a"] == {"value": 3}
    assert outcome.attempts == 1
    assert "missing" in outcome.detail


def test_wrong_attribute_is_not_satisfied(things):
    things.state["a"] = {"value": "old"}

    outcome = make_step(things, thing("a", value="new")).run()

    assert outcome.status is Status.CONVERGED
    assert "'old' -> 'new'" in outcome.detail


def test_second_run_is_a_no_op(things):
    desc = thing("a")
    make_step(things, desc).run()
    outcome = make_step(things, desc).run()

    assert outcome.status is Status.SATISFIED
    assert things.applied == ["a"]


def test_action_without_effect_fails_verification(things):
    things.broken.add("a")
    things.state["a"] = {"value": "3"}

    outcome = make_step(things, thing("a", value=1)).run()

    assert outcome.status is Status.FAILED
    assert outcome.detail.startswith("verification: still unsatisfied after apply")
    assert outcome.expected == {"exists": True, "value": "1"}
    assert outcome.observed == {"exists": True, "value": "3"}
    assert things.applied == ["a"]


def test_action_error_fails_without_verification(things):
    things.failing["a"] = 1

    outcome = make_step(things, thing("a")).run()

    assert outcome.status is Status.FAILED
    assert outcome.detail.startswith("action: ")
    assert "refused" in outcome.detail
    # only the pre-probe ran
    assert things.probes == ["a"]


def test_failed_pre_probe_is_a_warning_not_a_failure(things):
    things.unreachable["a"] = 1

    outcome = make_step(things, thing("a")).run()

    assert outcome.status is Status.CONVERGED
    assert len(outcome.warnings) == 1
    assert "state unknown" in outcome.warnings[0]
    assert things.applied == ["a"]


def test_unknown_state_is_not_acted_on_for_non_idempotent_kinds(things):
    things.blind_apply = False
    things.unreachable["a"] = 1

    outcome = make_step(things, thing("a")).run()

    assert outcome.status is Status.FAILED
    assert outcome.detail.startswith("state unknown, not acting: ")
    assert "state unknown" in outcome.warnings[0]
    assert things.applied == []


def test_failed_post_probe_fails(things):
    step = make_step(things, thing("a"))
    original = things.probe

    def probe_then_break(desc):
        result = original(desc)
        things.unreachable["a"] = 5
        return result

    things.probe = probe_then_break
    outcome = step.run()

    assert outcome.status is Status.FAILED
    assert "post-probe failed" in outcome.detail


def test_dry_run_reports_drift_and_never_acts(things):
    things.state["a"] = {"value": "old"}

    outcome = make_step(things, thing("a", value="new"), dry_run=True).run()

    assert outcome.status is Status.DRIFTED
    assert things.applied == []
    assert outcome.expected["value"] == "new"
    assert outcome.observed["value"] == "old"


def test_settling_kind_polls_post_probe_without_reapplying():
    units = MemoryAdapter("svc", settles=True)
    units.lag["nova-api"] = 2
    slept = []
    step = ConvergenceStep(
        thing("nova-api", kind="svc"), units,
        settle=Poller(interval=2.0, attempts=5, sleep=slept.append),
    )

    outcome = step.run()

    assert outcome.status is Status.CONVERGED
    assert units.applied == ["nova-api"]
    assert outcome.attempts == 3
    assert slept == [2.0, 2.0]


def test_settling_kind_gives_up_after_max_attempts():
    units = MemoryAdapter("svc", settles=True)
    units.lag["nova-api"] = 10
    slept = []
    step = ConvergenceStep(
        thing("nova-api", kind="svc"), units,
        settle=Poller(interval=2.0, attempts=3, sleep=slept.append),
    )

    outcome = step.run()

    assert outcome.status is Status.FAILED
    assert outcome.attempts == 3
    assert len(slept) == 2
    assert units.applied == ["nova-api"]


def test_non_settling_kind_probes_once_after_apply(things):
    things.lag["a"] = 1

    outcome = make_step(things, thing("a")).run()

    assert outcome.status is Status.FAILED
    assert outcome.attempts == 1


def test_describe_diff_masks_secrets():
    text = describe_diff({"password": ("s3cret", "old"), "exists": (True, None)})

    assert "s3cret" not in text
    assert "old" not in text
    assert "state unknown" in text
