from pytest import fixture

from converge.adapters.base import Registry
from converge.config import Settings
from converge.plan import Plan
from converge.test.fakes import FakeRunner, MemoryAdapter


@fixture
def runner():
    return FakeRunner()


@fixture
def sleeps():
    return []


@fixture
def settings():
    return Settings(poll_interval=1.0, poll_attempts=3, retry_interval=5.0)


@fixture
def things():
    return MemoryAdapter("thing")


@fixture
def units():
    return MemoryAdapter("svc", system="systemd", settles=True)


@fixture
def make_plan(settings, things, units, sleeps):
    def make(*descriptors, **overrides):
        for k, v in overrides.items():
            setattr(settings, k, v)
        return Plan(settings, Registry([things, units]), descriptors, sleep=sleeps.append)
    return make