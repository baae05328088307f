"""
Bounded polling: a fixed interval and a ceiling on attempts.

Used wherever external state converges asynchronously (a unit becoming
active, a chassis registering) and by the plan for whole-step retries.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


@dataclasses.dataclass
class PollResult(Generic[T]):
    ok: bool
    value: T
    attempts: int


@dataclasses.dataclass
class Poller:
    interval: float = 2.0
    attempts: int = 15
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.interval < 0:
            raise ValueError("interval must be >= 0")

    def until(self, fetch: Callable[[], T], done: Callable[[T], bool]) -> PollResult[T]:
        """Call fetch() until done(value) holds or attempts run out.

        Sleeps between attempts, never after the last one. The final
        value is returned either way so callers can report what they saw.
        """
        n = 0
        while True:
            n += 1
            value = fetch()
            if done(value):
                return PollResult(True, value, n)
            if n >= self.attempts:
                return PollResult(False, value, n)
            self.sleep(self.interval)

    def once(self) -> "Poller":
        return dataclasses.replace(self, attempts=1)
