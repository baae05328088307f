"""
ConvergenceStep: probe, act if needed, probe again.

A step never reports CONVERGED without a post-action probe that observes
the desired state, and never retries the action itself; retries are the
plan's business.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .adapters.base import Adapter, Diff
from .errors import ConvergeError, ProbeError, VerificationError
from .model import ProbeResult, ResourceDescriptor, Status, StepOutcome
from .poll import Poller
from .util import redact


def describe_diff(delta: Diff) -> str:
    parts = []
    for name in sorted(delta):
        want, got = delta[name]
        if name == "exists":
            parts.append("missing" if got is False else "state unknown")
            continue
        parts.append(f"{name}: {redact(got, name)!r} -> {redact(want, name)!r}")
    return "; ".join(parts)


class ConvergenceStep:
    def __init__(
        self,
        descriptor: ResourceDescriptor,
        adapter: Adapter,
        *,
        dry_run: bool = False,
        settle: Optional[Poller] = None,
    ) -> None:
        self.descriptor = descriptor
        self.adapter = adapter
        self.dry_run = dry_run
        self.settle = settle or Poller(interval=0, attempts=1)
        # set once apply() has been called, whatever its result
        self.acted = False

    def outcome(self, status: Status, detail: str, warnings: List[str], **kw) -> StepOutcome:
        return StepOutcome(
            kind=self.descriptor.kind,
            identifier=self.descriptor.identifier,
            status=status,
            detail=detail,
            warnings=tuple(warnings),
            **kw,
        )

    def observed(self, result: ProbeResult) -> Dict[str, Any]:
        seen = result.observed()
        return {k: seen.get(k) for k in self.adapter.expected(self.descriptor)}

    def run(self) -> StepOutcome:
        desc = self.descriptor
        warnings: List[str] = []

        try:
            before = self.adapter.probe(desc)
        except ProbeError as ex:
            warnings.append(f"probe failed, state unknown: {ex}")
            if not self.adapter.blind_apply:
                return self.outcome(Status.FAILED, f"state unknown, not acting: {ex}", warnings)
            before = ProbeResult.unknown(str(ex))
        except ConvergeError as ex:
            return self.outcome(Status.FAILED, f"probe: {ex}", warnings)

        delta = self.adapter.diff(desc, before)
        if not delta:
            return self.outcome(Status.SATISFIED, "already in desired state", warnings)

        if self.dry_run:
            return self.outcome(
                Status.DRIFTED,
                describe_diff(delta),
                warnings,
                expected=self.adapter.expected(desc),
                observed=self.observed(before),
            )

        self.acted = True
        try:
            self.adapter.apply(desc, before)
        except ConvergeError as ex:
            return self.outcome(Status.FAILED, f"action: {ex}", warnings)

        return self.verify(delta, warnings)

    def verify(self, delta: Diff, warnings: List[str]) -> StepOutcome:
        desc = self.descriptor
        poller = self.settle if self.adapter.settles else self.settle.once()

        errors: List[str] = []

        def fetch() -> Optional[ProbeResult]:
            try:
                return self.adapter.probe(desc)
            except ProbeError as ex:
                errors.append(str(ex))
                return None

        res = poller.until(fetch, lambda r: r is not None and self.adapter.satisfied(desc, r))
        if res.ok:
            return self.outcome(
                Status.CONVERGED, f"applied ({describe_diff(delta)})", warnings, attempts=res.attempts
            )

        if res.value is None:
            return self.outcome(
                Status.FAILED,
                f"verification: post-probe failed: {errors[-1] if errors else 'no result'}",
                warnings,
                attempts=res.attempts,
            )

        expected = self.adapter.expected(desc)
        observed = self.observed(res.value)
        err = VerificationError(redact(expected), redact(observed))
        return self.outcome(
            Status.FAILED,
            f"verification: {err}",
            warnings,
            expected=expected,
            observed=observed,
            attempts=res.attempts,
        )
