"""
Reporting: collect step outcomes and render them for people or tools.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List

from .model import Status, StepOutcome
from .util import redact

SEVERITY = {
    Status.FAILED: 0,
    Status.BLOCKED: 1,
    Status.DRIFTED: 2,
    Status.PENDING: 3,
    Status.RUNNING: 3,
    Status.CONVERGED: 4,
    Status.SATISFIED: 5,
}

PREFIX = {
    Status.FAILED: "[XX] ",
    Status.BLOCKED: "[--] ",
    Status.DRIFTED: "[!!] ",
    Status.PENDING: "[  ] ",
    Status.RUNNING: "[  ] ",
    Status.CONVERGED: "[++] ",
    Status.SATISFIED: "[OK] ",
}

FORMATS = ("text", "json", "yaml")


class Reporter:
    def __init__(self) -> None:
        self.items: List[StepOutcome] = []
        self.notes: List[str] = []

    def add(self, outcome: StepOutcome) -> None:
        self.items.append(outcome)

    def extend(self, outcomes: Iterable[StepOutcome]) -> None:
        self.items.extend(outcomes)

    def note(self, text: str) -> None:
        self.notes.append(text)

    def summarize(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in Status if s is not Status.RUNNING}
        for x in self.items:
            counts[x.status.value] = counts.get(x.status.value, 0) + 1
        return counts

    def failed(self) -> bool:
        return any(x.status in (Status.FAILED, Status.BLOCKED) for x in self.items)

    def drifted(self) -> bool:
        return any(x.status is Status.DRIFTED for x in self.items)

    def exit_code(self, *, strict: bool = False) -> int:
        if self.failed():
            return 2
        if strict and (self.drifted() or any(x.status is Status.PENDING for x in self.items)):
            return 2
        return 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summarize(),
            "notes": list(self.notes),
            "outcomes": [x.as_dict() for x in self.items],
        }

    def render(self, fmt: str = "text", *, verbose: bool = False) -> str:
        if fmt == "json":
            return json.dumps(self.as_dict(), indent=2, sort_keys=False, default=str)
        if fmt == "yaml":
            import yaml  # type: ignore

            return yaml.safe_dump(self.as_dict(), sort_keys=False, default_flow_style=False)
        return self.render_text(verbose=verbose)

    def render_text(self, *, verbose: bool = False) -> str:
        by_kind: Dict[str, List[StepOutcome]] = {}
        for x in self.items:
            by_kind.setdefault(x.kind, []).append(x)

        lines: List[str] = []
        for kind in sorted(by_kind):
            items = sorted(by_kind[kind], key=lambda z: (SEVERITY[z.status], z.identifier))
            shown = [it for it in items if verbose or it.status is not Status.SATISFIED]
            if not shown:
                continue
            lines.append(f"\n== {kind} ==")
            for it in shown:
                line = f"{PREFIX[it.status]}{it.identifier}"
                if it.detail:
                    line += f": {redact(it.detail)}"
                lines.append(line)
                for w in it.warnings:
                    lines.append(f"     warning: {redact(w)}")

        for n in self.notes:
            lines.append(f"\nnote: {n}")

        summary = " ".join(f"{k}={v}" for k, v in self.summarize().items() if v or k in (
            "SATISFIED", "CONVERGED", "FAILED"))
        lines.append(f"\nSummary: {summary}")
        return "\n".join(lines)

    def print(self, fmt: str = "text", *, verbose: bool = False) -> None:
        print(self.render(fmt, verbose=verbose))
