"""
Adapter contract and registry.

An adapter owns the resource kinds of one external system. probe() is
read-only; apply() performs the smallest change that should converge the
resource given what the probe observed.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence, Tuple

from ..errors import ActionError, ConfigError, ProbeError
from ..model import ProbeResult, ResourceDescriptor
from ..runner import CommandResult, Runner

Diff = Dict[str, Tuple[Any, Any]]


class Adapter:
    kind: str = ""
    system: str = ""
    # Desired keys compared against probe attributes. Anything else in
    # desired (passwords, descriptions) only feeds apply().
    attributes: Tuple[str, ...] = ()
    # Post-apply state shows up asynchronously; verify with bounded poll.
    settles: bool = False
    # apply() is safe to run when the pre-probe failed. Kinds whose create
    # duplicates or errors on an existing resource set this False.
    blind_apply: bool = True

    def __init__(self, runner: Runner) -> None:
        self.runner = runner

    # -------------------------
    # Contract
    # -------------------------

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        raise NotImplementedError

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        raise NotImplementedError

    def validate(self, desc: ResourceDescriptor) -> None:
        """Reject descriptors that can never converge. Called at plan build."""

    def diff(self, desc: ResourceDescriptor, observed: ProbeResult) -> Diff:
        if not observed.exists:
            return {"exists": (True, observed.exists)}
        out: Diff = {}
        for name in self.attributes:
            if name not in desc.desired:
                continue
            want = normalize_value(desc.desired[name])
            got = normalize_value(observed.attributes.get(name))
            if want != got:
                out[name] = (want, got)
        return out

    def satisfied(self, desc: ResourceDescriptor, observed: ProbeResult) -> bool:
        return not self.diff(desc, observed)

    def expected(self, desc: ResourceDescriptor) -> Dict[str, Any]:
        d: Dict[str, Any] = {"exists": True}
        for name in self.attributes:
            if name in desc.desired:
                d[name] = normalize_value(desc.desired[name])
        return d

    # -------------------------
    # Helpers for subclasses
    # -------------------------

    def query(
        self, command: str, *args: Any, input: Optional[str] = None
    ) -> CommandResult:
        cp = self.runner.execute(command, [str(a) for a in args], input=input, mutating=False)
        if not cp.ok:
            raise ProbeError(
                f"{cp.display()} exited {cp.exit_code}", cp.argv, cp.stderr or cp.stdout
            )
        return cp

    def query_json(self, command: str, *args: Any) -> Any:
        cp = self.query(command, *args)
        try:
            return json.loads(cp.stdout or "null")
        except ValueError as ex:
            raise ProbeError(f"{cp.display()} returned malformed JSON", cp.argv, str(ex)) from ex

    def act(
        self,
        command: str,
        *args: Any,
        input: Optional[str] = None,
        secrets: Sequence[str] = (),
    ) -> CommandResult:
        cp = self.runner.execute(
            command, [str(a) for a in args], input=input, mutating=True, secrets=secrets
        )
        if not cp.ok:
            raise ActionError(cp)
        return cp


def normalize_value(v: Any) -> Any:
    """Make desired and observed values comparable.

    YAML gives ints and bools where CLIs print strings; lists of hosts or
    roles are compared as sorted lists.
    """
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return str(v)
    if isinstance(v, Mapping):
        return {str(k): normalize_value(x) for k, x in v.items()}
    if isinstance(v, (list, tuple, set, frozenset)):
        return sorted(normalize_value(x) for x in v)
    if isinstance(v, str):
        return v.strip()
    return v


class Registry:
    """Adapters keyed by the resource kind they own."""

    def __init__(self, adapters: Sequence[Adapter] = ()) -> None:
        self._by_kind: Dict[str, Adapter] = {}
        for a in adapters:
            self.register(a)

    def register(self, adapter: Adapter) -> None:
        if not adapter.kind:
            raise ConfigError(f"{type(adapter).__name__} declares no kind")
        self._by_kind[adapter.kind] = adapter

    def get(self, kind: str) -> Adapter:
        try:
            return self._by_kind[kind]
        except KeyError:
            known = ", ".join(sorted(self._by_kind))
            raise ConfigError(f"Unknown resource kind: {kind} (known: {known})") from None

    def __contains__(self, kind: str) -> bool:
        return kind in self._by_kind

    def __iter__(self) -> Iterator[Adapter]:
        return iter(self._by_kind.values())

    def kinds(self) -> Tuple[str, ...]:
        return tuple(sorted(self._by_kind))
