"""
Data model: what is declared, what is observed, and what a step concluded.
"""

from __future__ import annotations

import dataclasses
import enum
import types
from typing import Any, Dict, Mapping, Optional, Tuple

from .util import redact


class Status(enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SATISFIED = "SATISFIED"
    CONVERGED = "CONVERGED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"
    DRIFTED = "DRIFTED"

    @property
    def terminal(self) -> bool:
        return self not in (Status.PENDING, Status.RUNNING)

    @property
    def passed(self) -> bool:
        return self in (Status.SATISFIED, Status.CONVERGED)


def make_key(kind: str, identifier: str) -> str:
    return f"{kind}:{identifier}"


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return types.MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


@dataclasses.dataclass(frozen=True)
class ResourceDescriptor:
    kind: str
    identifier: str
    desired: Mapping[str, Any] = dataclasses.field(default_factory=dict)
    requires: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "desired", _freeze(dict(self.desired)))
        object.__setattr__(self, "requires", tuple(self.requires))

    @property
    def key(self) -> str:
        return make_key(self.kind, self.identifier)

    def get(self, name: str, default: Any = None) -> Any:
        return self.desired.get(name, default)


@dataclasses.dataclass(frozen=True)
class ProbeResult:
    exists: Optional[bool]
    attributes: Mapping[str, Any] = dataclasses.field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def missing(cls) -> "ProbeResult":
        return cls(exists=False)

    @classmethod
    def unknown(cls, error: str) -> "ProbeResult":
        return cls(exists=None, error=error)

    def observed(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"exists": self.exists}
        d.update(self.attributes)
        return d


@dataclasses.dataclass(frozen=True)
class StepOutcome:
    kind: str
    identifier: str
    status: Status
    detail: str = ""
    warnings: Tuple[str, ...] = ()
    expected: Mapping[str, Any] = dataclasses.field(default_factory=dict)
    observed: Mapping[str, Any] = dataclasses.field(default_factory=dict)
    attempts: int = 0

    @property
    def key(self) -> str:
        return make_key(self.kind, self.identifier)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "kind": self.kind,
            "id": self.identifier,
            "status": self.status.value,
            "detail": redact(self.detail),
        }
        if self.warnings:
            d["warnings"] = list(self.warnings)
        if self.expected or self.observed:
            d["expected"] = redact(dict(self.expected))
            d["observed"] = redact(dict(self.observed))
        if self.attempts:
            d["attempts"] = self.attempts
        return d
