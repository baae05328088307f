"""
Error taxonomy.

Probe and action failures always carry the captured stderr; a
verification failure carries both the expected and the observed state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Optional, Sequence

if TYPE_CHECKING:
    from .runner import CommandResult


class ConvergeError(RuntimeError):
    pass


class ConfigError(ConvergeError):
    pass


class PlanError(ConvergeError):
    pass


class LockError(ConvergeError):
    pass


class ProbeError(ConvergeError):
    """Target system unreachable or its output could not be understood."""

    def __init__(
        self, message: str, argv: Sequence[str] = (), stderr: str = ""
    ) -> None:
        self.argv = list(argv)
        self.stderr = stderr
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class ActionError(ConvergeError):
    """The command ran and exited non-zero."""

    def __init__(self, result: "CommandResult", message: Optional[str] = None) -> None:
        self.result = result
        if message is None:
            message = (
                f"{result.display()} exited {result.exit_code}: "
                f"{result.mask(result.stderr or result.stdout or 'no output')}"
            )
        super().__init__(message)


class VerificationError(ConvergeError):
    """The action ran but the post-probe still shows an unsatisfied state."""

    def __init__(
        self, expected: Mapping[str, Any], observed: Mapping[str, Any]
    ) -> None:
        self.expected = dict(expected)
        self.observed = dict(observed)
        pairs = ", ".join(
            f"{k}: want {self.expected[k]!r} got {self.observed.get(k)!r}"
            for k in sorted(self.expected)
        )
        super().__init__(f"still unsatisfied after apply ({pairs})")
