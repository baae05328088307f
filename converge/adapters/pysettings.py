"""
Django-style settings modules (Horizon's local_settings.py).

Top-level assignments are read with ast, never imported. A change
rewrites only the assignment lines that differ, appends the ones that
are absent, and installs the result through a temp file. An optional
unit is reloaded afterwards so the web server picks the file up.
"""

from __future__ import annotations

import ast
import pprint
from typing import Any, Dict, Mapping, Optional, Tuple

from ..errors import ActionError, ConfigError, ProbeError
from ..model import ProbeResult, ResourceDescriptor
from ..runner import CommandResult
from ..util import shell_escape
from .base import Adapter, Diff, normalize_value

# name -> (first line, last line), 1-based and inclusive
Spans = Dict[str, Tuple[int, int]]


def parse_settings(text: str) -> Tuple[Dict[str, Any], Spans]:
    """Values and source spans of every plain NAME = <value> at module level.

    A name assigned more than once keeps its last assignment, as Python
    would. Values that are not literals are kept as "<expr SOURCE>" so they
    never compare equal to a desired literal.
    """
    tree = ast.parse(text)
    values: Dict[str, Any] = {}
    spans: Spans = {}
    for node in tree.body:
        if not isinstance(node, ast.Assign) or len(node.targets) != 1:
            continue
        target = node.targets[0]
        if not isinstance(target, ast.Name):
            continue
        try:
            value = ast.literal_eval(node.value)
        except (ValueError, TypeError):
            value = f"<expr {ast.get_source_segment(text, node.value)}>"
        values[target.id] = value
        spans[target.id] = (node.lineno, node.end_lineno or node.lineno)
    return values, spans


def thaw(value: Any) -> Any:
    """Plain dicts and lists back from a frozen descriptor value."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


def render(name: str, value: Any) -> str:
    return f"{name} = {pprint.pformat(value, sort_dicts=False)}"


def rewrite(text: str, settings: Mapping[str, Any], spans: Spans) -> str:
    lines = text.splitlines()
    # replace from the bottom up so earlier spans keep their line numbers
    for name in sorted((n for n in settings if n in spans), key=lambda n: -spans[n][0]):
        first, last = spans[name]
        lines[first - 1:last] = render(name, settings[name]).splitlines()
    added = [render(n, v) for n, v in settings.items() if n not in spans]
    if added:
        lines += [""] + added
    return "\n".join(lines) + "\n"


class PythonSettingsAdapter(Adapter):
    """Identifier is the file path; desired 'settings' maps NAME -> literal."""

    kind = "python-settings"
    system = "config"
    # apply() needs the current file to rewrite it
    blind_apply = False

    def validate(self, desc: ResourceDescriptor) -> None:
        settings = desc.get("settings")
        if not isinstance(settings, Mapping) or not settings:
            raise ConfigError(f"{desc.key}: 'settings' must be a non-empty mapping")
        for name in settings:
            if not str(name).isidentifier():
                raise ConfigError(f"{desc.key}: {name!r} is not a Python name")

    def wanted(self, desc: ResourceDescriptor) -> Dict[str, Any]:
        return {str(k): thaw(v) for k, v in desc.get("settings").items()}

    def expected(self, desc: ResourceDescriptor) -> Dict[str, Any]:
        d: Dict[str, Any] = {"exists": True}
        d.update(self.wanted(desc))
        return d

    def diff(self, desc: ResourceDescriptor, observed: ProbeResult) -> Diff:
        if not observed.exists:
            return {"exists": (True, observed.exists)}
        out: Diff = {}
        for name, want in self.wanted(desc).items():
            got = observed.attributes.get(name)
            if normalize_value(want) != normalize_value(got):
                out[name] = (want, got)
        return out

    def read(self, path: str) -> Optional[str]:
        cp = self.runner.execute("cat", [path], mutating=False)
        if cp.ok:
            return cp.stdout
        if "No such file" in cp.stderr:
            return None
        raise ProbeError(f"cat {path} exited {cp.exit_code}", cp.argv, cp.stderr)

    def parse(self, path: str, text: str) -> Tuple[Dict[str, Any], Spans]:
        try:
            return parse_settings(text)
        except SyntaxError as ex:
            raise ProbeError(f"{path} is not valid Python", ["cat", path], str(ex)) from ex

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        text = self.read(desc.identifier)
        if text is None:
            return ProbeResult.missing()
        values, _ = self.parse(desc.identifier, text)
        return ProbeResult(True, values)

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        path = desc.identifier
        text = self.read(path)
        if text is None:
            # the file comes with the dashboard package; a stub would not run
            raise ActionError(
                CommandResult(["cat", path], 1, "", "No such file or directory"),
                f"{desc.key}: file is missing; install the package that ships it",
            )
        _, spans = self.parse(path, text)
        delta = self.diff(desc, observed)
        changed = {n: v for n, v in self.wanted(desc).items() if n in delta}

        mode = str(desc.get("mode", "0644"))
        script = (
            'set -eu; tmp="$(mktemp)"; trap \'rm -f "$tmp"\' EXIT; cat > "$tmp"; '
            f'install -m {shell_escape(mode)} "$tmp" {shell_escape(path)}'
        )
        self.act("sh", "-c", script, input=rewrite(text, changed, spans))

        unit = desc.get("reload")
        if unit:
            self.act("systemctl", "reload", unit)
