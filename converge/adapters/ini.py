"""
INI-style service configuration (nova.conf, neutron.conf, ...).

The file is read once per probe and parsed locally; changes go through
crudini so untouched options, comments and ordering are preserved.
"""

from __future__ import annotations

import configparser
from typing import Any, Dict, Mapping

from ..errors import ConfigError, ProbeError
from ..model import ProbeResult, ResourceDescriptor
from ..util import is_sensitive
from .base import Adapter, Diff


def ini_value(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (list, tuple)):
        return ",".join(ini_value(x) for x in v)
    return str(v)


def flatten(options: Mapping[str, Mapping[str, Any]]) -> Dict[str, str]:
    return {
        f"{section}.{key}": ini_value(value)
        for section, block in options.items()
        for key, value in block.items()
    }


def parse_ini(text: str) -> Dict[str, str]:
    """Options as "section.key", each section read literally.

    [DEFAULT] is parsed as an ordinary section so its values do not leak
    into, or hide, the options of other sections.
    """
    cp = configparser.ConfigParser(
        strict=False, interpolation=None, delimiters=("=",), default_section="\0"
    )
    cp.optionxform = str  # type: ignore[assignment]
    cp.read_string(text)
    return {
        f"{section}.{key}": value
        for section in cp.sections()
        for key, value in cp.items(section, raw=True)
    }


class IniAdapter(Adapter):
    """Identifier is the file path; desired 'options' maps section -> key -> value."""

    kind = "ini"
    system = "config"

    def validate(self, desc: ResourceDescriptor) -> None:
        opts = desc.get("options")
        if not isinstance(opts, Mapping) or not opts:
            raise ConfigError(f"{desc.key}: 'options' must be a non-empty mapping of sections")
        for section, block in opts.items():
            if not isinstance(block, Mapping):
                raise ConfigError(f"{desc.key}: section [{section}] must be a mapping")

    def expected(self, desc: ResourceDescriptor) -> Dict[str, Any]:
        d: Dict[str, Any] = {"exists": True}
        d.update(flatten(desc.get("options")))
        return d

    def diff(self, desc: ResourceDescriptor, observed: ProbeResult) -> Diff:
        if not observed.exists:
            return {"exists": (True, observed.exists)}
        out: Diff = {}
        for name, want in flatten(desc.get("options")).items():
            got = observed.attributes.get(name)
            if got is None or got.strip() != want.strip():
                out[name] = (want, got)
        return out

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        path = desc.identifier
        cp = self.runner.execute("cat", [path], mutating=False)
        if not cp.ok:
            if "No such file" in cp.stderr:
                return ProbeResult.missing()
            raise ProbeError(f"cat {path} exited {cp.exit_code}", cp.argv, cp.stderr)
        try:
            values = parse_ini(cp.stdout)
        except configparser.Error as ex:
            raise ProbeError(f"{path} is not valid INI", cp.argv, str(ex)) from ex
        return ProbeResult(True, values)

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        path = desc.identifier
        delta = self.diff(desc, observed)
        wanted = flatten(desc.get("options"))
        names = wanted if "exists" in delta else delta
        for name in names:
            section, _, key = name.partition(".")
            secrets = [wanted[name]] if is_sensitive(key) else []
            self.act("crudini", "--set", path, section, key, wanted[name], secrets=secrets)
