"""
Small helpers shared by the reconcile, verify and recover commands.
"""

from __future__ import annotations

import re
import shlex
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

from .errors import ConfigError

SENSITIVE_KEYS = ("password", "pass", "secret", "key")
URL_CREDENTIALS = re.compile(r"(://[^:/@\s]+:)[^@\s]+@")
MASK = "********"


def eprint(*args: Any) -> None:
    print(*args, file=sys.stderr)


def shell_escape(s: str) -> str:
    return shlex.quote(s)


def shell_join(argv: Iterable[str]) -> str:
    return " ".join(shell_escape(str(a)) for a in argv)


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        import yaml  # type: ignore
    except Exception as ex:
        raise ConfigError(
            "PyYAML is required. Install with: python3 -m pip install pyyaml "
            "or your distro package (python3-yaml)."
        ) from ex

    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigError(f"Config not found: {p}")
    with open(p, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping/dict")
    return data


def cfg_get(cfg: Mapping[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for part in path.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            return default
        cur = cur[part]
    return cur


def require(cfg: Mapping[str, Any], path: str) -> Any:
    v = cfg_get(cfg, path, None)
    if v is None:
        raise ConfigError(f"Missing required config key: {path}")
    return v


def is_sensitive(name: str) -> bool:
    n = name.lower().rsplit(".", 1)[-1]
    return any(n == k or n.endswith("_" + k) for k in SENSITIVE_KEYS)


def redact(value: Any, name: str = "") -> Any:
    """Mask secrets in values shown to the operator.

    Mappings are walked recursively so that nested option blocks
    (ini sections, env maps) are masked key by key.
    """
    if name and is_sensitive(name):
        return MASK
    if isinstance(value, Mapping):
        return {k: redact(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    if isinstance(value, str):
        return URL_CREDENTIALS.sub(rf"\1{MASK}@", value)
    return value
