"""
Deployment configuration.

Everything a run needs is read once from the YAML file into an explicit
Settings value that is handed to the plan and the adapters; nothing is
read from process-wide state afterwards.

Example:

    global:
      region: RegionOne
    reconciliation:
      policy: best-effort          # or fail-fast
      retries: 1
      retry_interval_seconds: 5
      poll: {interval_seconds: 2, attempts: 15}
      sudo: true
      ssh: {host: osctl1, default_user: ops}
    openstack:
      env: {OS_AUTH_URL: http://192.168.2.9:5000/v3, OS_USERNAME: admin, ...}
    mysql:
      defaults_file: /root/.my.cnf
    stack: {...}                   # see converge.stack
    resources:
      - kind: pool
        id: volumes
        pg_num: 64
        size: 1
"""

from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Mapping, Optional

from .errors import ConfigError
from .model import ResourceDescriptor
from .runner import SSH, Runner
from .util import cfg_get, load_yaml

POLICIES = ("fail-fast", "best-effort")
RESERVED = ("kind", "id", "requires")


@dataclasses.dataclass
class RecoveryOptions:
    provider_bridge: str = "br-provider"
    integration_bridge: str = "br-int"
    physnet: str = "physnet1"
    encap_ip: Optional[str] = None
    system_id: Optional[str] = None
    neutron_db: str = "neutron"
    ovn_db_dir: str = "/var/lib/ovn"
    ovn_schema_dir: str = "/usr/share/ovn"
    neutron_units: List[str] = dataclasses.field(
        default_factory=lambda: ["neutron-server", "neutron-ovn-metadata-agent"]
    )
    max_escalations: int = 2


@dataclasses.dataclass
class Settings:
    policy: str = "fail-fast"
    retries: int = 0
    retry_interval: float = 5.0
    poll_interval: float = 2.0
    poll_attempts: int = 15
    command_timeout: int = 120
    sudo: bool = False
    dry_run: bool = False
    verbose: bool = False
    lock_dir: str = "/run/lock/stackconverge"
    region: str = "RegionOne"
    ssh: Optional[SSH] = None
    openstack_env: Dict[str, str] = dataclasses.field(default_factory=dict)
    mysql_defaults_file: Optional[str] = None
    mysql_host: Optional[str] = None
    mysql_user: Optional[str] = None
    recovery: RecoveryOptions = dataclasses.field(default_factory=RecoveryOptions)

    @property
    def fail_fast(self) -> bool:
        return self.policy == "fail-fast"


def _int(cfg: Mapping[str, Any], path: str, default: int) -> int:
    v = cfg_get(cfg, path, default)
    try:
        return int(v)
    except (TypeError, ValueError):
        raise ConfigError(f"{path} must be an integer, got {v!r}") from None


def _float(cfg: Mapping[str, Any], path: str, default: float) -> float:
    v = cfg_get(cfg, path, default)
    try:
        return float(v)
    except (TypeError, ValueError):
        raise ConfigError(f"{path} must be a number, got {v!r}") from None


def load_settings(cfg: Mapping[str, Any], **overrides: Any) -> Settings:
    """Build Settings from the parsed YAML; CLI flags win via overrides."""
    policy = cfg_get(cfg, "reconciliation.policy", "fail-fast")
    if policy not in POLICIES:
        raise ConfigError(
            f"reconciliation.policy must be one of {', '.join(POLICIES)}, got {policy!r}"
        )

    ssh = None
    ssh_host = cfg_get(cfg, "reconciliation.ssh.host", None)
    if ssh_host:
        ssh = SSH(
            host=ssh_host,
            user=cfg_get(cfg, "reconciliation.ssh.default_user", "ops"),
            port=_int(cfg, "reconciliation.ssh.port", 22),
            timeout=_int(cfg, "reconciliation.ssh.connect_timeout_seconds", 8),
            proxy_jump=cfg_get(cfg, "reconciliation.ssh.proxy_jump", None),
        )

    os_env = cfg_get(cfg, "openstack.env", {}) or {}
    if not isinstance(os_env, Mapping):
        raise ConfigError("openstack.env must be a mapping of OS_* variables")

    rec = cfg_get(cfg, "recovery", {}) or {}
    if not isinstance(rec, Mapping):
        raise ConfigError("recovery must be a mapping")
    known = {f.name for f in dataclasses.fields(RecoveryOptions)}
    unknown = sorted(set(rec) - known)
    if unknown:
        raise ConfigError(f"recovery: unknown keys: {', '.join(unknown)}")
    recovery = RecoveryOptions(**dict(rec))
    if recovery.encap_ip is None:
        recovery.encap_ip = cfg_get(cfg, "stack.controller.ip", None)
    if recovery.system_id is None:
        recovery.system_id = cfg_get(cfg, "stack.controller.hostname", None)

    settings = Settings(
        policy=policy,
        retries=_int(cfg, "reconciliation.retries", 0),
        retry_interval=_float(cfg, "reconciliation.retry_interval_seconds", 5.0),
        poll_interval=_float(cfg, "reconciliation.poll.interval_seconds", 2.0),
        poll_attempts=_int(cfg, "reconciliation.poll.attempts", 15),
        command_timeout=_int(cfg, "reconciliation.command_timeout_seconds", 120),
        sudo=bool(cfg_get(cfg, "reconciliation.sudo", False)),
        lock_dir=cfg_get(cfg, "reconciliation.lock_dir", "/run/lock/stackconverge"),
        region=cfg_get(cfg, "global.region", "RegionOne"),
        ssh=ssh,
        openstack_env={str(k): str(v) for k, v in os_env.items()},
        mysql_defaults_file=cfg_get(cfg, "mysql.defaults_file", None),
        mysql_host=cfg_get(cfg, "mysql.host", None),
        mysql_user=cfg_get(cfg, "mysql.user", None),
        recovery=recovery,
    )
    for k, v in overrides.items():
        if v is None:
            continue
        if not hasattr(settings, k):
            raise ConfigError(f"unknown setting: {k}")
        setattr(settings, k, v)

    if settings.retries < 0:
        raise ConfigError("reconciliation.retries must be >= 0")
    if settings.poll_attempts < 1:
        raise ConfigError("reconciliation.poll.attempts must be >= 1")
    return settings


def make_runner(settings: Settings) -> Runner:
    return Runner(
        sudo=settings.sudo,
        timeout=settings.command_timeout,
        dry_run=settings.dry_run,
        verbose=settings.verbose,
        ssh=settings.ssh,
    )


# -------------------------
# Resources
# -------------------------


def parse_resource(entry: Any) -> ResourceDescriptor:
    if not isinstance(entry, Mapping):
        raise ConfigError(f"Invalid resource entry: {entry!r}")
    kind = entry.get("kind")
    ident = entry.get("id")
    if not kind or ident in (None, ""):
        raise ConfigError(f"Resource entry needs 'kind' and 'id': {entry!r}")
    requires = entry.get("requires") or []
    if isinstance(requires, str):
        requires = [requires]
    if not isinstance(requires, list):
        raise ConfigError(f"{kind}:{ident}: 'requires' must be a list")
    desired = {k: v for k, v in entry.items() if k not in RESERVED}
    return ResourceDescriptor(str(kind), str(ident), desired, tuple(str(r) for r in requires))


def load_descriptors(cfg: Mapping[str, Any]) -> List[ResourceDescriptor]:
    from . import stack

    out: List[ResourceDescriptor] = []
    stack_cfg = cfg.get("stack")
    if stack_cfg:
        out.extend(stack.build(cfg))
    resources = cfg.get("resources", []) or []
    if not isinstance(resources, list):
        raise ConfigError("config.resources must be a list")
    out.extend(parse_resource(e) for e in resources)
    return out


def open_config(path: str, **overrides: Any):
    cfg = load_yaml(path)
    return cfg, load_settings(cfg, **overrides)
