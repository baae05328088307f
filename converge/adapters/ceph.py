"""
Ceph: pools, client keyrings and CephFS filesystems.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..errors import ActionError, ConfigError, ProbeError
from ..model import ProbeResult, ResourceDescriptor
from ..runner import CommandResult
from .base import Adapter

CAP_DAEMONS = ("mon", "mgr", "osd", "mds")


def _pool_application(entry: Dict[str, Any]) -> Optional[str]:
    apps = sorted((entry.get("application_metadata") or {}).keys())
    return ",".join(apps) if apps else None


class PoolAdapter(Adapter):
    kind = "pool"
    system = "ceph"
    attributes = ("pg_num", "size", "min_size", "application")

    def validate(self, desc: ResourceDescriptor) -> None:
        size = desc.get("size")
        if size is not None and int(size) < 1:
            raise ConfigError(f"{desc.key}: size must be >= 1")

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        pools = self.query_json("ceph", "osd", "pool", "ls", "detail", "-f", "json")
        if not isinstance(pools, list):
            raise ProbeError("ceph osd pool ls detail: expected a JSON list")
        for p in pools:
            if p.get("pool_name") == desc.identifier:
                return ProbeResult(
                    True,
                    {
                        "pg_num": p.get("pg_num"),
                        "size": p.get("size"),
                        "min_size": p.get("min_size"),
                        "application": _pool_application(p),
                    },
                )
        return ProbeResult.missing()

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        name = desc.identifier
        if not observed.exists:
            pg = desc.get("pg_num", 32)
            self.act("ceph", "osd", "pool", "create", name, pg)
            observed = ProbeResult(True, {"pg_num": pg})

        delta = self.diff(desc, observed)
        for attr in ("size", "min_size", "pg_num"):
            if attr not in delta:
                continue
            want = desc.get(attr)
            args = ["osd", "pool", "set", name, attr, want]
            if attr == "size" and int(want) == 1:
                args.append("--yes-i-really-mean-it")
            self.act("ceph", *args)

        if "application" in delta:
            self.act("ceph", "osd", "pool", "application", "enable", name, desc.get("application"))


class KeyringAdapter(Adapter):
    """A cephx entity with capability grants, plus its keyring file."""

    kind = "keyring"
    system = "ceph"
    attributes = ("caps", "path", "mode")
    blind_apply = False

    def path(self, desc: ResourceDescriptor) -> str:
        return desc.get("path") or f"/etc/ceph/ceph.{desc.identifier}.keyring"

    def expected(self, desc: ResourceDescriptor) -> Dict[str, Any]:
        d = super().expected(desc)
        d["path"] = self.path(desc)
        return d

    def diff(self, desc: ResourceDescriptor, observed: ProbeResult):
        if not observed.exists:
            return {"exists": (True, observed.exists)}
        out = super().diff(desc, observed)
        if observed.attributes.get("path") != self.path(desc):
            out["path"] = (self.path(desc), observed.attributes.get("path"))
        if "mode" in out:
            want, got = out["mode"]
            if str(want).lstrip("0") == str(got or "").lstrip("0"):
                del out["mode"]
        return out

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        dump = self.query_json("ceph", "auth", "ls", "-f", "json")
        entries = dump.get("auth_dump", []) if isinstance(dump, dict) else []
        entry = next((e for e in entries if e.get("entity") == desc.identifier), None)
        if entry is None:
            return ProbeResult.missing()

        attrs: Dict[str, Any] = {"caps": dict(entry.get("caps") or {})}
        path = self.path(desc)
        cp = self.runner.execute("stat", ["-c", "%a", path], mutating=False)
        if cp.ok:
            attrs["path"] = path
            attrs["mode"] = cp.stdout.strip()
        elif "No such file" not in cp.stderr:
            raise ProbeError(f"stat {path} exited {cp.exit_code}", cp.argv, cp.stderr)
        return ProbeResult(True, attrs)

    def _caps_args(self, desc: ResourceDescriptor) -> List[str]:
        caps = desc.get("caps") or {}
        args: List[str] = []
        for daemon in CAP_DAEMONS:
            if daemon in caps:
                args += [daemon, caps[daemon]]
        return args

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        entity = desc.identifier
        path = self.path(desc)
        if not observed.exists:
            self.act("ceph", "auth", "get-or-create", entity, *self._caps_args(desc), "-o", path)
        else:
            delta = self.diff(desc, observed)
            if "caps" in delta:
                self.act("ceph", "auth", "caps", entity, *self._caps_args(desc))
            if "path" in delta:
                self.act("ceph", "auth", "get", entity, "-o", path)
        if desc.get("mode") is not None:
            self.act("chmod", desc.get("mode"), path)


class FilesystemAdapter(Adapter):
    kind = "filesystem"
    system = "ceph"
    attributes = ("metadata_pool", "data_pool")

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        fss = self.query_json("ceph", "fs", "ls", "-f", "json") or []
        for fs in fss:
            if fs.get("name") == desc.identifier:
                data = fs.get("data_pools") or []
                return ProbeResult(
                    True,
                    {
                        "metadata_pool": fs.get("metadata_pool"),
                        "data_pool": data[0] if data else None,
                    },
                )
        return ProbeResult.missing()

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        if observed.exists:
            raise ActionError(
                CommandResult(["ceph", "fs", "new", desc.identifier], 1, "", ""),
                f"{desc.key}: pools of an existing filesystem cannot be changed in place",
            )
        self.act(
            "ceph", "fs", "new", desc.identifier,
            desc.get("metadata_pool"), desc.get("data_pool"),
        )
