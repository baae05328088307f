"""
RabbitMQ: the message-bus account every OpenStack service logs in with.
"""

from __future__ import annotations

from typing import Any, Dict

from ..errors import ConfigError
from ..model import ProbeResult, ResourceDescriptor
from .base import Adapter

ALL = ".*"


class RabbitUserAdapter(Adapter):
    kind = "rabbitmq-user"
    system = "rabbitmq"
    attributes = ("permissions",)

    def validate(self, desc: ResourceDescriptor) -> None:
        if not desc.get("password"):
            raise ConfigError(f"{desc.key}: 'password' is required")

    def vhost(self, desc: ResourceDescriptor) -> str:
        return desc.get("vhost", "/")

    def wanted(self, desc: ResourceDescriptor) -> Dict[str, str]:
        perms = desc.get("permissions") or {}
        return {
            "configure": perms.get("configure", ALL),
            "write": perms.get("write", ALL),
            "read": perms.get("read", ALL),
        }

    def expected(self, desc: ResourceDescriptor) -> Dict[str, Any]:
        return {"exists": True, "permissions": self.wanted(desc)}

    def diff(self, desc: ResourceDescriptor, observed: ProbeResult):
        if not observed.exists:
            return {"exists": (True, observed.exists)}
        want = self.wanted(desc)
        got = observed.attributes.get("permissions")
        return {} if got == want else {"permissions": (want, got)}

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        users = self.query_json("rabbitmqctl", "list_users", "--formatter", "json") or []
        if not any(u.get("user") == desc.identifier for u in users):
            return ProbeResult.missing()
        perms = self.query_json(
            "rabbitmqctl", "list_user_permissions", desc.identifier, "--formatter", "json"
        ) or []
        row = next((p for p in perms if p.get("vhost") == self.vhost(desc)), None)
        got = None
        if row is not None:
            got = {k: row.get(k) for k in ("configure", "write", "read")}
        return ProbeResult(True, {"permissions": got})

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        user = desc.identifier
        if not observed.exists:
            # read from stdin when omitted, so it stays off the process list
            password = desc.get("password")
            self.act("rabbitmqctl", "add_user", user, input=f"{password}\n", secrets=[password])
        p = self.wanted(desc)
        self.act(
            "rabbitmqctl", "set_permissions", "-p", self.vhost(desc), user,
            p["configure"], p["write"], p["read"],
        )
