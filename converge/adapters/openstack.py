"""
Keystone catalog entities and Neutron provider networking, through the
openstack CLI. Credentials come from the runner's OS_* environment.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from ..errors import ActionError, ConfigError, ProbeError
from ..model import ProbeResult, ResourceDescriptor
from ..runner import CommandResult
from .base import Adapter

INTERFACES = ("public", "internal", "admin")


class OpenStackAdapter(Adapter):
    system = "openstack"

    def rows(self, *args: Any) -> List[Dict[str, Any]]:
        rows = self.query_json("openstack", *args, "-f", "json")
        if not isinstance(rows, list):
            raise ProbeError(f"openstack {' '.join(map(str, args))}: expected a JSON list")
        return rows

    def find(self, rows: List[Dict[str, Any]], name: str, field: str = "Name") -> Optional[Dict[str, Any]]:
        return next((r for r in rows if r.get(field) == name), None)

    def refuse(self, desc: ResourceDescriptor, argv: List[str], why: str) -> ActionError:
        return ActionError(CommandResult(argv, 1, "", why), f"{desc.key}: {why}")


# -------------------------
# Keystone
# -------------------------


class ProjectAdapter(OpenStackAdapter):
    kind = "project"

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        rows = self.rows("project", "list", "--domain", desc.get("domain", "default"))
        return ProbeResult(True) if self.find(rows, desc.identifier) else ProbeResult.missing()

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        self.act(
            "openstack", "project", "create",
            "--domain", desc.get("domain", "default"),
            "--description", desc.get("description", f"{desc.identifier} project"),
            desc.identifier,
        )


class UserAdapter(OpenStackAdapter):
    """A Keystone user and its role on a project."""

    kind = "user"
    attributes = ("roles",)

    def validate(self, desc: ResourceDescriptor) -> None:
        if not desc.get("password"):
            raise ConfigError(f"{desc.key}: 'password' is required")

    def roles(self, desc: ResourceDescriptor) -> List[str]:
        roles = desc.get("roles")
        if roles is None:
            roles = [desc.get("role", "admin")]
        return list(roles)

    def expected(self, desc: ResourceDescriptor) -> Dict[str, Any]:
        return {"exists": True, "roles": sorted(self.roles(desc))}

    def diff(self, desc: ResourceDescriptor, observed: ProbeResult):
        if not observed.exists:
            return {"exists": (True, observed.exists)}
        want = sorted(self.roles(desc))
        got = sorted(observed.attributes.get("roles") or [])
        return {"roles": (want, got)} if any(r not in got for r in want) else {}

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        domain = desc.get("domain", "default")
        rows = self.rows("user", "list", "--domain", domain)
        if not self.find(rows, desc.identifier):
            return ProbeResult.missing()
        assignments = self.rows(
            "role", "assignment", "list",
            "--user", desc.identifier, "--user-domain", domain,
            "--project", desc.get("project", "service"), "--project-domain", domain,
            "--names",
        )
        return ProbeResult(True, {"roles": sorted(a.get("Role", "") for a in assignments)})

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        domain = desc.get("domain", "default")
        if not observed.exists:
            self.act(
                "openstack", "user", "create",
                "--domain", domain, "--password", desc.get("password"),
                desc.identifier,
                secrets=[desc.get("password")],
            )
        have = observed.attributes.get("roles") or []
        for role in self.roles(desc):
            if role in have:
                continue
            self.act(
                "openstack", "role", "add",
                "--project", desc.get("project", "service"), "--project-domain", domain,
                "--user", desc.identifier, "--user-domain", domain,
                role,
            )


class ServiceAdapter(OpenStackAdapter):
    kind = "service"
    attributes = ("type",)
    blind_apply = False

    def validate(self, desc: ResourceDescriptor) -> None:
        if not desc.get("type"):
            raise ConfigError(f"{desc.key}: 'type' is required")

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        row = self.find(self.rows("service", "list"), desc.identifier)
        if row is None:
            return ProbeResult.missing()
        return ProbeResult(True, {"type": row.get("Type")})

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        if observed.exists:
            raise self.refuse(
                desc, ["openstack", "service", "set", desc.identifier],
                "service exists with a different type; delete it first",
            )
        self.act(
            "openstack", "service", "create",
            "--name", desc.identifier,
            "--description", desc.get("description", desc.identifier),
            desc.get("type"),
        )


def endpoint_parts(desc: ResourceDescriptor) -> Tuple[str, str]:
    service, _, interface = desc.identifier.partition("/")
    return desc.get("service", service), desc.get("interface", interface)


class EndpointAdapter(OpenStackAdapter):
    """One catalog URL: identifier is "<service>/<interface>"."""

    kind = "endpoint"
    attributes = ("url", "region")
    blind_apply = False

    def validate(self, desc: ResourceDescriptor) -> None:
        service, interface = endpoint_parts(desc)
        if not service or interface not in INTERFACES:
            raise ConfigError(
                f"{desc.key}: identifier must look like <service>/<{'|'.join(INTERFACES)}>"
            )
        if not desc.get("url"):
            raise ConfigError(f"{desc.key}: 'url' is required")

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        service, interface = endpoint_parts(desc)
        region = desc.get("region")
        rows = [
            r for r in self.rows("endpoint", "list")
            if r.get("Service Name") == service and r.get("Interface") == interface
        ]
        if region:
            # an endpoint in another region does not count
            rows = [r for r in rows if r.get("Region") == region]
        if not rows:
            return ProbeResult.missing()
        row = rows[0]
        return ProbeResult(
            True, {"id": row.get("ID"), "url": row.get("URL"), "region": row.get("Region")}
        )

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        service, interface = endpoint_parts(desc)
        if observed.exists:
            args = ["endpoint", "set", "--url", desc.get("url")]
            if desc.get("region"):
                args += ["--region", desc.get("region")]
            self.act("openstack", *args, observed.attributes.get("id"))
            return
        args = ["endpoint", "create"]
        if desc.get("region"):
            args += ["--region", desc.get("region")]
        self.act("openstack", *args, service, interface, desc.get("url"))


# -------------------------
# Neutron
# -------------------------


class NetworkAdapter(OpenStackAdapter):
    kind = "network"
    attributes = ("external", "shared", "network_type", "physical_network")
    mutable = ("external", "shared")
    blind_apply = False

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        rows = self.rows("network", "list", "--name", desc.identifier)
        if not rows:
            return ProbeResult.missing()
        net = self.query_json("openstack", "network", "show", rows[0].get("ID"), "-f", "json")
        return ProbeResult(
            True,
            {
                "external": bool(net.get("router:external")),
                "shared": bool(net.get("shared")),
                "network_type": net.get("provider:network_type"),
                "physical_network": net.get("provider:physical_network"),
            },
        )

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        name = desc.identifier
        if not observed.exists:
            args = ["network", "create"]
            if desc.get("external"):
                args.append("--external")
            if desc.get("shared"):
                args.append("--share")
            if desc.get("network_type"):
                args += ["--provider-network-type", desc.get("network_type")]
            if desc.get("physical_network"):
                args += ["--provider-physical-network", desc.get("physical_network")]
            self.act("openstack", *args, name)
            return

        delta = self.diff(desc, observed)
        frozen = [k for k in delta if k not in self.mutable]
        if frozen:
            raise self.refuse(
                desc, ["openstack", "network", "set", name],
                f"provider attributes cannot be changed in place: {', '.join(sorted(frozen))}",
            )
        args = ["network", "set"]
        if "external" in delta:
            args.append("--external" if desc.get("external") else "--internal")
        if "shared" in delta:
            args.append("--share" if desc.get("shared") else "--no-share")
        self.act("openstack", *args, name)


class SubnetAdapter(OpenStackAdapter):
    kind = "subnet"
    attributes = ("cidr", "gateway", "dhcp")
    blind_apply = False

    def validate(self, desc: ResourceDescriptor) -> None:
        for k in ("network", "cidr"):
            if not desc.get(k):
                raise ConfigError(f"{desc.key}: '{k}' is required")

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        rows = self.rows("subnet", "list", "--name", desc.identifier)
        if not rows:
            return ProbeResult.missing()
        sub = self.query_json("openstack", "subnet", "show", rows[0].get("ID"), "-f", "json")
        return ProbeResult(
            True,
            {
                "cidr": sub.get("cidr"),
                "gateway": sub.get("gateway_ip"),
                "dhcp": bool(sub.get("enable_dhcp")),
            },
        )

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        name = desc.identifier
        if not observed.exists:
            args = [
                "subnet", "create",
                "--network", desc.get("network"),
                "--subnet-range", desc.get("cidr"),
            ]
            if desc.get("gateway"):
                args += ["--gateway", desc.get("gateway")]
            pool = desc.get("allocation_pool")
            if pool:
                args += ["--allocation-pool", f"start={pool['start']},end={pool['end']}"]
            for ns in desc.get("dns") or ():
                args += ["--dns-nameserver", ns]
            if desc.get("dhcp") is False:
                args.append("--no-dhcp")
            self.act("openstack", *args, name)
            return

        delta = self.diff(desc, observed)
        if "cidr" in delta:
            raise self.refuse(
                desc, ["openstack", "subnet", "set", name],
                "subnet range cannot be changed in place",
            )
        args = ["subnet", "set"]
        if "gateway" in delta:
            args += ["--gateway", desc.get("gateway")]
        if "dhcp" in delta:
            args.append("--dhcp" if desc.get("dhcp") else "--no-dhcp")
        self.act("openstack", *args, name)
