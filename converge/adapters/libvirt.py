"""
libvirt: the secret that lets nova-compute attach RBD volumes.

The secret's value is the cephx key of the client it names. The key is
read from ceph on demand and handed to virsh on stdin; it never appears
on a command line or in a probe result.
"""

from __future__ import annotations

from typing import Any, Dict, Optional
from xml.etree import ElementTree

from ..errors import ConfigError, ProbeError
from ..model import ProbeResult, ResourceDescriptor
from .base import Adapter

NOT_FOUND = ("no secret with matching uuid", "Secret not found")
NO_VALUE = ("does not have a value", "secret value not found")


def secret_xml(uuid: str, usage: str) -> str:
    root = ElementTree.Element("secret", ephemeral="no", private="no")
    ElementTree.SubElement(root, "uuid").text = uuid
    use = ElementTree.SubElement(root, "usage", type="ceph")
    ElementTree.SubElement(use, "name").text = usage
    return ElementTree.tostring(root, encoding="unicode") + "\n"


def secret_usage(xml: str) -> Optional[str]:
    try:
        root = ElementTree.fromstring(xml)
    except ElementTree.ParseError as ex:
        raise ProbeError("virsh secret-dumpxml returned malformed XML", (), str(ex)) from ex
    return root.findtext("./usage[@type='ceph']/name")


class LibvirtSecretAdapter(Adapter):
    """Identifier is the secret UUID; 'client' is the ceph entity whose key it holds."""

    kind = "libvirt-secret"
    system = "libvirt"
    attributes = ("usage", "value_current")

    def validate(self, desc: ResourceDescriptor) -> None:
        if len(desc.identifier) != 36 or desc.identifier.count("-") != 4:
            raise ConfigError(f"{desc.key}: identifier must be a UUID")

    def client(self, desc: ResourceDescriptor) -> str:
        return desc.get("client", "client.cinder")

    def usage(self, desc: ResourceDescriptor) -> str:
        return desc.get("usage") or f"{self.client(desc)} secret"

    def expected(self, desc: ResourceDescriptor) -> Dict[str, Any]:
        return {"exists": True, "usage": self.usage(desc), "value_current": True}

    def diff(self, desc: ResourceDescriptor, observed: ProbeResult):
        if not observed.exists:
            return {"exists": (True, observed.exists)}
        out = {}
        for name, want in self.expected(desc).items():
            got = observed.attributes.get(name)
            if name != "exists" and got != want:
                out[name] = (want, got)
        return out

    def ceph_key(self, desc: ResourceDescriptor) -> str:
        key = self.query("ceph", "auth", "get-key", self.client(desc)).stdout.strip()
        if not key:
            raise ProbeError(f"ceph auth get-key {self.client(desc)} returned nothing")
        return key

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        uuid = desc.identifier
        dump = self.runner.execute("virsh", ["secret-dumpxml", uuid], mutating=False)
        if not dump.ok:
            if any(s in dump.stderr for s in NOT_FOUND):
                return ProbeResult.missing()
            raise ProbeError(
                f"virsh secret-dumpxml {uuid} exited {dump.exit_code}", dump.argv, dump.stderr
            )

        value = self.runner.execute("virsh", ["secret-get-value", uuid], mutating=False)
        if value.ok:
            current = value.stdout.strip() == self.ceph_key(desc)
        elif any(s in value.stderr for s in NO_VALUE):
            current = False
        else:
            # stderr only; stdout could hold part of the value
            raise ProbeError(
                f"virsh secret-get-value {uuid} exited {value.exit_code}", value.argv, value.stderr
            )

        return ProbeResult(True, {"usage": secret_usage(dump.stdout), "value_current": current})

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        uuid = desc.identifier
        delta = self.diff(desc, observed)
        if "exists" in delta or "usage" in delta:
            self.act(
                "virsh", "secret-define", "--file", "/dev/stdin",
                input=secret_xml(uuid, self.usage(desc)),
            )
        if "exists" in delta or "value_current" in delta:
            key = self.ceph_key(desc)
            self.act(
                "virsh", "secret-set-value", "--secret", uuid, "--file", "/dev/stdin",
                input=key, secrets=[key],
            )
