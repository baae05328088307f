"""
All-in-one stack: expand the compact ``stack:`` section into resources.

The section describes one controller that also runs compute, storage and
networking. ``build()`` turns it into the same pools, databases, catalog
entries, config options, bridges and units that a hand-run install would
create, wired together with prerequisites so that, for example, nova's
units start only after its databases, keystone user and config exist.

    stack:
      controller: {hostname: osctl1, ip: 192.168.2.9}
      services: [glance, placement, nova, neutron, cinder, horizon]
      passwords:
        keystone_db: ...
        glance: ...
        glance_db: ...
        rabbit: ...
        metadata_secret: ...
      ceph: {replication: 1, cephfs: false, secret_uuid: 457eb676-...}
      horizon: {time_zone: UTC}
      network:
        provider_bridge: br-provider
        nic: enp1s0
        physnet: physnet1
        provider:
          name: public
          subnet: public-subnet
          cidr: 192.168.2.0/24
          gateway: 192.168.2.1
          allocation_pool: {start: 192.168.2.100, end: 192.168.2.199}
          dns: [1.1.1.1]
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import ConfigError
from .model import ResourceDescriptor, make_key
from .util import cfg_get, require

SERVICES = ("glance", "placement", "nova", "neutron", "cinder", "horizon")

# service -> (catalog name, type, description, url template)
CATALOG = {
    "glance": ("glance", "image", "OpenStack Image", "http://{ip}:9292"),
    "placement": ("placement", "placement", "Placement API", "http://{ip}:8778"),
    "nova": ("nova", "compute", "OpenStack Compute", "http://{ip}:8774/v2.1"),
    "neutron": ("neutron", "network", "OpenStack Networking", "http://{ip}:9696"),
    "cinder": ("cinderv3", "volumev3", "OpenStack Block Storage",
               "http://{ip}:8776/v3/%(project_id)s"),
}

DATABASES = {
    "keystone": ("keystone",),
    "glance": ("glance",),
    "placement": ("placement",),
    "nova": ("nova_api", "nova", "nova_cell0"),
    "neutron": ("neutron",),
    "cinder": ("cinder",),
}

UNITS = {
    "glance": ("glance-api",),
    "placement": (),
    "nova": ("nova-api", "nova-scheduler", "nova-conductor", "nova-novncproxy", "nova-compute"),
    "neutron": ("neutron-server", "neutron-ovn-metadata-agent"),
    "cinder": ("cinder-api", "cinder-scheduler", "cinder-volume"),
}

CONFIG_FILES = {
    "glance": "/etc/glance/glance-api.conf",
    "placement": "/etc/placement/placement.conf",
    "nova": "/etc/nova/nova.conf",
    "neutron": "/etc/neutron/neutron.conf",
    "cinder": "/etc/cinder/cinder.conf",
}
ML2_CONF = "/etc/neutron/plugins/ml2/ml2_conf.ini"

# pool -> pg_num
RBD_POOLS = {"volumes": 64, "images": 64, "backups": 32, "vms": 32}

RBD_CAPS = {
    "client.glance": "profile rbd pool=images",
    "client.cinder": (
        "profile rbd pool=volumes, profile rbd pool=vms, "
        "profile rbd pool=backups, profile rbd-read-only pool=images"
    ),
    "client.nova": "profile rbd pool=vms, profile rbd-read-only pool=images",
}

INFRA_UNITS = ("mariadb", "rabbitmq-server", "memcached", "apache2")

HORIZON_SETTINGS = "/etc/openstack-dashboard/local_settings.py"

OVN_NB = "unix:/var/run/ovn/ovnnb_db.sock"
OVN_SB = "unix:/var/run/ovn/ovnsb_db.sock"


class StackBuilder:
    def __init__(self, cfg: Mapping[str, Any]) -> None:
        self.cfg = cfg
        self.ip = str(require(cfg, "stack.controller.ip"))
        self.hostname = str(require(cfg, "stack.controller.hostname"))
        self.region = cfg_get(cfg, "global.region", "RegionOne")
        self.rabbit_user = cfg_get(cfg, "stack.rabbit.user", "openstack")
        self.physnet = cfg_get(cfg, "stack.network.physnet", "physnet1")
        self.provider_bridge = cfg_get(cfg, "stack.network.provider_bridge", "br-provider")
        self.secret_uuid = cfg_get(cfg, "stack.ceph.secret_uuid", None)

        services = cfg_get(cfg, "stack.services", list(SERVICES))
        if not isinstance(services, list):
            raise ConfigError("stack.services must be a list")
        unknown = [s for s in services if s not in SERVICES]
        if unknown:
            raise ConfigError(
                f"stack.services: unknown services {', '.join(unknown)} "
                f"(known: {', '.join(SERVICES)})"
            )
        self.services: List[str] = [s for s in SERVICES if s in services]
        # services with a catalog entry, a database and their own units
        self.apis: List[str] = [s for s in self.services if s in CATALOG]
        self.out: List[ResourceDescriptor] = []

    # -------------------------
    # Helpers
    # -------------------------

    def add(self, kind: str, ident: str, requires: Iterable[str] = (), **desired: Any) -> str:
        desired = {k: v for k, v in desired.items() if v is not None}
        self.out.append(ResourceDescriptor(kind, ident, desired, tuple(requires)))
        return make_key(kind, ident)

    def password(self, name: str) -> str:
        return str(require(self.cfg, f"stack.passwords.{name}"))

    def keystone_url(self) -> str:
        return f"http://{self.ip}:5000"

    def db_url(self, user: str, db: str) -> str:
        return f"mysql+pymysql://{user}:{self.password(f'{user}_db')}@{self.ip}/{db}"

    def transport_url(self) -> str:
        return f"rabbit://{self.rabbit_user}:{self.password('rabbit')}@{self.ip}:5672/"

    def service_auth(self, user: str) -> Dict[str, str]:
        """Options shared by [keystone_authtoken] and the cross-service sections."""
        return {
            "auth_url": self.keystone_url(),
            "auth_type": "password",
            "project_domain_name": "Default",
            "user_domain_name": "Default",
            "project_name": "service",
            "username": user,
            "password": self.password(user),
            "region_name": self.region,
        }

    def authtoken(self, user: str) -> Dict[str, str]:
        d = {
            "www_authenticate_uri": self.keystone_url(),
            "memcached_servers": "localhost:11211",
        }
        d.update(self.service_auth(user))
        return d

    # -------------------------
    # Layers
    # -------------------------

    def infra(self) -> None:
        for unit in INFRA_UNITS:
            self.add("unit", unit, state="active", enabled=True)
        self.add(
            "rabbitmq-user", self.rabbit_user, ["unit:rabbitmq-server"],
            password=self.password("rabbit"),
        )

    def ceph(self) -> None:
        size = cfg_get(self.cfg, "stack.ceph.replication", 1)
        mode = str(cfg_get(self.cfg, "stack.ceph.keyring_mode", "600"))
        for pool, pg in RBD_POOLS.items():
            self.add("pool", pool, pg_num=pg, size=size, application="rbd")

        for entity, osd in RBD_CAPS.items():
            pools = [f"pool:{p}" for p in RBD_POOLS if f"pool={p}" in osd]
            self.add(
                "keyring", entity, pools,
                caps={"mon": "profile rbd", "osd": osd}, mode=mode,
            )

        if cfg_get(self.cfg, "stack.ceph.cephfs", False):
            self.add("pool", "cephfs_metadata", pg_num=32, size=size)
            self.add("pool", "cephfs_data", pg_num=64, size=size)
            self.add(
                "filesystem", "cephfs", ["pool:cephfs_metadata", "pool:cephfs_data"],
                metadata_pool="cephfs_metadata", data_pool="cephfs_data",
            )

    def databases(self) -> None:
        for service in ["keystone"] + self.apis:
            for db in DATABASES[service]:
                self.add(
                    "database", db, ["unit:mariadb"],
                    user=service, password=self.password(f"{service}_db"),
                )

    def identity(self) -> None:
        self.add(
            "project", "service", ["unit:apache2", "unit:memcached", "database:keystone"],
            description="Service Project",
        )
        for service in self.apis:
            name, stype, description, url = CATALOG[service]
            self.add(
                "user", service, ["project:service"],
                password=self.password(service), roles=["admin"],
            )
            svc = self.add("service", name, ["project:service"], type=stype, description=description)
            for interface in ("public", "internal", "admin"):
                self.add(
                    "endpoint", f"{name}/{interface}", [svc],
                    url=url.format(ip=self.ip), region=self.region,
                )

    def options(self, service: str) -> Dict[str, Dict[str, Any]]:
        ip = self.ip
        glance_url = f"http://{ip}:9292"
        if service == "glance":
            return {
                "database": {"connection": self.db_url("glance", "glance")},
                "keystone_authtoken": self.authtoken("glance"),
                "paste_deploy": {"flavor": "keystone"},
                "glance_store": {
                    "stores": "rbd",
                    "default_store": "rbd",
                    "rbd_store_pool": "images",
                    "rbd_store_user": "glance",
                    "rbd_store_ceph_conf": "/etc/ceph/ceph.conf",
                    "rbd_store_chunk_size": "8",
                },
            }
        if service == "placement":
            return {
                "placement_database": {"connection": self.db_url("placement", "placement")},
                "api": {"auth_strategy": "keystone"},
                "keystone_authtoken": self.authtoken("placement"),
            }
        if service == "nova":
            opts: Dict[str, Dict[str, Any]] = {
                "DEFAULT": {"my_ip": ip, "transport_url": self.transport_url()},
                "api": {"auth_strategy": "keystone"},
                "api_database": {"connection": self.db_url("nova", "nova_api")},
                "database": {"connection": self.db_url("nova", "nova")},
                "keystone_authtoken": self.authtoken("nova"),
                "vnc": {
                    "enabled": True,
                    "server_listen": "0.0.0.0",
                    "server_proxyclient_address": ip,
                    "novncproxy_base_url": f"http://{ip}:6080/vnc_auto.html",
                },
                "glance": {"api_servers": glance_url},
                "oslo_concurrency": {"lock_path": "/var/lib/nova/tmp"},
                "libvirt": {
                    "virt_type": cfg_get(self.cfg, "stack.nova.virt_type", "kvm"),
                    "images_type": "rbd",
                    "images_rbd_pool": "vms",
                    "images_rbd_ceph_conf": "/etc/ceph/ceph.conf",
                    "rbd_user": "nova",
                },
            }
            if self.secret_uuid:
                opts["libvirt"]["rbd_secret_uuid"] = self.secret_uuid
            if "placement" in self.services:
                opts["placement"] = self.service_auth("placement")
            if "neutron" in self.services:
                neutron = self.service_auth("neutron")
                neutron["service_metadata_proxy"] = True
                neutron["metadata_proxy_shared_secret"] = self.password("metadata_secret")
                opts["neutron"] = neutron
            return opts
        if service == "neutron":
            opts = {
                "DEFAULT": {
                    "core_plugin": "ml2",
                    "service_plugins": "ovn-router",
                    "transport_url": self.transport_url(),
                    "auth_strategy": "keystone",
                    "notify_nova_on_port_status_changes": True,
                    "notify_nova_on_port_data_changes": True,
                    "allow_overlapping_ips": True,
                },
                "database": {"connection": self.db_url("neutron", "neutron")},
                "keystone_authtoken": self.authtoken("neutron"),
                "oslo_concurrency": {"lock_path": "/var/lib/neutron/tmp"},
            }
            if "nova" in self.services:
                opts["nova"] = self.service_auth("nova")
            return opts
        if service == "cinder":
            opts = {
                "DEFAULT": {
                    "transport_url": self.transport_url(),
                    "auth_strategy": "keystone",
                    "my_ip": ip,
                    "enabled_backends": "ceph",
                    "glance_api_servers": glance_url,
                },
                "database": {"connection": self.db_url("cinder", "cinder")},
                "keystone_authtoken": self.authtoken("cinder"),
                "oslo_concurrency": {"lock_path": "/var/lib/cinder/tmp"},
                "ceph": {
                    "volume_driver": "cinder.volume.drivers.rbd.RBDDriver",
                    "volume_backend_name": "ceph",
                    "rbd_pool": "volumes",
                    "rbd_ceph_conf": "/etc/ceph/ceph.conf",
                    "rbd_user": "cinder",
                },
            }
            if self.secret_uuid:
                opts["ceph"]["rbd_secret_uuid"] = self.secret_uuid
            return opts
        raise ConfigError(f"no configuration known for service {service}")

    def config(self) -> None:
        for service in self.apis:
            requires = [f"database:{db}" for db in DATABASES[service]]
            requires.append(f"user:{service}")
            if service in ("nova", "neutron", "cinder"):
                requires.append(f"rabbitmq-user:{self.rabbit_user}")
            if f"client.{service}" in RBD_CAPS:
                requires.append(f"keyring:client.{service}")
            self.add("ini", CONFIG_FILES[service], requires, options=self.options(service))

        if "neutron" in self.services:
            self.add(
                "ini", ML2_CONF, [],
                options={
                    "ml2": {
                        "type_drivers": "flat,geneve",
                        "tenant_network_types": "geneve",
                        "mechanism_drivers": "ovn",
                        "extension_drivers": "port_security",
                        "overlay_ip_version": "4",
                    },
                    "ml2_type_flat": {"flat_networks": self.physnet},
                    "ml2_type_geneve": {"vni_ranges": "1:65536", "max_header_size": "38"},
                    "securitygroup": {"enable_security_group": True},
                    "ovn": {
                        "ovn_nb_connection": OVN_NB,
                        "ovn_sb_connection": OVN_SB,
                        "ovn_l3_scheduler": "leastloaded",
                        "ovn_metadata_enabled": True,
                    },
                },
            )

    def network(self) -> None:
        bridge = self.provider_bridge
        ovs = self.add("unit", "openvswitch-switch", state="active", enabled=True)
        br = self.add("bridge", bridge, [ovs], fail_mode="")

        nic = cfg_get(self.cfg, "stack.network.nic", None)
        if nic:
            self.add("bridge-port", nic, [br], bridge=bridge)
        # keeps a single-NIC host reachable whatever OVN does to the bridge
        self.add("flow", f"{bridge}/normal", [br], bridge=bridge, priority=0, actions="NORMAL")

        external_ids = {
            "ovn-remote": OVN_SB,
            "ovn-encap-type": "geneve",
            "ovn-encap-ip": self.ip,
            "system-id": self.hostname,
            "ovn-bridge-mappings": f"{self.physnet}:{bridge}",
        }
        external_ids.update(cfg_get(self.cfg, "stack.network.external_ids", {}) or {})
        for name, value in external_ids.items():
            self.add("external-id", name, [br], value=str(value))

        central = self.add("unit", "ovn-central", [ovs], state="active", enabled=True)
        self.add("unit", "ovn-host", [central, "external-id:*"], state="active", enabled=True)

    def compute_secret(self) -> None:
        """The libvirt secret nova-compute uses to attach RBD volumes."""
        if not self.secret_uuid or "nova" not in self.services:
            return
        libvirtd = self.add("unit", "libvirtd", state="active", enabled=True)
        self.add(
            "libvirt-secret", self.secret_uuid, ["keyring:client.cinder", libvirtd],
            client="client.cinder",
        )

    def dashboard(self) -> None:
        if "horizon" not in self.services:
            return
        ip = self.ip
        self.add(
            "python-settings", HORIZON_SETTINGS, ["unit:apache2", "unit:memcached"],
            reload="apache2",
            settings={
                "OPENSTACK_HOST": ip,
                "ALLOWED_HOSTS": ["*"],
                "TIME_ZONE": cfg_get(self.cfg, "stack.horizon.time_zone", "UTC"),
                "OPENSTACK_KEYSTONE_URL": f"http://{ip}:5000/v3",
                "OPENSTACK_KEYSTONE_MULTIDOMAIN_SUPPORT": True,
                "OPENSTACK_KEYSTONE_DEFAULT_DOMAIN": "Default",
                "OPENSTACK_KEYSTONE_DEFAULT_ROLE": "member",
                "OPENSTACK_API_VERSIONS": {"identity": 3, "image": 2, "volume": 3},
                "SESSION_ENGINE": "django.contrib.sessions.backends.cache",
                "CACHES": {
                    "default": {
                        "BACKEND": "django.core.cache.backends.memcached.PyMemcacheCache",
                        "LOCATION": "127.0.0.1:11211",
                    },
                },
                "WEBROOT": "/horizon/",
                "LOGIN_URL": "/horizon/auth/login/",
                "LOGOUT_URL": "/horizon/auth/logout/",
                "LOGIN_REDIRECT_URL": "/horizon/",
                "STATIC_URL": "/horizon/static/",
                "COMPRESS_OFFLINE": True,
            },
        )

    def service_units(self) -> None:
        for service in self.apis:
            requires = [f"ini:{CONFIG_FILES[service]}"]
            requires += [f"database:{db}" for db in DATABASES[service]]
            if service == "neutron":
                requires += [f"ini:{ML2_CONF}", "unit:ovn-central"]
            if service == "nova":
                requires.append("unit:ovn-host")
            for unit in UNITS[service]:
                needs = list(requires)
                if unit == "nova-compute" and self.secret_uuid:
                    needs.append(f"libvirt-secret:{self.secret_uuid}")
                self.add("unit", unit, needs, state="active", enabled=True)

    def provider(self) -> None:
        prov: Optional[Mapping[str, Any]] = cfg_get(self.cfg, "stack.network.provider", None)
        if not prov or "neutron" not in self.services:
            return
        name = prov.get("name", "public")
        net = self.add(
            "network", name,
            ["unit:neutron-server", "unit:ovn-host", "external-id:ovn-bridge-mappings",
             "endpoint:*"],
            external=True,
            shared=bool(prov.get("shared", False)),
            network_type="flat",
            physical_network=self.physnet,
        )
        if not prov.get("cidr"):
            raise ConfigError("stack.network.provider.cidr is required")
        self.add(
            "subnet", prov.get("subnet", f"{name}-subnet"), [net],
            network=name,
            cidr=prov["cidr"],
            gateway=prov.get("gateway"),
            dhcp=bool(prov.get("dhcp", False)),
            allocation_pool=prov.get("allocation_pool"),
            dns=list(prov.get("dns") or []) or None,
        )

    def build(self) -> List[ResourceDescriptor]:
        self.infra()
        self.ceph()
        self.databases()
        self.identity()
        self.config()
        self.network()
        self.compute_secret()
        self.service_units()
        self.dashboard()
        self.provider()
        return self.out


def build(cfg: Mapping[str, Any]) -> List[ResourceDescriptor]:
    if not isinstance(cfg.get("stack"), Mapping):
        raise ConfigError("stack must be a mapping")
    return StackBuilder(cfg).build()
