"""
One adapter per external system, keyed by resource kind.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..runner import Runner
from .base import Adapter, Registry
from .ceph import FilesystemAdapter, KeyringAdapter, PoolAdapter
from .ini import IniAdapter
from .libvirt import LibvirtSecretAdapter
from .mysql import DatabaseAdapter
from .openstack import (
    EndpointAdapter,
    NetworkAdapter,
    ProjectAdapter,
    ServiceAdapter,
    SubnetAdapter,
    UserAdapter,
)
from .ovs import BridgeAdapter, BridgePortAdapter, ExternalIdAdapter, FlowAdapter
from .pysettings import PythonSettingsAdapter
from .rabbitmq import RabbitUserAdapter
from .systemd import UnitAdapter

if TYPE_CHECKING:
    from ..config import Settings

__all__ = ["Adapter", "Registry", "default_registry"]


def default_registry(runner: Runner, settings: "Settings") -> Registry:
    # OpenStack CLI needs the admin credentials that admin-openrc used to export
    os_runner = runner
    if settings.openstack_env:
        env = dict(runner.env)
        env.update(settings.openstack_env)
        os_runner = Runner(
            sudo=False,
            timeout=runner.timeout,
            dry_run=runner.dry_run,
            verbose=runner.verbose,
            env=env,
            ssh=runner.ssh,
        )

    return Registry(
        [
            PoolAdapter(runner),
            KeyringAdapter(runner),
            FilesystemAdapter(runner),
            DatabaseAdapter(
                runner,
                defaults_file=settings.mysql_defaults_file,
                host=settings.mysql_host,
                user=settings.mysql_user,
            ),
            ProjectAdapter(os_runner),
            UserAdapter(os_runner),
            ServiceAdapter(os_runner),
            EndpointAdapter(os_runner),
            NetworkAdapter(os_runner),
            SubnetAdapter(os_runner),
            BridgeAdapter(runner),
            BridgePortAdapter(runner),
            ExternalIdAdapter(runner),
            FlowAdapter(runner),
            RabbitUserAdapter(runner),
            UnitAdapter(runner),
            IniAdapter(runner),
            PythonSettingsAdapter(runner),
            LibvirtSecretAdapter(runner),
        ]
    )
