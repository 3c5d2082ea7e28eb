from typing import Dict, Type

from ..errors import ValidationFault
from ..models import ManagedResource
from .base import Installer, Stage
from .database import DatabaseInstaller, DatabaseUserInstaller
from .firewall import FirewallInstaller, FirewallRuleInstaller
from .proxy import ReverseProxyInstaller
from .runtime import RuntimeInstaller
from .scheduler import RecurringTaskInstaller, SchedulerInstaller
from .site import SiteInstaller
from .supervisor import SupervisorInstaller, WorkerTaskInstaller
from .toolchain import ToolchainInstaller

INSTALLERS: Dict[str, Type[Installer]] = {
    installer.kind: installer
    for installer in (
        RuntimeInstaller,
        DatabaseInstaller,
        DatabaseUserInstaller,
        FirewallInstaller,
        FirewallRuleInstaller,
        SupervisorInstaller,
        WorkerTaskInstaller,
        SchedulerInstaller,
        RecurringTaskInstaller,
        ReverseProxyInstaller,
        SiteInstaller,
        ToolchainInstaller,
    )
}


def installer_class(kind: str) -> Type[Installer]:
    try:
        return INSTALLERS[kind]
    except KeyError:
        raise ValidationFault(f"Unknown resource kind: {kind}") from None


def get_installer(resource: ManagedResource) -> Installer:
    return installer_class(resource.kind)(resource)


__all__ = ["INSTALLERS", "Installer", "Stage", "get_installer", "installer_class"]
