import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from django.conf import settings

from ..errors import REDACTED
from ..models import Host, ManagedResource
from ..validation import raise_for, schema_errors

APP_ROOT = "/opt/shipyard"


@dataclass
class Stage:
    """One milestone of an operation and the remote commands that make it up."""

    milestone: str
    commands: List[str] = field(default_factory=list)
    user: Optional[str] = None
    timeout: Optional[int] = None
    # Values masked out of any command text or output this stage reports.
    secrets: List[str] = field(default_factory=list)


def write_file(path: str, content: str, mode: str = "644") -> str:
    marker = "SHIPYARD_EOF"
    return f"cat > {path} <<'{marker}'\n{content.rstrip()}\n{marker}\nchmod {mode} {path}"


def apt_install(*packages: str) -> str:
    return "DEBIAN_FRONTEND=noninteractive apt-get install -y -q " + " ".join(packages)


def secret_forms(*values: str) -> List[str]:
    """Every spelling a secret takes once embedded in a quoted shell or SQL command."""
    forms: List[str] = []
    for value in values:
        if not value:
            continue
        sql = value.replace("\\", "\\\\").replace("'", "\\'")
        for form in (value, shlex.quote(value), sql, sql.replace("'", "'\"'\"'")):
            if form not in forms:
                forms.append(form)
    return forms


def public_config(config: Any) -> Any:
    """Copy of a resource config with every password masked."""
    if isinstance(config, dict):
        return {
            key: REDACTED if key.endswith("password") and value else public_config(value)
            for key, value in config.items()
        }
    if isinstance(config, list):
        return [public_config(item) for item in config]
    return config


class Installer:
    kind = ""
    # "host" serializes with every other package-manager kind on the host.
    lock_scope = "resource"
    schema: Dict[str, Any] = {"type": "object"}

    def __init__(self, resource: ManagedResource):
        self.resource = resource
        self.host: Host = resource.host
        self.config: Dict[str, Any] = dict(resource.config_json or {})

    @classmethod
    def identifying_key(cls, config: Dict[str, Any]) -> str:
        raise NotImplementedError

    @classmethod
    def check(cls, config: Dict[str, Any], host: Host) -> List[str]:
        return []

    @classmethod
    def normalize(cls, config: Dict[str, Any]) -> Dict[str, Any]:
        return config

    @classmethod
    def validate(cls, config: Dict[str, Any], host: Host) -> Dict[str, Any]:
        errors = schema_errors(cls.schema, config)
        raise_for(errors, f"Invalid {cls.kind} configuration")
        config = cls.normalize(dict(config))
        raise_for(cls.check(config, host), f"Invalid {cls.kind} configuration")
        return config

    @classmethod
    def lock_key(cls, host_id, identifying_key: str) -> str:
        if cls.lock_scope == "host":
            return f"host:{host_id}:packages"
        return f"{cls.kind}:{host_id}:{identifying_key}"

    @property
    def app_user(self) -> str:
        return settings.SHIPYARD_APP_USER

    @property
    def timeout(self) -> int:
        return settings.SHIPYARD_INSTALLER_TIMEOUT

    def stages(self, operation: str) -> List[Stage]:
        if operation == "install":
            return self.install_stages()
        if operation == "uninstall":
            return self.uninstall_stages()
        raise ValueError(f"Unknown operation: {operation}")

    def install_stages(self) -> List[Stage]:
        raise NotImplementedError

    def uninstall_stages(self) -> List[Stage]:
        raise NotImplementedError

    def uninstall_errors(self) -> List[str]:
        return []

    def pause_commands(self) -> List[str]:
        return []

    def resume_commands(self) -> List[str]:
        return []

    def on_installed(self) -> None:
        pass

    def on_uninstalled(self) -> None:
        pass

    def save_config(self, **changes) -> None:
        self.config.update(changes)
        self.resource.config_json = self.config
        self.resource.save(update_fields=["config_json", "updated_at"])
