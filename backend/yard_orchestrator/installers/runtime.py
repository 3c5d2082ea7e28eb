from typing import List

from ..models import ManagedResource
from .base import Installer, Stage, apt_install

SUPPORTED_VERSIONS = ["8.1", "8.2", "8.3", "8.4"]
BASE_MODULES = [
    "fpm",
    "cli",
    "common",
    "mysql",
    "pgsql",
    "sqlite3",
    "redis",
    "xml",
    "curl",
    "zip",
    "mbstring",
    "bcmath",
    "intl",
    "gd",
]


class RuntimeInstaller(Installer):
    """PHP runtime versions, installed side by side from the ondrej PPA."""

    kind = "runtime"
    lock_scope = "host"
    schema = {
        "type": "object",
        "required": ["version"],
        "properties": {
            "version": {"type": "string", "enum": SUPPORTED_VERSIONS},
            "extensions": {"type": "array", "items": {"type": "string", "pattern": "^[a-z0-9_-]+$"}},
            "memory_limit": {"type": "string", "pattern": "^[0-9]+[MG]$"},
            "upload_max_filesize": {"type": "string", "pattern": "^[0-9]+[MG]$"},
        },
    }

    @classmethod
    def identifying_key(cls, config) -> str:
        return config["version"]

    @property
    def version(self) -> str:
        return self.config["version"]

    def _other_runtimes(self):
        return ManagedResource.objects.filter(host=self.host, kind=self.kind).exclude(pk=self.resource.pk)

    def becomes_default(self) -> bool:
        return not self._other_runtimes().filter(status="active", config_json__is_cli_default=True).exists()

    def install_stages(self) -> List[Stage]:
        v = self.version
        modules = [f"php{v}-{name}" for name in BASE_MODULES]
        modules += [f"php{v}-{name}" for name in self.config.get("extensions") or []]
        ini_files = f"/etc/php/{v}/fpm/php.ini /etc/php/{v}/cli/php.ini"
        memory = self.config.get("memory_limit", "512M")
        upload = self.config.get("upload_max_filesize", "64M")
        stages = [
            Stage("Preparing", ["apt-get update -q", apt_install("software-properties-common", "ca-certificates", "lsb-release")]),
            Stage("Adding repository", ["add-apt-repository -y ppa:ondrej/php", "apt-get update -q"]),
            Stage(f"Installing PHP {v}", [apt_install(*modules)]),
            Stage(
                "Configuring",
                [
                    f"sed -i 's/^memory_limit = .*/memory_limit = {memory}/' {ini_files}",
                    f"sed -i 's/^upload_max_filesize = .*/upload_max_filesize = {upload}/' {ini_files}",
                    f"sed -i 's/^post_max_size = .*/post_max_size = {upload}/' {ini_files}",
                    f"sed -i 's/^user = .*/user = {self.app_user}/; s/^group = .*/group = {self.app_user}/' "
                    f"/etc/php/{v}/fpm/pool.d/www.conf",
                ],
            ),
            Stage("Enabling service", [f"systemctl enable php{v}-fpm", f"systemctl restart php{v}-fpm"]),
        ]
        if self.becomes_default():
            stages.append(Stage("Setting default version", [f"update-alternatives --set php /usr/bin/php{v}"]))
        return stages

    def _successor(self):
        remaining = list(self._other_runtimes().filter(status="active"))
        if not remaining:
            return None
        return max(remaining, key=lambda res: tuple(int(p) for p in res.identifying_key.split(".")))

    def uninstall_stages(self) -> List[Stage]:
        v = self.version
        stages = [
            Stage("Stopping service", [f"systemctl disable --now php{v}-fpm || true"]),
            Stage(f"Removing PHP {v}", [f"apt-get purge -y -q 'php{v}-*'", "apt-get autoremove -y -q"]),
        ]
        successor = self._successor() if self.config.get("is_cli_default") else None
        if successor is not None:
            stages.append(
                Stage("Switching default version", [f"update-alternatives --set php /usr/bin/php{successor.identifying_key}"])
            )
        return stages

    def uninstall_errors(self) -> List[str]:
        in_use = ManagedResource.objects.filter(
            host=self.host,
            kind="site",
            status__in=["pending", "installing", "active", "failed"],
            config_json__runtime_version=self.version,
        )
        if in_use.exists():
            return [f"PHP {self.version} is still used by {in_use.count()} site(s)"]
        return []

    def on_installed(self) -> None:
        first = self.becomes_default()
        self.save_config(is_cli_default=first, is_site_default=first)

    def on_uninstalled(self) -> None:
        if not self.config.get("is_cli_default") and not self.config.get("is_site_default"):
            return
        self.save_config(is_cli_default=False, is_site_default=False)
        successor = self._successor()
        if successor is None:
            return
        config = dict(successor.config_json or {})
        config.update(is_cli_default=True, is_site_default=True)
        successor.config_json = config
        successor.save(update_fields=["config_json", "updated_at"])
