import re
from typing import List

from .. import remote
from ..models import ManagedResource
from .base import Installer, Stage, apt_install

NODE_VERSIONS = ["18", "20", "22"]
COMPOSER_PATH = "/usr/local/bin/composer"
COMPOSER_VERSION = re.compile(r"Composer\s+version\s+([\d.]+)")


class ToolchainInstaller(Installer):
    """Node.js from NodeSource, plus Composer on top of the host's default PHP.

    One toolchain per host: installing replaces whatever ``nodejs`` package was there.
    """

    kind = "toolchain"
    lock_scope = "host"
    schema = {
        "type": "object",
        "required": ["node_version"],
        "properties": {
            "node_version": {"type": "string", "enum": NODE_VERSIONS},
            "composer": {"type": "boolean"},
        },
    }

    @classmethod
    def identifying_key(cls, config) -> str:
        return "node"

    @classmethod
    def normalize(cls, config):
        config.setdefault("composer", True)
        return config

    @classmethod
    def check(cls, config, host) -> List[str]:
        if not config["composer"]:
            return []
        if not ManagedResource.objects.filter(host=host, kind="runtime", status="active").exists():
            return ["composer needs a PHP runtime installed on this host"]
        return []

    def install_stages(self) -> List[Stage]:
        version = self.config["node_version"]
        stages = [
            Stage("Preparing", ["apt-get update -q", apt_install("ca-certificates", "curl", "gnupg")]),
            Stage(
                "Adding repository",
                ["apt-get remove -y -q nodejs || true", f"curl -fsSL https://deb.nodesource.com/setup_{version}.x | bash -"],
            ),
            Stage(f"Installing Node.js {version}", [apt_install("nodejs"), "node --version", "npm --version"]),
        ]
        if self.config.get("composer"):
            stages.append(
                Stage(
                    "Installing Composer",
                    [
                        "cd /tmp && curl -fsSL https://getcomposer.org/installer -o composer-setup.php",
                        "cd /tmp && php composer-setup.php --quiet --install-dir=/usr/local/bin --filename=composer",
                        "rm -f /tmp/composer-setup.php",
                        "composer --version",
                    ],
                )
            )
        return stages

    def uninstall_stages(self) -> List[Stage]:
        stages = [Stage("Removing Node.js", ["apt-get purge -y -q nodejs", "rm -f /etc/apt/sources.list.d/nodesource.list", "apt-get autoremove -y -q"])]
        if self.config.get("composer"):
            stages.append(Stage("Removing Composer", [f"rm -f {COMPOSER_PATH}"]))
        return stages

    def on_installed(self) -> None:
        if not self.config.get("composer"):
            return
        result = remote.run_checked(self.host, "composer --version 2>&1", timeout=60)
        match = COMPOSER_VERSION.search(result.stdout)
        self.save_config(composer_version=match.group(1) if match else "")
