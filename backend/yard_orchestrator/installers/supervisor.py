from typing import List

from ..models import ManagedResource
from ..validation import command_errors, name_errors, slugify_key
from .base import Installer, Stage, apt_install, write_file


class SupervisorInstaller(Installer):
    kind = "supervisor"
    lock_scope = "host"

    @classmethod
    def identifying_key(cls, config) -> str:
        return "supervisor"

    def install_stages(self) -> List[Stage]:
        return [
            Stage("Installing supervisor", [apt_install("supervisor")]),
            Stage("Starting supervisor", ["systemctl enable supervisor", "systemctl restart supervisor"]),
        ]

    def uninstall_stages(self) -> List[Stage]:
        return [
            Stage("Stopping supervisor", ["systemctl disable --now supervisor || true"]),
            Stage("Removing supervisor", ["apt-get purge -y -q supervisor"]),
        ]

    def uninstall_errors(self) -> List[str]:
        workers = ManagedResource.objects.filter(host=self.host, kind="worker_task").exclude(status="uninstalled")
        if workers.exists():
            return ["Remove the host's worker tasks before removing supervisor"]
        return []


class WorkerTaskInstaller(Installer):
    """A long-running background process kept alive by supervisor."""

    kind = "worker_task"
    schema = {
        "type": "object",
        "required": ["name", "command"],
        "properties": {
            "name": {"type": "string", "maxLength": 100},
            "command": {"type": "string"},
            "directory": {"type": "string", "pattern": "^/"},
            "user": {"type": "string", "pattern": "^[a-z_][a-z0-9_-]{0,31}$"},
            "processes": {"type": "integer", "minimum": 1, "maximum": 20},
            "auto_restart": {"type": "boolean"},
            "stop_wait_seconds": {"type": "integer", "minimum": 1, "maximum": 3600},
        },
    }

    @classmethod
    def identifying_key(cls, config) -> str:
        return slugify_key(config["name"])

    @classmethod
    def check(cls, config, host) -> List[str]:
        errors = name_errors(config["name"]) + command_errors(config["command"])
        if not ManagedResource.objects.filter(host=host, kind="supervisor", status="active").exists():
            errors.append("Supervisor is not installed on this host")
        return errors

    @property
    def program(self) -> str:
        return f"shipyard-worker-{self.resource.identifying_key}"

    @property
    def conf_path(self) -> str:
        return f"/etc/supervisor/conf.d/{self.program}.conf"

    def render_program(self) -> str:
        user = self.config.get("user") or self.app_user
        directory = self.config.get("directory") or f"/home/{user}"
        processes = self.config.get("processes", 1)
        auto_restart = "true" if self.config.get("auto_restart", True) else "false"
        return "\n".join(
            [
                f"[program:{self.program}]",
                f"command={self.config['command']}",
                f"directory={directory}",
                f"user={user}",
                f"numprocs={processes}",
                "process_name=%(program_name)s_%(process_num)02d",
                "autostart=true",
                f"autorestart={auto_restart}",
                f"stopwaitsecs={self.config.get('stop_wait_seconds', 60)}",
                "redirect_stderr=true",
                f"stdout_logfile=/var/log/supervisor/{self.program}.log",
            ]
        )

    def install_stages(self) -> List[Stage]:
        return [
            Stage(
                "Verifying supervisor",
                ["command -v supervisorctl >/dev/null 2>&1 || (echo 'Supervisor is not installed' && exit 1)"],
            ),
            Stage("Writing program config", [write_file(self.conf_path, self.render_program())]),
            Stage("Starting workers", ["supervisorctl reread", "supervisorctl update", f"supervisorctl start '{self.program}:*'"]),
        ]

    def uninstall_stages(self) -> List[Stage]:
        return [
            Stage("Stopping workers", [f"supervisorctl stop '{self.program}:*' || true"]),
            Stage("Removing program config", [f"rm -f {self.conf_path}", "supervisorctl reread", "supervisorctl update"]),
        ]

    def pause_commands(self) -> List[str]:
        return [f"supervisorctl stop '{self.program}:*'"]

    def resume_commands(self) -> List[str]:
        return [f"supervisorctl start '{self.program}:*'"]
