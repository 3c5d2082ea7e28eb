import shlex
from typing import List

from django.conf import settings

from ..models import ManagedResource
from ..validation import command_errors, cron_errors, name_errors, slugify_key, timeout_errors
from .base import APP_ROOT, Installer, Stage, write_file

TASKS_DIR = f"{APP_ROOT}/scheduler/tasks"
LOG_DIR = "/var/log/shipyard/tasks"

FREQUENCIES = {
    "minutely": "* * * * *",
    "hourly": "0 * * * *",
    "daily": "0 0 * * *",
    "weekly": "0 0 * * 0",
    "monthly": "0 0 1 * *",
}


class SchedulerInstaller(Installer):
    kind = "scheduler"
    lock_scope = "host"

    @classmethod
    def identifying_key(cls, config) -> str:
        return "scheduler"

    def install_stages(self) -> List[Stage]:
        return [
            Stage(
                "Preparing task directories",
                [f"mkdir -p {TASKS_DIR} {LOG_DIR}", f"chmod 755 {TASKS_DIR}", f"chown {self.app_user}:{self.app_user} {LOG_DIR}"],
            ),
            Stage("Verifying tooling", ["command -v timeout >/dev/null 2>&1 || (echo 'coreutils timeout is missing' && exit 1)"]),
        ]

    def uninstall_stages(self) -> List[Stage]:
        return [Stage("Removing task directories", [f"rm -rf {APP_ROOT}/scheduler {LOG_DIR}"])]

    def uninstall_errors(self) -> List[str]:
        tasks = ManagedResource.objects.filter(host=self.host, kind="recurring_task").exclude(status="uninstalled")
        if tasks.exists():
            return ["Remove the host's recurring tasks before removing the scheduler"]
        return []


class RecurringTaskInstaller(Installer):
    """Installs the wrapper script a recurring task runs through; firing is driven by the scheduler."""

    kind = "recurring_task"
    schema = {
        "type": "object",
        "required": ["name", "command", "frequency"],
        "properties": {
            "name": {"type": "string", "maxLength": 100},
            "command": {"type": "string"},
            "frequency": {"type": "string", "enum": sorted(FREQUENCIES) + ["custom"]},
            "cron_expression": {"type": "string"},
            "timeout": {"type": "integer"},
            "user": {"type": "string", "pattern": "^[a-z_][a-z0-9_-]{0,31}$"},
        },
    }

    @classmethod
    def identifying_key(cls, config) -> str:
        return slugify_key(config["name"])

    @classmethod
    def normalize(cls, config):
        if config["frequency"] != "custom":
            config["cron_expression"] = FREQUENCIES[config["frequency"]]
        config.setdefault("timeout", settings.SHIPYARD_TASK_DEFAULT_TIMEOUT)
        return config

    @classmethod
    def check(cls, config, host) -> List[str]:
        errors = name_errors(config["name"]) + command_errors(config["command"]) + timeout_errors(config["timeout"])
        expression = config.get("cron_expression")
        if not expression:
            errors.append("cron_expression is required for custom frequencies")
        else:
            errors += cron_errors(expression)
        if not ManagedResource.objects.filter(host=host, kind="scheduler", status="active").exists():
            errors.append("The scheduler is not installed on this host")
        existing = ManagedResource.objects.filter(host=host, kind=cls.kind).exclude(status="uninstalled").count()
        if existing >= settings.SHIPYARD_MAX_TASKS_PER_HOST:
            errors.append(f"A host may have at most {settings.SHIPYARD_MAX_TASKS_PER_HOST} recurring tasks")
        return errors

    @property
    def script_path(self) -> str:
        return f"{TASKS_DIR}/{self.resource.pk}.sh"

    @property
    def run_as(self) -> str:
        return self.config.get("user") or self.app_user

    def render_script(self) -> str:
        timeout = int(self.config.get("timeout") or settings.SHIPYARD_TASK_DEFAULT_TIMEOUT)
        return "\n".join(
            [
                "#!/bin/bash",
                f"# {self.config['name']} ({self.config['cron_expression']})",
                f"cd /home/{self.run_as} 2>/dev/null || cd /",
                f"exec timeout --kill-after=10 {timeout} bash -c {shlex.quote(self.config['command'])}",
            ]
        )

    def install_stages(self) -> List[Stage]:
        return [
            Stage(
                "Verifying scheduler",
                [f"test -d {TASKS_DIR} || (echo 'The scheduler is not installed' && exit 1)"],
            ),
            Stage("Writing task script", [write_file(self.script_path, self.render_script(), "755")]),
        ]

    def uninstall_stages(self) -> List[Stage]:
        return [Stage("Removing task script", [f"rm -f {self.script_path}"])]
