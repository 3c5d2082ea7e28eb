from typing import List, Optional, Tuple

from django.contrib.auth import get_user_model

from yard_orchestrator import locks
from yard_orchestrator.models import Host, HostBootstrapState, ManagedResource
from yard_orchestrator.remote import CommandResult

ORCHESTRATOR_SETTINGS = {
    "SHIPYARD_ASYNC_JOBS_MODE": "eager",
    "SHIPYARD_COORDINATION_BACKEND": "memory",
}


class ScriptedRunner:
    """Stands in for a host: records every command and answers from a script."""

    def __init__(self):
        self.calls: List[Tuple[str, Optional[str], int]] = []
        self._rules = []

    def respond(self, fragment: str, stdout: str = "", stderr: str = "", exit_code: int = 0) -> "ScriptedRunner":
        self._rules.append((fragment, CommandResult(exit_code, stdout, stderr, 5)))
        return self

    def fail_when(self, fragment: str, exit_code: int = 1, stderr: str = "boom") -> "ScriptedRunner":
        return self.respond(fragment, stderr=stderr, exit_code=exit_code)

    def raise_when(self, fragment: str, exc: Exception) -> "ScriptedRunner":
        self._rules.append((fragment, exc))
        return self

    def execute(self, host, command, timeout, user=None) -> CommandResult:
        self.calls.append((command, user, timeout))
        for fragment, outcome in self._rules:
            if fragment in command:
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        return CommandResult(0, "", "", 5)

    @property
    def commands(self) -> List[str]:
        return [command for command, _, _ in self.calls]

    def ran(self, fragment: str) -> bool:
        return any(fragment in command for command in self.commands)

    def user_for(self, fragment: str) -> Optional[str]:
        for command, user, _ in self.calls:
            if fragment in command:
                return user
        raise AssertionError(f"no command containing {fragment!r} was run")


def reset_coordination() -> None:
    locks.get_lock_store().clear()


def make_host(name: str = "web-1", ready: bool = True, **fields) -> Host:
    fields.setdefault("public_ip", "203.0.113.10")
    host = Host.objects.create(name=name, **fields)
    if ready:
        HostBootstrapState.objects.create(host=host, phase="completed")
    return host


def make_resource(host: Host, kind: str, identifying_key: str, status: str = "active", **config) -> ManagedResource:
    return ManagedResource.objects.create(
        host=host, kind=kind, identifying_key=identifying_key, status=status, config_json=config
    )


def make_staff(username: str = "operator"):
    return get_user_model().objects.create_user(username=username, password="x", is_staff=True)
