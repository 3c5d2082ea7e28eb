from typing import Iterable, List, Optional

REDACTED = "***REDACTED***"


class OrchestratorError(Exception):
    """Base class for every fault raised by the orchestrator."""


class ValidationFault(OrchestratorError, ValueError):
    """Malformed or disallowed input, rejected before any remote work starts."""

    def __init__(self, message: str, errors: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.errors: List[str] = list(errors or [])


class LockContention(OrchestratorError):
    """The overlap lock for a key is already held."""

    def __init__(self, key: str):
        super().__init__(f"Operation already in progress for {key}")
        self.key = key


class InvalidTransition(OrchestratorError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot transition from {current} to {target}")
        self.current = current
        self.target = target


class ConnectionFault(OrchestratorError):
    """The remote channel could not be established or dropped mid-command."""


class CommandFault(OrchestratorError):
    """A remote command exited non-zero or ran past its timeout."""

    def __init__(self, command: str, exit_code: Optional[int], stdout: str = "", stderr: str = "", reason: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.reason = reason or f"exited with code {exit_code}"
        super().__init__(self.describe())

    def redacted(self, secrets: Iterable[str]) -> "CommandFault":
        secrets = list(secrets)
        if not secrets:
            return self
        return CommandFault(
            redact(self.command, secrets),
            self.exit_code,
            redact(self.stdout, secrets),
            redact(self.stderr, secrets),
            reason=self.reason,
        )

    def describe(self) -> str:
        lines = [f"Command failed ({self.reason}): {self.command}"]
        if self.stderr.strip():
            lines.append(self.stderr.strip())
        elif self.stdout.strip():
            lines.append(self.stdout.strip())
        return "\n".join(lines)


class FatalJobFault(OrchestratorError):
    """An unexpected exception escaped a job; the resource has been marked failed."""


def redact(text: str, secrets: Iterable[str]) -> str:
    redacted = text or ""
    for secret in sorted({value for value in secrets if value}, key=len, reverse=True):
        redacted = redacted.replace(secret, REDACTED)
    return redacted
