"""Eight-step host bootstrap.

Each step is its own job. A step holds ``bootstrap:<host_id>`` while it runs,
records its outcome in ``HostBootstrapState.step_progress_json`` and, on
success, dispatches the next step. Steps without an entry are pending.
A failed bootstrap resumes at the step that failed; a failure in the
connection step starts over.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.utils import timezone

from . import jobs, lifecycle, locks, remote
from .dispatch import dispatch
from .errors import CommandFault, ConnectionFault, FatalJobFault, OrchestratorError, ValidationFault
from .installers import installer_class
from .installers.base import apt_install, write_file
from .models import Host, HostBootstrapState, ManagedResource
from .progress import publish_host_event

logger = logging.getLogger(__name__)

BOOTSTRAP_STEP_JOB = "yard_orchestrator.bootstrap.run_bootstrap_step"

STEPS = {
    1: "Waiting for connection",
    2: "Installing base dependencies",
    3: "Securing the host",
    4: "Installing firewall",
    5: "Installing runtime",
    6: "Installing reverse proxy",
    7: "Installing task runners",
    8: "Finalizing",
}
TOTAL_STEPS = len(STEPS)

STEP_PENDING = "pending"
STEP_INSTALLING = "installing"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"

READY_MARKER = "/var/lib/shipyard/READY"
BASE_PACKAGES = ["curl", "git", "unzip", "zip", "ca-certificates", "gnupg", "software-properties-common", "acl", "rsync", "cron"]
DEFAULT_TASKS = [
    {
        "name": "Remove unused packages",
        "command": "apt-get autoremove -y -q && apt-get clean",
        "frequency": "weekly",
        "user": "root",
    },
]


class StepFailed(OrchestratorError):
    """A bootstrap step finished its commands but left the host in the wrong state."""


def lock_key(host_id) -> str:
    return f"bootstrap:{host_id}"


def step_status(state: HostBootstrapState, step: int) -> str:
    return (state.step_progress_json or {}).get(str(step), STEP_PENDING)


def failed_step(state: HostBootstrapState) -> Optional[int]:
    for step in STEPS:
        if step_status(state, step) == STEP_FAILED:
            return step
    return None


def progress_payload(state: HostBootstrapState) -> Dict[str, Any]:
    return {
        "phase": state.phase,
        "last_error": state.last_error,
        "steps": [{"step": step, "label": label, "status": step_status(state, step)} for step, label in STEPS.items()],
    }


def _set_step(state: HostBootstrapState, step: int, status: str) -> None:
    if status == STEP_COMPLETED:
        unfinished = [n for n in range(1, step) if step_status(state, n) != STEP_COMPLETED]
        if unfinished:
            raise ValueError(f"step {step} cannot complete before step {unfinished[0]}")
    progress = dict(state.step_progress_json or {})
    progress[str(step)] = status
    state.step_progress_json = progress
    state.save(update_fields=["step_progress_json", "updated_at"])
    publish_host_event(
        state.host_id,
        "bootstrap.step",
        {"step": step, "label": STEPS[step], "status": status, "phase": state.phase},
    )


def begin_bootstrap(host_id, config: Optional[Dict[str, Any]] = None) -> str:
    """Start or resume the bootstrap of ``host_id`` and return the first job id."""
    host = Host.objects.get(pk=host_id)
    state, _ = HostBootstrapState.objects.get_or_create(host=host)
    step_timeout = settings.SHIPYARD_BOOTSTRAP_STEP_TIMEOUT
    guard = locks.acquire(lock_key(host.pk), step_timeout)
    try:
        state.refresh_from_db()
        if state.phase == "completed":
            raise ValidationFault("Host is already bootstrapped")
        if state.phase == "installing":
            raise ValidationFault("Bootstrap is already in progress", [f"step {_current_step(state)} is running"])
        entry = failed_step(state) or 1
        if entry == 1:
            progress = {}
        else:
            progress = {key: value for key, value in state.step_progress_json.items() if int(key) < entry}
        state.step_progress_json = progress
        state.phase = "installing"
        state.last_error = ""
        state.started_at = timezone.now()
        state.completed_at = None
        if config:
            state.config_json = {**(state.config_json or {}), **config}
        state.save()
        _set_step(state, entry, STEP_INSTALLING)
        logger.info("bootstrap of host %s starting at step %s", host.pk, entry)
        return dispatch(
            BOOTSTRAP_STEP_JOB,
            str(host.pk),
            entry,
            guard.token,
            timeout=step_timeout,
            on_failure=handle_bootstrap_failure,
        )
    except Exception:
        locks.get_lock_store().release(guard.key, guard.token)
        raise


def _current_step(state: HostBootstrapState) -> Optional[int]:
    for step in STEPS:
        if step_status(state, step) == STEP_INSTALLING:
            return step
    return None


def _fail_step(state: HostBootstrapState, step: int, message: str) -> None:
    state.phase = "failed"
    state.last_error = message
    state.save(update_fields=["phase", "last_error", "updated_at"])
    _set_step(state, step, STEP_FAILED)


def run_bootstrap_step(host_id, step: int, lock_token: Optional[str] = None) -> Optional[HostBootstrapState]:
    host = Host.objects.filter(pk=host_id).first()
    if host is None:
        logger.warning("bootstrap step %s skipped: host %s no longer exists", step, host_id)
        return None
    step = int(step)
    with locks.hold(lock_key(host.pk), settings.SHIPYARD_BOOTSTRAP_STEP_TIMEOUT, token=lock_token):
        state = HostBootstrapState.objects.get(host=host)
        if state.phase != "installing":
            logger.warning("bootstrap step %s skipped: host %s is %s", step, host.pk, state.phase)
            return state
        if step_status(state, step) != STEP_INSTALLING:
            _set_step(state, step, STEP_INSTALLING)
        try:
            STEP_HANDLERS[step](host, state)
        except (CommandFault, ConnectionFault, ValidationFault, StepFailed) as exc:
            logger.warning("bootstrap step %s (%s) failed on host %s: %s", step, STEPS[step], host.pk, exc)
            if step == 1:
                Host.objects.filter(pk=host.pk).update(connection_status="failed")
            _fail_step(state, step, str(exc))
            return state
        except Exception as exc:
            logger.exception("bootstrap step %s crashed on host %s", step, host.pk)
            _fail_step(state, step, f"{exc.__class__.__name__}: {exc}")
            raise FatalJobFault(str(exc)) from exc
        _set_step(state, step, STEP_COMPLETED)
        if step == TOTAL_STEPS:
            state.phase = "completed"
            state.completed_at = timezone.now()
            state.save(update_fields=["phase", "completed_at", "updated_at"])
            publish_host_event(host.pk, "bootstrap.completed", progress_payload(state))
            logger.info("host %s bootstrapped", host.pk)
            return state
        _set_step(state, step + 1, STEP_INSTALLING)
    try:
        dispatch(
            BOOTSTRAP_STEP_JOB,
            str(host.pk),
            step + 1,
            timeout=settings.SHIPYARD_BOOTSTRAP_STEP_TIMEOUT,
            on_failure=handle_bootstrap_failure,
        )
    except Exception as exc:
        state.refresh_from_db()
        # The next step may already have recorded its own failure.
        if state.phase == "installing" and step_status(state, step + 1) == STEP_INSTALLING:
            logger.error("could not queue bootstrap step %s for host %s: %s", step + 1, host.pk, exc)
            _fail_step(state, step + 1, f"Could not queue step {step + 1}: {exc}")
        raise
    state.refresh_from_db()
    return state


def recover_stale_bootstraps() -> int:
    """Fail bootstraps whose step job vanished without recording an outcome."""
    cutoff = timezone.now() - timedelta(seconds=settings.SHIPYARD_BOOTSTRAP_STEP_TIMEOUT + 60)
    recovered = 0
    for state in HostBootstrapState.objects.filter(phase="installing", updated_at__lt=cutoff):
        if locks.is_held(lock_key(state.host_id)):
            continue
        step = _current_step(state) or 1
        logger.warning("bootstrap of host %s abandoned at step %s", state.host_id, step)
        _fail_step(state, step, "Bootstrap abandoned: the worker stopped before finishing")
        recovered += 1
    return recovered


def handle_bootstrap_failure(job, connection, exc_type, exc_value, traceback) -> None:
    if len(job.args) < 2:
        return
    state = HostBootstrapState.objects.filter(host_id=job.args[0]).first()
    if state is None or state.phase != "installing":
        return
    logger.error("bootstrap job %s failed in the worker: %s", job.id, exc_value)
    _fail_step(state, int(job.args[1]), f"Job {job.id} failed in the worker: {exc_value}")


def ensure_installed(host: Host, kind: str, config: Dict[str, Any]) -> ManagedResource:
    """Install ``kind`` on ``host`` in the current job unless it is already active."""
    installer = installer_class(kind)
    config = installer.validate(config, host)
    identifying_key = installer.identifying_key(config)
    resource = (
        ManagedResource.objects.filter(host=host, kind=kind, identifying_key=identifying_key)
        .exclude(status=lifecycle.UNINSTALLED)
        .first()
    )
    if resource is None:
        resource = ManagedResource.objects.create(
            host=host, kind=kind, identifying_key=identifying_key, config_json=config
        )
    if resource.status == lifecycle.ACTIVE:
        return resource
    resource = jobs.run_installer(resource.pk, "install")
    if resource is None or resource.status != lifecycle.ACTIVE:
        detail = resource.error_log if resource is not None else "resource disappeared"
        raise StepFailed(f"Installing {kind} {identifying_key} failed: {detail}")
    return resource


def _wait_for_connection(host: Host, state: HostBootstrapState) -> None:
    result = remote.run_checked(host, '. /etc/os-release && echo "$ID" && echo "$VERSION_ID"', timeout=60)
    fields = result.stdout.split()
    host.connection_status = "connected"
    host.os_name = fields[0] if fields else ""
    host.os_version = fields[1] if len(fields) > 1 else ""
    host.save(update_fields=["connection_status", "os_name", "os_version", "updated_at"])


def _install_base_dependencies(host: Host, state: HostBootstrapState) -> None:
    for command in ["apt-get update -q", apt_install(*BASE_PACKAGES), "timedatectl set-timezone UTC"]:
        remote.run_checked(host, command)


def _secure_host(host: Host, state: HostBootstrapState) -> None:
    user = settings.SHIPYARD_APP_USER
    sudoers = f"{user} ALL=(root) NOPASSWD: /usr/bin/systemctl reload nginx, /usr/bin/systemctl reload php*-fpm"
    commands = [
        f"id -u {user} >/dev/null 2>&1 || useradd -m -s /bin/bash {user}",
        f"mkdir -p /home/{user}/.ssh && cp -f ~/.ssh/authorized_keys /home/{user}/.ssh/authorized_keys",
        f"chown -R {user}:{user} /home/{user}/.ssh && chmod 700 /home/{user}/.ssh",
        write_file("/etc/sudoers.d/shipyard", sudoers, "440"),
        "sed -i 's/^#\\?PasswordAuthentication .*/PasswordAuthentication no/' /etc/ssh/sshd_config",
        "sed -i 's/^#\\?PermitRootLogin .*/PermitRootLogin prohibit-password/' /etc/ssh/sshd_config",
        "systemctl reload ssh || systemctl reload sshd",
        apt_install("unattended-upgrades", "fail2ban"),
        "systemctl enable --now fail2ban",
    ]
    for command in commands:
        remote.run_checked(host, command)


def _install_firewall(host: Host, state: HostBootstrapState) -> None:
    ensure_installed(host, "firewall", {"ssh_port": host.ssh_port})
    for port, name in (("80", "HTTP"), ("443", "HTTPS")):
        ensure_installed(host, "firewall_rule", {"rule_type": "allow", "port": port, "protocol": "tcp", "name": name})


def _install_runtime(host: Host, state: HostBootstrapState) -> None:
    version = (state.config_json or {}).get("runtime_version") or settings.SHIPYARD_DEFAULT_RUNTIME_VERSION
    ensure_installed(host, "runtime", {"version": version})


def _install_reverse_proxy(host: Host, state: HostBootstrapState) -> None:
    ensure_installed(host, "reverse_proxy", {})


def _install_task_runners(host: Host, state: HostBootstrapState) -> None:
    ensure_installed(host, "scheduler", {})
    ensure_installed(host, "supervisor", {})
    for task in DEFAULT_TASKS:
        ensure_installed(host, "recurring_task", dict(task))


def _finalize(host: Host, state: HostBootstrapState) -> None:
    remote.run_checked(host, f"mkdir -p /var/lib/shipyard && touch {READY_MARKER}")


STEP_HANDLERS = {
    1: _wait_for_connection,
    2: _install_base_dependencies,
    3: _secure_host,
    4: _install_firewall,
    5: _install_runtime,
    6: _install_reverse_proxy,
    7: _install_task_runners,
    8: _finalize,
}


def installed_summary(host: Host) -> List[Dict[str, str]]:
    resources = ManagedResource.objects.filter(host=host, status=lifecycle.ACTIVE).order_by("kind", "identifying_key")
    return [{"kind": r.kind, "identifying_key": r.identifying_key} for r in resources]
