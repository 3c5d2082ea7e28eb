"""Installer jobs: one attempt to install or uninstall one resource.

A job adopts (or acquires) the resource's overlap lock, moves the resource to
its in-progress state, runs the installer's stages command by command and
finishes in ``active``/``uninstalled`` or ``failed``. Every exit path leaves a
final milestone behind and releases the lock. Jobs never retry.
"""

import logging
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone

from . import lifecycle, locks, remote
from .errors import CommandFault, ConnectionFault, FatalJobFault, InvalidTransition, redact
from .installers import Installer, Stage, get_installer, installer_class
from .models import ManagedResource
from .progress import MilestoneEmitter

logger = logging.getLogger(__name__)

INSTALLER_JOB = "yard_orchestrator.jobs.run_installer"


def resource_lock_key(resource: ManagedResource) -> str:
    return installer_class(resource.kind).lock_key(resource.host_id, resource.identifying_key)


def _execute(runner, resource: ManagedResource, stage: Stage, command: str) -> None:
    timeout = stage.timeout or settings.SHIPYARD_COMMAND_TIMEOUT
    try:
        result = runner.execute(resource.host, command, timeout, user=stage.user)
    except CommandFault as exc:
        raise exc.redacted(stage.secrets) from None
    except ConnectionFault as exc:
        raise ConnectionFault(redact(str(exc), stage.secrets)) from None
    if not result.ok:
        raise CommandFault(command, result.exit_code, result.stdout, result.stderr).redacted(stage.secrets)


def _fail(resource: ManagedResource, operation: str, emitter: Optional[MilestoneEmitter], message: str) -> None:
    try:
        lifecycle.fail(resource, message)
    except InvalidTransition:
        logger.error("could not mark %s failed; status changed underneath the job", resource.pk)
    if emitter is None:
        emitter = MilestoneEmitter(resource, operation, 0)
    if not emitter.finished:
        emitter.fail(message)


def _drive(installer: Installer, resource: ManagedResource, operation: str) -> ManagedResource:
    emitter = None
    try:
        stages = installer.stages(operation)
        emitter = MilestoneEmitter(resource, operation, len(stages))
        runner = remote.get_runner(resource.host)
        for index, stage in enumerate(stages, start=1):
            emitter.emit(stage.milestone, index)
            for command in stage.commands:
                _execute(runner, resource, stage, command)
        if operation == "install":
            installer.on_installed()
        else:
            installer.on_uninstalled()
        lifecycle.complete(resource, operation)
        emitter.succeed()
        logger.info("%s of %s %s on host %s succeeded", operation, resource.kind, resource.identifying_key, resource.host_id)
    except (CommandFault, ConnectionFault) as exc:
        logger.warning("%s of %s %s failed: %s", operation, resource.kind, resource.identifying_key, exc)
        _fail(resource, operation, emitter, str(exc))
    except Exception as exc:
        logger.exception("%s of %s %s crashed", operation, resource.kind, resource.identifying_key)
        _fail(resource, operation, emitter, f"{exc.__class__.__name__}: {exc}")
        raise FatalJobFault(str(exc)) from exc
    resource.refresh_from_db()
    return resource


def run_installer(resource_id, operation: str, lock_token: Optional[str] = None) -> Optional[ManagedResource]:
    if operation not in lifecycle.OPERATIONS:
        raise ValueError(f"Unknown operation: {operation}")
    resource = ManagedResource.objects.select_related("host").filter(pk=resource_id).first()
    if resource is None:
        logger.warning("%s skipped: resource %s no longer exists", operation, resource_id)
        return None
    installer = get_installer(resource)
    with locks.hold(resource_lock_key(resource), installer.timeout, token=lock_token):
        resource.refresh_from_db()
        if not lifecycle.accepts_operation(resource, operation):
            logger.warning("%s skipped: resource %s is %s", operation, resource.pk, resource.status)
            return resource
        lifecycle.begin(resource, operation)
        installer.resource = resource
        return _drive(installer, resource, operation)


def set_paused(resource_id, paused: bool) -> ManagedResource:
    """Pause or resume a task resource; worker tasks also stop or start their processes."""
    resource = ManagedResource.objects.select_related("host").get(pk=resource_id)
    installer = get_installer(resource)
    with locks.hold(resource_lock_key(resource), installer.timeout):
        resource.refresh_from_db()
        target = lifecycle.PAUSED if paused else lifecycle.ACTIVE
        if not lifecycle.can_transition(resource.status, target, resource.kind):
            raise InvalidTransition(resource.status, target)
        commands = installer.pause_commands() if paused else installer.resume_commands()
        for command in commands:
            remote.run_checked(resource.host, command)
        return lifecycle.pause(resource) if paused else lifecycle.resume(resource)


def mark_abandoned(resource_id, message: str) -> Optional[ManagedResource]:
    """Fail a resource whose job died without reaching its own failure path."""
    resource = ManagedResource.objects.filter(pk=resource_id).first()
    if resource is None or resource.status not in lifecycle.IN_FLIGHT:
        return resource
    operation = "install" if resource.status == lifecycle.INSTALLING else "uninstall"
    _fail(resource, operation, None, message)
    resource.refresh_from_db()
    return resource


def handle_job_failure(job, connection, exc_type, exc_value, traceback) -> None:
    if not job.args:
        return
    logger.error("installer job %s failed in the worker: %s", job.id, exc_value)
    mark_abandoned(job.args[0], f"Job {job.id} failed in the worker: {exc_value}")


def recover_stale_operations() -> int:
    """Fail resources left in flight longer than any job could run whose lock has lapsed."""
    cutoff = timezone.now() - timedelta(seconds=settings.SHIPYARD_INSTALLER_TIMEOUT + 60)
    recovered = 0
    stale = ManagedResource.objects.filter(status__in=list(lifecycle.IN_FLIGHT), updated_at__lt=cutoff)
    for resource in stale:
        if locks.is_held(resource_lock_key(resource)):
            continue
        mark_abandoned(resource.pk, "Operation abandoned: the worker stopped before finishing")
        recovered += 1
    if recovered:
        logger.warning("recovered %s abandoned operations", recovered)
    return recovered
