"""Entry points the request layer uses to start work.

Each call validates ownership, state and quotas synchronously, takes the
overlap lock for the work it is about to queue and hands the lease token to
the job. A second request for work already in flight fails here with
LockContention instead of queueing a duplicate job.
"""

import logging
from typing import Any, Dict, Optional

from django.db import IntegrityError, transaction

from . import bootstrap, deployments, jobs, lifecycle, locks, scheduling, site_commands
from .dispatch import dispatch
from .errors import InvalidTransition, LockContention, ValidationFault
from .installers import get_installer, installer_class
from .models import Deployment, Host, ManagedResource, SiteCommandRun

logger = logging.getLogger(__name__)


def _require_ready(host: Host) -> None:
    if not host.is_ready:
        raise ValidationFault("Host has not finished bootstrapping", ["host is not ready"])


def _owned_resource(host_id, resource_id) -> ManagedResource:
    resource = ManagedResource.objects.select_related("host").get(pk=resource_id)
    if str(resource.host_id) != str(host_id):
        raise ValidationFault("Resource does not belong to this host", ["resource_id"])
    return resource


def _dispatch_locked(key: str, lease_seconds: int, func_path: str, *args, on_failure=None) -> str:
    guard = locks.acquire(key, lease_seconds)
    try:
        return dispatch(func_path, *args, guard.token, timeout=lease_seconds, on_failure=on_failure)
    except Exception:
        logger.warning("dispatch of %s failed; releasing %s", func_path, key)
        locks.get_lock_store().release(guard.key, guard.token)
        raise


def request_install(host_id, kind: str, config: Dict[str, Any]) -> ManagedResource:
    """Create a pending resource of ``kind`` from ``config`` and queue its install."""
    host = Host.objects.get(pk=host_id)
    _require_ready(host)
    installer = installer_class(kind)
    config = installer.validate(config, host)
    identifying_key = installer.identifying_key(config)
    lock_key = installer.lock_key(host.pk, identifying_key)
    if locks.is_held(lock_key):
        raise LockContention(lock_key)
    existing = (
        ManagedResource.objects.filter(host=host, kind=kind, identifying_key=identifying_key)
        .exclude(status=lifecycle.UNINSTALLED)
        .first()
    )
    if existing is not None:
        raise ValidationFault(
            f"{kind} {identifying_key} already exists on this host",
            [f"existing resource {existing.pk} is {existing.status}"],
        )
    try:
        with transaction.atomic():
            resource = ManagedResource.objects.create(
                host=host, kind=kind, identifying_key=identifying_key, config_json=config
            )
    except IntegrityError:
        raise ValidationFault(f"{kind} {identifying_key} already exists on this host") from None
    logger.info("created %s %s on host %s", kind, identifying_key, host.pk)
    enqueue_install(host.pk, resource.pk)
    resource.refresh_from_db()
    return resource


def enqueue_install(host_id, resource_id) -> str:
    resource = _owned_resource(host_id, resource_id)
    _require_ready(resource.host)
    if resource.status == lifecycle.ACTIVE:
        raise ValidationFault(f"{resource.kind} {resource.identifying_key} is already installed")
    if not lifecycle.accepts_operation(resource, "install"):
        raise InvalidTransition(resource.status, lifecycle.INSTALLING)
    installer = get_installer(resource)
    return _dispatch_locked(
        jobs.resource_lock_key(resource),
        installer.timeout,
        jobs.INSTALLER_JOB,
        str(resource.pk),
        "install",
        on_failure=jobs.handle_job_failure,
    )


def enqueue_uninstall(host_id, resource_id) -> str:
    resource = _owned_resource(host_id, resource_id)
    if not lifecycle.accepts_operation(resource, "uninstall"):
        raise InvalidTransition(resource.status, lifecycle.REMOVING)
    installer = get_installer(resource)
    errors = installer.uninstall_errors()
    if errors:
        raise ValidationFault(f"{resource.kind} {resource.identifying_key} cannot be removed", errors)
    return _dispatch_locked(
        jobs.resource_lock_key(resource),
        installer.timeout,
        jobs.INSTALLER_JOB,
        str(resource.pk),
        "uninstall",
        on_failure=jobs.handle_job_failure,
    )


def enqueue_bootstrap(host_id, config: Optional[Dict[str, Any]] = None) -> str:
    return bootstrap.begin_bootstrap(host_id, config)


def enqueue_deployment(site_id, trigger: str = "manual", branch: str = "", commit_sha: str = "") -> Deployment:
    return deployments.queue_deployment(site_id, trigger=trigger, branch=branch, commit_sha=commit_sha)


def enqueue_rollback(site_id, deployment_id) -> Deployment:
    return deployments.queue_rollback(site_id, deployment_id)


def enqueue_site_command(site_id, command: str, requested_by: str = "") -> SiteCommandRun:
    return site_commands.queue_site_command(site_id, command, requested_by=requested_by)


def enqueue_task_run(host_id, task_id) -> str:
    task = _owned_resource(host_id, task_id)
    return scheduling.queue_task_run(task, trigger="manual")


def pause_resource(host_id, resource_id) -> ManagedResource:
    resource = _owned_resource(host_id, resource_id)
    if resource.kind not in lifecycle.PAUSABLE_KINDS:
        raise ValidationFault(f"{resource.kind} resources cannot be paused")
    return jobs.set_paused(resource.pk, True)


def resume_resource(host_id, resource_id) -> ManagedResource:
    resource = _owned_resource(host_id, resource_id)
    if resource.kind not in lifecycle.PAUSABLE_KINDS:
        raise ValidationFault(f"{resource.kind} resources cannot be resumed")
    return jobs.set_paused(resource.pk, False)
