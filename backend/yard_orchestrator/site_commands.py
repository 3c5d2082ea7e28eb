"""One-off commands run inside a site's live release, with their history.

Commands run as the app user from ``<site>/current`` and must pass
``site_command_errors``. One command per site runs at a time.
"""

import logging
import shlex
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone

from . import locks, remote
from .dispatch import dispatch
from .errors import CommandFault, ConnectionFault, FatalJobFault, ValidationFault
from .installers.site import site_root
from .models import ManagedResource, SiteCommandRun
from .progress import publish_host_event
from .validation import raise_for, site_command_errors

logger = logging.getLogger(__name__)

SITE_COMMAND_JOB = "yard_orchestrator.site_commands.run_site_command"


def lock_key(site_id) -> str:
    return f"site-command:{site_id}"


def queue_site_command(site_id, command: str, requested_by: str = "") -> SiteCommandRun:
    site = ManagedResource.objects.select_related("host").get(pk=site_id, kind="site")
    if site.status != "active":
        raise ValidationFault("Site is not active", [f"site is {site.status}"])
    command = (command or "").strip()
    raise_for(site_command_errors(command), "Invalid command")
    lease = settings.SHIPYARD_SITE_COMMAND_TIMEOUT + 60
    guard = locks.acquire(lock_key(site.pk), lease)
    try:
        run = SiteCommandRun.objects.create(site=site, host=site.host, command=command, requested_by=requested_by)
        dispatch(SITE_COMMAND_JOB, str(run.pk), guard.token, timeout=lease, on_failure=handle_site_command_failure)
    except Exception:
        locks.get_lock_store().release(guard.key, guard.token)
        raise
    run.refresh_from_db()
    return run


def _finish(run: SiteCommandRun, status: str) -> None:
    run.status = status
    run.completed_at = timezone.now()
    if run.started_at:
        run.duration_ms = max(0, int((run.completed_at - run.started_at).total_seconds() * 1000))
    run.save()
    publish_host_event(
        run.host_id,
        "site_command.finished",
        {"run_id": str(run.pk), "site_id": str(run.site_id), "status": run.status, "exit_code": run.exit_code},
    )


def run_site_command(run_id, lock_token: Optional[str] = None) -> Optional[SiteCommandRun]:
    run = SiteCommandRun.objects.select_related("site", "host").filter(pk=run_id).first()
    if run is None:
        logger.warning("site command %s no longer exists", run_id)
        return None
    timeout = settings.SHIPYARD_SITE_COMMAND_TIMEOUT
    with locks.hold(lock_key(run.site_id), timeout + 60, token=lock_token):
        run.refresh_from_db()
        if run.status != "pending":
            logger.warning("site command %s skipped: already %s", run.pk, run.status)
            return run
        run.status = "running"
        run.started_at = timezone.now()
        run.save(update_fields=["status", "started_at", "updated_at"])
        root = site_root(settings.SHIPYARD_APP_USER, run.site.config_json["domain"])
        remote_command = f"cd {shlex.quote(root + '/current')} && {run.command}"
        try:
            result = remote.get_runner(run.host).execute(
                run.host, remote_command, timeout, user=settings.SHIPYARD_APP_USER
            )
        except (CommandFault, ConnectionFault) as exc:
            run.exit_code = getattr(exc, "exit_code", None)
            run.error_output = str(exc)
            _finish(run, "failed")
            logger.warning("site command %s on site %s failed: %s", run.pk, run.site_id, exc)
            return run
        except Exception as exc:
            logger.exception("site command %s crashed", run.pk)
            run.error_output = f"{exc.__class__.__name__}: {exc}"
            _finish(run, "failed")
            raise FatalJobFault(str(exc)) from exc
        run.exit_code = result.exit_code
        run.output = result.stdout.rstrip()
        run.error_output = result.stderr.rstrip()
        _finish(run, "success" if result.ok else "failed")
    logger.info("site command %s on site %s exited %s", run.pk, run.site_id, run.exit_code)
    return run


def handle_site_command_failure(job, connection, exc_type, exc_value, traceback) -> None:
    if not job.args:
        return
    run = SiteCommandRun.objects.filter(pk=job.args[0], status__in=["pending", "running"]).first()
    if run is None:
        return
    logger.error("site command job %s failed in the worker: %s", job.id, exc_value)
    run.error_output = f"Job {job.id} failed in the worker: {exc_value}"
    _finish(run, "failed")


def recover_stale_site_commands() -> int:
    cutoff = timezone.now() - timedelta(seconds=settings.SHIPYARD_SITE_COMMAND_TIMEOUT + 120)
    recovered = 0
    for run in SiteCommandRun.objects.filter(status__in=["pending", "running"], updated_at__lt=cutoff):
        if locks.is_held(lock_key(run.site_id)):
            continue
        run.error_output = "Command abandoned: the worker stopped before finishing"
        _finish(run, "failed")
        recovered += 1
    return recovered
