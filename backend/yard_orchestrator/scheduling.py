"""Firing recurring tasks and recording their runs.

The scheduler tick matches every active recurring task's cron expression
against the current minute and dispatches one run job per due task. A run
executes the task's wrapper script on the host, which enforces the task
timeout with ``timeout(1)``, and stores exit code and output. A run that is
still going when the next fire comes due is not overlapped.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, Optional

from croniter import croniter
from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from . import lifecycle, locks, remote
from .dispatch import dispatch
from .errors import CommandFault, ConnectionFault, LockContention, ValidationFault
from .installers.scheduler import RecurringTaskInstaller
from .models import Host, ManagedResource, ScheduledTaskRun
from .validation import raise_for, schema_errors

logger = logging.getLogger(__name__)

TASK_RUN_JOB = "yard_orchestrator.scheduling.run_scheduled_task"
# Slack beyond the task timeout for the kill-after window and connection setup.
GRACE_SECONDS = 30

HEARTBEAT_SCHEMA = {
    "type": "object",
    "required": ["task_id", "started_at", "exit_code"],
    "properties": {
        "task_id": {"type": "string", "minLength": 1},
        "started_at": {"type": "string"},
        "completed_at": {"type": ["string", "null"]},
        "exit_code": {"type": ["integer", "null"]},
        "output": {"type": "string"},
        "error_output": {"type": "string"},
    },
}


def lock_key(task_id) -> str:
    return f"task-run:{task_id}"


def task_timeout(task: ManagedResource) -> int:
    return int((task.config_json or {}).get("timeout") or settings.SHIPYARD_TASK_DEFAULT_TIMEOUT)


def is_due(task: ManagedResource, now: datetime) -> bool:
    expression = (task.config_json or {}).get("cron_expression")
    if not expression:
        return False
    return croniter.match(expression, now.replace(second=0, microsecond=0))


def next_run(task: ManagedResource, after: datetime) -> Optional[datetime]:
    expression = (task.config_json or {}).get("cron_expression")
    if not expression:
        return None
    return croniter(expression, after).get_next(datetime)


def queue_task_run(task: ManagedResource, trigger: str = "manual") -> str:
    if task.kind != "recurring_task":
        raise ValidationFault("Only recurring tasks can be run on demand")
    if task.status != lifecycle.ACTIVE:
        raise ValidationFault("Task is not active", [f"task is {task.status}"])
    if locks.is_held(lock_key(task.pk)):
        raise LockContention(lock_key(task.pk))
    return dispatch(TASK_RUN_JOB, str(task.pk), trigger, timeout=task_timeout(task) + GRACE_SECONDS * 2)


def dispatch_due_tasks(now: Optional[datetime] = None) -> int:
    now = now or timezone.now()
    dispatched = 0
    tasks = ManagedResource.objects.filter(kind="recurring_task", status=lifecycle.ACTIVE).select_related("host")
    for task in tasks:
        if not is_due(task, now):
            continue
        dispatch(TASK_RUN_JOB, str(task.pk), "schedule", timeout=task_timeout(task) + GRACE_SECONDS * 2)
        dispatched += 1
    if dispatched:
        logger.info("dispatched %s recurring tasks for %s", dispatched, now.strftime("%Y-%m-%d %H:%M"))
    return dispatched


def _execute(task: ManagedResource, trigger: str) -> ScheduledTaskRun:
    installer = RecurringTaskInstaller(task)
    run = ScheduledTaskRun.objects.create(task=task, host=task.host, trigger=trigger, started_at=timezone.now())
    try:
        result = remote.get_runner(task.host).execute(
            task.host, installer.script_path, task_timeout(task) + GRACE_SECONDS, user=installer.run_as
        )
        run.exit_code = result.exit_code
        run.output = result.stdout
        run.error_output = result.stderr
    except CommandFault as exc:
        run.exit_code = exc.exit_code
        run.output = exc.stdout
        run.error_output = str(exc)
    except ConnectionFault as exc:
        run.error_output = str(exc)
    except Exception as exc:
        run.error_output = f"{exc.__class__.__name__}: {exc}"
        raise
    finally:
        run.completed_at = timezone.now()
        run.save()
    logger.info("task %s (%s) finished with exit code %s", task.pk, trigger, run.exit_code)
    return run


def run_scheduled_task(task_id, trigger: str = "schedule") -> Optional[ScheduledTaskRun]:
    task = ManagedResource.objects.select_related("host").filter(pk=task_id, kind="recurring_task").first()
    if task is None:
        logger.warning("task %s no longer exists", task_id)
        return None
    if task.status != lifecycle.ACTIVE:
        logger.info("task %s skipped: %s", task.pk, task.status)
        return None
    try:
        with locks.hold(lock_key(task.pk), task_timeout(task) + GRACE_SECONDS * 2):
            return _execute(task, trigger)
    except LockContention:
        logger.info("task %s skipped: previous run still in progress", task.pk)
        return None


def record_task_run(host: Host, payload: Dict[str, Any]) -> ScheduledTaskRun:
    """Store a run the host reported itself."""
    errors = schema_errors(HEARTBEAT_SCHEMA, payload)
    raise_for(errors, "Invalid task run report")
    try:
        task_id = uuid.UUID(payload["task_id"])
    except ValueError:
        raise ValidationFault("Invalid task run report", ["task_id must be a UUID"]) from None
    task = ManagedResource.objects.filter(pk=task_id, host=host, kind="recurring_task").first()
    if task is None:
        raise ValidationFault("Unknown task for this host", ["task_id"])
    started_at = _parse_time(payload["started_at"], "started_at", errors)
    completed_at = _parse_time(payload.get("completed_at"), "completed_at", errors) if payload.get("completed_at") else None
    if started_at and completed_at and completed_at < started_at:
        errors.append("completed_at must not be earlier than started_at")
    raise_for(errors, "Invalid task run report")
    return ScheduledTaskRun.objects.create(
        task=task,
        host=host,
        trigger="heartbeat",
        started_at=started_at,
        completed_at=completed_at,
        exit_code=payload.get("exit_code"),
        output=(payload.get("output") or "")[-remote.OUTPUT_TAIL:],
        error_output=(payload.get("error_output") or "")[-remote.OUTPUT_TAIL:],
    )


def _parse_time(value: str, field: str, errors) -> Optional[datetime]:
    try:
        parsed = parse_datetime(value) if isinstance(value, str) else None
    except ValueError:
        parsed = None
    if parsed is None:
        errors.append(f"{field} must be an ISO 8601 timestamp")
        return None
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, dt_timezone.utc)
    return parsed


def prune_task_runs(now: Optional[datetime] = None) -> int:
    cutoff = (now or timezone.now()) - timedelta(days=settings.SHIPYARD_TASK_RUN_RETENTION_DAYS)
    deleted, _ = ScheduledTaskRun.objects.filter(started_at__lt=cutoff).delete()
    if deleted:
        logger.info("pruned %s task runs older than %s", deleted, cutoff.date())
    return deleted
