"""Git deployments into timestamped release directories.

A deployment clones into ``<site>/releases/<deployment_id>``, runs the site's
deploy script there and then swaps ``<site>/current`` onto the new release
with a rename, so the web server sees either the old tree or the new one.
The site's active deployment pointer only moves after that swap succeeds and
only ever names a successful deployment. A failed deployment leaves both the
symlink and the pointer where they were. Rollbacks repoint ``current`` at an
earlier release that is still on disk.
"""

import hashlib
import hmac
import json
import logging
import shlex
from datetime import timedelta
from typing import List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from . import locks, remote
from .dispatch import dispatch
from .errors import CommandFault, ConnectionFault, FatalJobFault, OrchestratorError, ValidationFault
from .installers.site import site_root
from .models import Deployment, ManagedResource, SiteSource
from .progress import publish_host_event

logger = logging.getLogger(__name__)

DEPLOYMENT_JOB = "yard_orchestrator.deployments.run_deployment"


class WebhookRejected(OrchestratorError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def lock_key(site_id) -> str:
    return f"deploy:{site_id}"


def script_lines(script: str) -> List[str]:
    lines = []
    for raw in (script or "").splitlines():
        line = raw.strip()
        if line and not line.startswith("#"):
            lines.append(line)
    return lines


def _active_site(site_id) -> ManagedResource:
    site = ManagedResource.objects.select_related("host").get(pk=site_id, kind="site")
    if site.status != "active":
        raise ValidationFault("Site is not active", [f"site is {site.status}"])
    return site


def _queue(deployment: Deployment, lease_seconds: int, guard: locks.Guard) -> Deployment:
    try:
        dispatch(DEPLOYMENT_JOB, str(deployment.pk), guard.token, timeout=lease_seconds, on_failure=handle_deployment_failure)
    except Exception:
        locks.get_lock_store().release(guard.key, guard.token)
        raise
    deployment.refresh_from_db()
    return deployment


def queue_deployment(site_id, trigger: str = "manual", branch: str = "", commit_sha: str = "") -> Deployment:
    site = _active_site(site_id)
    source = SiteSource.objects.filter(site=site).first()
    if source is None:
        raise ValidationFault("Site has no linked repository")
    lease = settings.SHIPYARD_DEPLOY_TIMEOUT
    guard = locks.acquire(lock_key(site.pk), lease)
    try:
        deployment = Deployment.objects.create(
            site=site,
            host=site.host,
            trigger=trigger,
            branch=branch or source.branch,
            commit_sha=commit_sha or "",
            deploy_script=source.deploy_script,
        )
    except Exception:
        locks.get_lock_store().release(guard.key, guard.token)
        raise
    logger.info("queued %s deployment %s of site %s", trigger, deployment.pk, site.pk)
    return _queue(deployment, lease, guard)


def queue_rollback(site_id, deployment_id) -> Deployment:
    site = _active_site(site_id)
    source = SiteSource.objects.filter(site=site).first()
    if source is None:
        raise ValidationFault("Site has no linked repository")
    target = Deployment.objects.filter(pk=deployment_id, site=site).first()
    if target is None:
        raise ValidationFault("Deployment does not belong to this site", ["deployment_id"])
    if target.status != "success" or not target.release_path:
        raise ValidationFault("Only successful deployments can be rolled back to")
    if source.active_deployment_id == target.pk:
        raise ValidationFault("That deployment is already active")
    lease = settings.SHIPYARD_DEPLOY_TIMEOUT
    guard = locks.acquire(lock_key(site.pk), lease)
    try:
        deployment = Deployment.objects.create(
            site=site,
            host=site.host,
            trigger="rollback",
            branch=target.branch,
            commit_sha=target.commit_sha,
            release_path=target.release_path,
            rollback_of=target,
        )
    except Exception:
        locks.get_lock_store().release(guard.key, guard.token)
        raise
    logger.info("queued rollback %s of site %s to %s", deployment.pk, site.pk, target.pk)
    return _queue(deployment, lease, guard)


def activate(source: SiteSource, deployment: Deployment) -> None:
    if deployment.status != "success":
        raise ValueError("Only a successful deployment can become active")
    source.active_deployment = deployment
    source.save(update_fields=["active_deployment", "updated_at"])


def _stamp(deployment: Deployment) -> None:
    deployment.completed_at = timezone.now()
    if deployment.started_at:
        delta = deployment.completed_at - deployment.started_at
        deployment.duration_ms = max(0, int(delta.total_seconds() * 1000))


def _publish(deployment: Deployment) -> None:
    publish_host_event(
        deployment.host_id,
        "deployment.status",
        {
            "deployment_id": str(deployment.pk),
            "site_id": str(deployment.site_id),
            "trigger": deployment.trigger,
            "status": deployment.status,
            "commit_sha": deployment.commit_sha,
        },
    )


class _Session:
    """Runs one deployment's commands and keeps a transcript of their output."""

    def __init__(self, deployment: Deployment):
        self.host = deployment.host
        self.runner = remote.get_runner(self.host)
        self.user = settings.SHIPYARD_APP_USER
        self.transcript: List[str] = []

    def run(self, command: str, user: Optional[str] = None) -> remote.CommandResult:
        result = self.runner.execute(self.host, command, settings.SHIPYARD_COMMAND_TIMEOUT, user=user or self.user)
        self.transcript.append(f"$ {command}")
        if result.stdout.strip():
            self.transcript.append(result.stdout.strip())
        if not result.ok:
            raise CommandFault(command, result.exit_code, result.stdout, result.stderr)
        return result

    @property
    def output(self) -> str:
        return "\n".join(self.transcript)[-remote.OUTPUT_TAIL:]


def _swap_command(root: str, release: str) -> str:
    return f"ln -sfn {release} {root}/current.next && mv -Tf {root}/current.next {root}/current"


def _prune_command(root: str, keep: int) -> str:
    return (
        f"cd {root}/releases && current=$(readlink -f {root}/current) && "
        f"ls -1dt */ | sed 's#/$##' | tail -n +{keep + 1} | "
        'while read dir; do [ "$PWD/$dir" = "$current" ] || rm -rf "$dir"; done'
    )


def _build(session: _Session, deployment: Deployment, source: SiteSource, root: str, release: str) -> str:
    session.run(f"mkdir -p {root}/releases")
    session.run(
        f"git clone --depth 1 --branch {shlex.quote(deployment.branch)} {shlex.quote(source.repository_url)} {release}"
    )
    if deployment.commit_sha:
        sha = shlex.quote(deployment.commit_sha)
        session.run(f"git -C {release} fetch --depth 1 origin {sha} && git -C {release} checkout --force {sha}")
    commit = session.run(f"git -C {release} rev-parse HEAD").stdout.strip()
    for line in script_lines(deployment.deploy_script):
        session.run(f"cd {release} && {line}")
    return commit


def run_deployment(deployment_id, lock_token: Optional[str] = None) -> Optional[Deployment]:
    deployment = Deployment.objects.select_related("site", "host").filter(pk=deployment_id).first()
    if deployment is None:
        logger.warning("deployment %s no longer exists", deployment_id)
        return None
    with locks.hold(lock_key(deployment.site_id), settings.SHIPYARD_DEPLOY_TIMEOUT, token=lock_token):
        deployment.refresh_from_db()
        if deployment.status != "pending":
            logger.warning("deployment %s skipped: already %s", deployment.pk, deployment.status)
            return deployment
        source = SiteSource.objects.get(site_id=deployment.site_id)
        root = site_root(settings.SHIPYARD_APP_USER, deployment.site.config_json["domain"])
        rollback = deployment.trigger == "rollback"
        release = deployment.release_path if rollback else f"{root}/releases/{deployment.pk}"
        deployment.status = "updating"
        deployment.started_at = timezone.now()
        deployment.release_path = release
        deployment.save(update_fields=["status", "started_at", "release_path", "updated_at"])
        _publish(deployment)
        session = _Session(deployment)
        try:
            if rollback:
                session.run(f"test -d {release}")
                commit = deployment.commit_sha
            else:
                commit = _build(session, deployment, source, root, release)
            session.run(_swap_command(root, release))
        except (CommandFault, ConnectionFault) as exc:
            _finish_failed(deployment, session, exc)
            if not rollback:
                _discard_release(session, release)
            return deployment
        except Exception as exc:
            logger.exception("deployment %s crashed", deployment.pk)
            _finish_failed(deployment, session, exc)
            raise FatalJobFault(str(exc)) from exc
        with transaction.atomic():
            source = SiteSource.objects.select_for_update().get(pk=source.pk)
            deployment.status = "success"
            deployment.exit_code = 0
            deployment.commit_sha = commit
            deployment.output = session.output
            _stamp(deployment)
            deployment.save()
            activate(source, deployment)
        logger.info("deployment %s of site %s is live at %s", deployment.pk, deployment.site_id, commit)
        _publish(deployment)
        _prune_releases(session, root)
    return deployment


def _finish_failed(deployment: Deployment, session: _Session, exc: Exception) -> None:
    deployment.status = "failed"
    deployment.exit_code = getattr(exc, "exit_code", None)
    deployment.output = session.output
    deployment.error_output = str(exc)
    _stamp(deployment)
    deployment.save()
    logger.warning("deployment %s failed: %s", deployment.pk, exc)
    _publish(deployment)


def _discard_release(session: _Session, release: str) -> None:
    try:
        session.run(f"rm -rf {release}")
    except (CommandFault, ConnectionFault) as exc:
        logger.warning("could not remove failed release %s: %s", release, exc)


def _prune_releases(session: _Session, root: str) -> None:
    try:
        session.run(_prune_command(root, settings.SHIPYARD_DEPLOY_KEEP_RELEASES))
    except (CommandFault, ConnectionFault) as exc:
        logger.warning("could not prune releases under %s: %s", root, exc)


def handle_deployment_failure(job, connection, exc_type, exc_value, traceback) -> None:
    if not job.args:
        return
    deployment = Deployment.objects.filter(pk=job.args[0], status__in=["pending", "updating"]).first()
    if deployment is None:
        return
    logger.error("deployment job %s failed in the worker: %s", job.id, exc_value)
    deployment.status = "failed"
    deployment.error_output = f"Job {job.id} failed in the worker: {exc_value}"
    _stamp(deployment)
    deployment.save()


def recover_stale_deployments() -> int:
    """Fail deployments left pending or updating after their job could no longer be running."""
    cutoff = timezone.now() - timedelta(seconds=settings.SHIPYARD_DEPLOY_TIMEOUT + 60)
    recovered = 0
    for deployment in Deployment.objects.filter(status__in=["pending", "updating"], updated_at__lt=cutoff):
        if locks.is_held(lock_key(deployment.site_id)):
            continue
        deployment.status = "failed"
        deployment.error_output = "Deployment abandoned: the worker stopped before finishing"
        _stamp(deployment)
        deployment.save()
        _publish(deployment)
        recovered += 1
    if recovered:
        logger.warning("recovered %s abandoned deployments", recovered)
    return recovered


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Check a GitHub ``X-Hub-Signature-256`` header against the raw body."""
    if not secret or not signature or not signature.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def handle_push_webhook(site_id, event: str, body: bytes, signature: str) -> Tuple[Optional[Deployment], str]:
    """Queue a deployment for a verified push to the tracked branch.

    Returns the deployment (or None) and a short reason for the response body.
    """
    source = SiteSource.objects.select_related("site").filter(site_id=site_id).first()
    if source is None:
        raise WebhookRejected("Unknown site", 404)
    if not verify_signature(source.webhook_secret, body, signature):
        raise WebhookRejected("Invalid signature", 401)
    if event == "ping":
        return None, "pong"
    if event != "push":
        return None, f"ignored {event} event"
    if not source.auto_deploy_enabled:
        return None, "auto deploy is disabled"
    try:
        payload = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise WebhookRejected("Invalid JSON payload") from None
    if not isinstance(payload, dict):
        raise WebhookRejected("Invalid JSON payload")
    ref = payload.get("ref") or ""
    branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ""
    if branch != source.branch:
        return None, f"ignored push to {branch or ref or 'unknown ref'}"
    if payload.get("deleted") or set(payload.get("after") or "") == {"0"}:
        return None, f"ignored deletion of {branch}"
    commit = payload.get("after") or (payload.get("head_commit") or {}).get("id") or ""
    deployment = queue_deployment(site_id, trigger="webhook", branch=branch, commit_sha=commit)
    return deployment, "deployment queued"
