import hmac
import json
from typing import Any, Dict, Optional

from django.contrib.auth.decorators import login_required
from django.core.exceptions import ObjectDoesNotExist, ValidationError as DjangoValidationError
from django.http import HttpRequest, JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from . import bootstrap, enqueue
from .deployments import WebhookRejected, handle_push_webhook
from .errors import InvalidTransition, LockContention, OrchestratorError, ValidationFault
from .installers.base import public_config
from .metrics import ingest_metrics
from .models import (
    Deployment,
    Host,
    HostBootstrapState,
    HostMetric,
    HostMonitor,
    ManagedResource,
    OperationEvent,
    ScheduledTaskRun,
    SiteCommandRun,
    SiteSource,
)
from .monitors import create_monitor
from .scheduling import record_task_run
from .validation import ip_errors, raise_for

EVENT_PAGE_SIZE = 200


def _require_staff(request: HttpRequest) -> Optional[JsonResponse]:
    if not request.user.is_authenticated or not request.user.is_staff:
        return JsonResponse({"error": "Staff access required"}, status=403)
    return None


def _require_host_token(request: HttpRequest, expected: str) -> Optional[JsonResponse]:
    auth_header = request.headers.get("Authorization", "").strip()
    provided = auth_header.split(" ", 1)[1].strip() if auth_header.lower().startswith("bearer ") else ""
    if not provided or not hmac.compare_digest(provided, expected):
        return JsonResponse({"error": "Unauthorized"}, status=401)
    return None


def _json_body(request: HttpRequest) -> Dict[str, Any]:
    if not request.body:
        return {}
    try:
        payload = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationFault("Request body must be JSON") from None
    if not isinstance(payload, dict):
        raise ValidationFault("Request body must be a JSON object")
    return payload


def _fault_response(exc: Exception) -> JsonResponse:
    if isinstance(exc, ValidationFault):
        return JsonResponse({"error": str(exc), "details": exc.errors}, status=400)
    if isinstance(exc, (LockContention, InvalidTransition)):
        return JsonResponse({"error": str(exc)}, status=409)
    if isinstance(exc, ObjectDoesNotExist):
        return JsonResponse({"error": "Not found"}, status=404)
    return JsonResponse({"error": str(exc)}, status=400)


def _host_payload(host: Host) -> dict:
    state = getattr(host, "bootstrap_state", None)
    return {
        "id": str(host.id),
        "name": host.name,
        "public_ip": host.public_ip,
        "ssh_port": host.ssh_port,
        "ssh_user": host.ssh_user,
        "transport": host.transport,
        "aws_instance_id": host.aws_instance_id,
        "aws_region": host.aws_region,
        "connection_status": host.connection_status,
        "os_name": host.os_name,
        "os_version": host.os_version,
        "ready": host.is_ready,
        "bootstrap": bootstrap.progress_payload(state) if state else None,
        "created_at": host.created_at,
        "updated_at": host.updated_at,
    }


def _resource_payload(resource: ManagedResource) -> dict:
    return {
        "id": str(resource.id),
        "host_id": str(resource.host_id),
        "kind": resource.kind,
        "identifying_key": resource.identifying_key,
        "status": resource.status,
        "error_log": resource.error_log,
        "config": public_config(resource.config_json or {}),
        "installed_at": resource.installed_at,
        "uninstalled_at": resource.uninstalled_at,
        "created_at": resource.created_at,
        "updated_at": resource.updated_at,
    }


def _deployment_payload(deployment: Deployment) -> dict:
    return {
        "id": str(deployment.id),
        "site_id": str(deployment.site_id),
        "status": deployment.status,
        "trigger": deployment.trigger,
        "branch": deployment.branch,
        "commit_sha": deployment.commit_sha,
        "release_path": deployment.release_path,
        "rollback_of": str(deployment.rollback_of_id) if deployment.rollback_of_id else None,
        "exit_code": deployment.exit_code,
        "output": deployment.output,
        "error_output": deployment.error_output,
        "started_at": deployment.started_at,
        "completed_at": deployment.completed_at,
        "duration_ms": deployment.duration_ms,
    }


def _run_payload(run: ScheduledTaskRun) -> dict:
    return {
        "id": str(run.id),
        "task_id": str(run.task_id),
        "trigger": run.trigger,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "exit_code": run.exit_code,
        "successful": run.successful,
        "output": run.output,
        "error_output": run.error_output,
        "duration_ms": run.duration_ms,
    }


def _metric_payload(sample: HostMetric) -> dict:
    return {
        "cpu_usage": sample.cpu_usage,
        "memory_total_mb": sample.memory_total_mb,
        "memory_used_mb": sample.memory_used_mb,
        "memory_usage_percentage": sample.memory_usage_percentage,
        "storage_total_gb": sample.storage_total_gb,
        "storage_used_gb": sample.storage_used_gb,
        "storage_usage_percentage": sample.storage_usage_percentage,
        "collected_at": sample.collected_at,
    }


def _monitor_payload(monitor: HostMonitor) -> dict:
    return {
        "id": str(monitor.id),
        "host_id": str(monitor.host_id),
        "name": monitor.name,
        "metric_type": monitor.metric_type,
        "operator": monitor.operator,
        "threshold": monitor.threshold,
        "duration_minutes": monitor.duration_minutes,
        "cooldown_minutes": monitor.cooldown_minutes,
        "enabled": monitor.enabled,
        "status": monitor.status,
        "last_triggered_at": monitor.last_triggered_at,
        "last_recovered_at": monitor.last_recovered_at,
    }


def _command_payload(run: SiteCommandRun) -> dict:
    return {
        "id": str(run.id),
        "site_id": str(run.site_id),
        "command": run.command,
        "status": run.status,
        "exit_code": run.exit_code,
        "output": run.output,
        "error_output": run.error_output,
        "requested_by": run.requested_by,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "duration_ms": run.duration_ms,
    }


@csrf_exempt
@login_required
@require_http_methods(["GET", "POST"])
def hosts(request: HttpRequest) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    if request.method == "POST":
        try:
            payload = _json_body(request)
            if not payload.get("name"):
                raise ValidationFault("name is required")
            if payload.get("public_ip"):
                raise_for(ip_errors(payload["public_ip"], "public_ip"), "Invalid host")
            if payload.get("transport", "ssh") not in dict(Host.TRANSPORT_CHOICES):
                raise ValidationFault("transport must be ssh or ssm")
            host = Host.objects.create(
                name=payload["name"],
                public_ip=payload.get("public_ip") or None,
                ssh_port=int(payload.get("ssh_port") or 22),
                ssh_user=payload.get("ssh_user") or "root",
                ssh_private_key=payload.get("ssh_private_key") or "",
                transport=payload.get("transport") or "ssh",
                aws_instance_id=payload.get("aws_instance_id") or "",
                aws_region=payload.get("aws_region") or "",
            )
        except (OrchestratorError, ValueError) as exc:
            return _fault_response(exc)
        return JsonResponse(_host_payload(host), status=201)
    data = [_host_payload(host) for host in Host.objects.select_related("bootstrap_state")]
    return JsonResponse({"hosts": data})


@csrf_exempt
@login_required
@require_http_methods(["GET"])
def host_detail(request: HttpRequest, host_id) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    host = get_object_or_404(Host, id=host_id)
    payload = _host_payload(host)
    payload["installed"] = bootstrap.installed_summary(host)
    return JsonResponse(payload)


@csrf_exempt
@login_required
@require_http_methods(["GET", "POST"])
def host_bootstrap(request: HttpRequest, host_id) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    host = get_object_or_404(Host, id=host_id)
    if request.method == "POST":
        try:
            config = _json_body(request)
            job_id = enqueue.enqueue_bootstrap(host.pk, config or None)
        except (OrchestratorError, ObjectDoesNotExist) as exc:
            return _fault_response(exc)
        state = HostBootstrapState.objects.get(host=host)
        return JsonResponse({"job_id": job_id, **bootstrap.progress_payload(state)}, status=202)
    state = getattr(host, "bootstrap_state", None)
    if state is None:
        return JsonResponse({"phase": "pending", "last_error": "", "steps": []})
    return JsonResponse(bootstrap.progress_payload(state))


@csrf_exempt
@login_required
@require_http_methods(["GET", "POST"])
def host_resources(request: HttpRequest, host_id) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    host = get_object_or_404(Host, id=host_id)
    if request.method == "POST":
        try:
            payload = _json_body(request)
            kind = payload.get("kind") or ""
            config = payload.get("config") or {}
            if not isinstance(config, dict):
                raise ValidationFault("config must be an object")
            resource = enqueue.request_install(host.pk, kind, config)
        except (OrchestratorError, ObjectDoesNotExist) as exc:
            return _fault_response(exc)
        return JsonResponse(_resource_payload(resource), status=202)
    resources = ManagedResource.objects.filter(host=host)
    if kind := request.GET.get("kind"):
        resources = resources.filter(kind=kind)
    if request.GET.get("include_uninstalled") != "true":
        resources = resources.exclude(status="uninstalled")
    return JsonResponse({"resources": [_resource_payload(resource) for resource in resources]})


@csrf_exempt
@login_required
@require_http_methods(["GET"])
def resource_detail(request: HttpRequest, host_id, resource_id) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    resource = get_object_or_404(ManagedResource, id=resource_id, host_id=host_id)
    return JsonResponse(_resource_payload(resource))


_RESOURCE_ACTIONS = {
    "install": enqueue.enqueue_install,
    "uninstall": enqueue.enqueue_uninstall,
    "run": enqueue.enqueue_task_run,
}


@csrf_exempt
@login_required
@require_http_methods(["POST"])
def resource_action(request: HttpRequest, host_id, resource_id, action: str) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    try:
        if action in _RESOURCE_ACTIONS:
            job_id = _RESOURCE_ACTIONS[action](host_id, resource_id)
            resource = ManagedResource.objects.get(pk=resource_id)
            return JsonResponse({"job_id": job_id, "resource": _resource_payload(resource)}, status=202)
        if action == "pause":
            resource = enqueue.pause_resource(host_id, resource_id)
        elif action == "resume":
            resource = enqueue.resume_resource(host_id, resource_id)
        else:
            return JsonResponse({"error": f"Unknown action: {action}"}, status=404)
    except (OrchestratorError, ObjectDoesNotExist) as exc:
        return _fault_response(exc)
    return JsonResponse(_resource_payload(resource))


@csrf_exempt
@login_required
@require_http_methods(["GET"])
def task_runs(request: HttpRequest, host_id, resource_id) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    task = get_object_or_404(ManagedResource, id=resource_id, host_id=host_id, kind="recurring_task")
    runs = ScheduledTaskRun.objects.filter(task=task)[:100]
    return JsonResponse({"runs": [_run_payload(run) for run in runs]})


@csrf_exempt
@login_required
@require_http_methods(["GET"])
def host_events(request: HttpRequest, host_id) -> JsonResponse:
    """Replay milestones for a host, oldest first; ``after`` pages by event id."""
    if staff_error := _require_staff(request):
        return staff_error
    host = get_object_or_404(Host, id=host_id)
    events = OperationEvent.objects.filter(host=host)
    if resource_id := request.GET.get("resource_id"):
        events = events.filter(resource_id=resource_id)
    if run_id := request.GET.get("run_id"):
        events = events.filter(run_id=run_id)
    after = request.GET.get("after")
    if after and after.isdigit():
        events = events.filter(id__gt=int(after))
    return JsonResponse({"events": [event.as_payload() for event in events.order_by("id")[:EVENT_PAGE_SIZE]]})


@csrf_exempt
@require_http_methods(["GET", "POST"])
def host_metrics(request: HttpRequest, host_id) -> JsonResponse:
    host = get_object_or_404(Host, id=host_id)
    if request.method == "GET":
        if staff_error := _require_staff(request):
            return staff_error
        samples = HostMetric.objects.filter(host=host)[:100]
        return JsonResponse({"metrics": [_metric_payload(sample) for sample in samples]})
    if token_error := _require_host_token(request, host.monitoring_token):
        return token_error
    try:
        sample = ingest_metrics(host, _json_body(request))
    except OrchestratorError as exc:
        return _fault_response(exc)
    return JsonResponse({"id": sample.id}, status=201)


@csrf_exempt
@require_http_methods(["POST"])
def host_task_report(request: HttpRequest, host_id) -> JsonResponse:
    host = get_object_or_404(Host, id=host_id)
    if token_error := _require_host_token(request, host.scheduler_token):
        return token_error
    try:
        run = record_task_run(host, _json_body(request))
    except OrchestratorError as exc:
        return _fault_response(exc)
    return JsonResponse(_run_payload(run), status=201)


@csrf_exempt
@login_required
@require_http_methods(["GET", "POST"])
def site_deployments(request: HttpRequest, site_id) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    site = get_object_or_404(ManagedResource, id=site_id, kind="site")
    if request.method == "POST":
        try:
            payload = _json_body(request)
            deployment = enqueue.enqueue_deployment(
                site.pk, branch=payload.get("branch") or "", commit_sha=payload.get("commit_sha") or ""
            )
        except (OrchestratorError, ObjectDoesNotExist) as exc:
            return _fault_response(exc)
        return JsonResponse(_deployment_payload(deployment), status=202)
    source = SiteSource.objects.filter(site=site).first()
    deployments = Deployment.objects.filter(site=site)[:50]
    return JsonResponse(
        {
            "active_deployment_id": str(source.active_deployment_id) if source and source.active_deployment_id else None,
            "deployments": [_deployment_payload(deployment) for deployment in deployments],
        }
    )


@csrf_exempt
@login_required
@require_http_methods(["POST"])
def site_rollback(request: HttpRequest, site_id) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    try:
        payload = _json_body(request)
        if not payload.get("deployment_id"):
            raise ValidationFault("deployment_id is required")
        deployment = enqueue.enqueue_rollback(site_id, payload["deployment_id"])
    except (OrchestratorError, ObjectDoesNotExist, DjangoValidationError) as exc:
        return _fault_response(exc)
    return JsonResponse(_deployment_payload(deployment), status=202)


@csrf_exempt
@login_required
@require_http_methods(["GET", "POST"])
def host_monitors(request: HttpRequest, host_id) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    host = get_object_or_404(Host, id=host_id)
    if request.method == "POST":
        try:
            monitor = create_monitor(host, _json_body(request))
        except OrchestratorError as exc:
            return _fault_response(exc)
        return JsonResponse(_monitor_payload(monitor), status=201)
    return JsonResponse({"monitors": [_monitor_payload(monitor) for monitor in HostMonitor.objects.filter(host=host)]})


@csrf_exempt
@login_required
@require_http_methods(["DELETE"])
def monitor_detail(request: HttpRequest, host_id, monitor_id) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    monitor = get_object_or_404(HostMonitor, id=monitor_id, host_id=host_id)
    monitor.delete()
    return JsonResponse({"deleted": str(monitor_id)})


@csrf_exempt
@login_required
@require_http_methods(["GET", "POST"])
def site_commands(request: HttpRequest, site_id) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    site = get_object_or_404(ManagedResource, id=site_id, kind="site")
    if request.method == "POST":
        try:
            payload = _json_body(request)
            run = enqueue.enqueue_site_command(site.pk, payload.get("command") or "", requested_by=request.user.get_username())
        except (OrchestratorError, ObjectDoesNotExist) as exc:
            return _fault_response(exc)
        return JsonResponse(_command_payload(run), status=202)
    runs = SiteCommandRun.objects.filter(site=site)[:50]
    return JsonResponse({"commands": [_command_payload(run) for run in runs]})


@csrf_exempt
@require_http_methods(["POST"])
def github_webhook(request: HttpRequest, site_id) -> JsonResponse:
    try:
        deployment, reason = handle_push_webhook(
            site_id,
            request.headers.get("X-GitHub-Event", ""),
            request.body,
            request.headers.get("X-Hub-Signature-256", ""),
        )
    except WebhookRejected as exc:
        return JsonResponse({"error": str(exc)}, status=exc.status_code)
    except (OrchestratorError, ObjectDoesNotExist) as exc:
        return _fault_response(exc)
    if deployment is None:
        return JsonResponse({"status": "ignored", "reason": reason})
    return JsonResponse({"status": "queued", "deployment_id": str(deployment.id)}, status=202)
