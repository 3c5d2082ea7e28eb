import secrets
import uuid

from django.db import models
from django.db.models import Q


def _token() -> str:
    return secrets.token_hex(16)


class Host(models.Model):
    TRANSPORT_CHOICES = [
        ("ssh", "SSH"),
        ("ssm", "AWS SSM"),
    ]
    CONNECTION_CHOICES = [
        ("pending", "Pending"),
        ("connected", "Connected"),
        ("failed", "Failed"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    public_ip = models.GenericIPAddressField(null=True, blank=True)
    ssh_port = models.PositiveIntegerField(default=22)
    ssh_user = models.CharField(max_length=64, default="root")
    ssh_private_key = models.TextField(blank=True)
    transport = models.CharField(max_length=10, choices=TRANSPORT_CHOICES, default="ssh")
    aws_instance_id = models.CharField(max_length=64, blank=True)
    aws_region = models.CharField(max_length=50, blank=True)
    connection_status = models.CharField(max_length=20, choices=CONNECTION_CHOICES, default="pending")
    os_name = models.CharField(max_length=64, blank=True)
    os_version = models.CharField(max_length=64, blank=True)
    monitoring_token = models.CharField(max_length=64, default=_token, editable=False)
    scheduler_token = models.CharField(max_length=64, default=_token, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return f"{self.name} ({self.public_ip or self.aws_instance_id or 'unreachable'})"

    @property
    def is_ready(self) -> bool:
        state = getattr(self, "bootstrap_state", None)
        return bool(state and state.phase == "completed")


class ManagedResource(models.Model):
    KIND_CHOICES = [
        ("runtime", "Runtime"),
        ("database", "Database"),
        ("database_user", "Database user"),
        ("firewall", "Firewall"),
        ("firewall_rule", "Firewall rule"),
        ("supervisor", "Supervisor"),
        ("worker_task", "Worker task"),
        ("scheduler", "Scheduler"),
        ("recurring_task", "Recurring task"),
        ("reverse_proxy", "Reverse proxy"),
        ("site", "Site"),
        ("toolchain", "Toolchain"),
    ]
    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("installing", "Installing"),
        ("active", "Active"),
        ("failed", "Failed"),
        ("removing", "Removing"),
        ("uninstalled", "Uninstalled"),
        ("paused", "Paused"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    host = models.ForeignKey(Host, on_delete=models.CASCADE, related_name="resources")
    kind = models.CharField(max_length=30, choices=KIND_CHOICES)
    identifying_key = models.CharField(max_length=255)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    error_log = models.TextField(blank=True)
    config_json = models.JSONField(default=dict, blank=True)
    installed_at = models.DateTimeField(null=True, blank=True)
    uninstalled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["host", "kind", "identifying_key"],
                condition=~Q(status="uninstalled"),
                name="yard_resource_unique_live_key",
            )
        ]
        indexes = [
            models.Index(fields=["host", "kind", "status"], name="yard_resource_host_kind_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.kind}:{self.identifying_key} on {self.host_id} [{self.status}]"


class OperationEvent(models.Model):
    OPERATION_CHOICES = [
        ("install", "Install"),
        ("uninstall", "Uninstall"),
    ]
    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("success", "Success"),
        ("failed", "Failed"),
    ]

    id = models.BigAutoField(primary_key=True)
    host = models.ForeignKey(Host, on_delete=models.CASCADE, related_name="operation_events")
    resource = models.ForeignKey(
        ManagedResource, null=True, blank=True, on_delete=models.SET_NULL, related_name="events"
    )
    resource_kind = models.CharField(max_length=30)
    run_id = models.UUIDField(db_index=True)
    operation_type = models.CharField(max_length=20, choices=OPERATION_CHOICES)
    milestone = models.CharField(max_length=200)
    current_step = models.PositiveIntegerField(default=0)
    total_steps = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    details_json = models.JSONField(default=dict, blank=True)
    error_log = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["id"]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Operation events are append-only")
        super().save(*args, **kwargs)

    def as_payload(self) -> dict:
        return {
            "id": self.id,
            "host_id": str(self.host_id),
            "resource_id": str(self.resource_id) if self.resource_id else None,
            "resource_kind": self.resource_kind,
            "run_id": str(self.run_id),
            "operation_type": self.operation_type,
            "milestone": self.milestone,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "status": self.status,
            "details": self.details_json or {},
            "error_log": self.error_log,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class HostBootstrapState(models.Model):
    PHASE_CHOICES = [
        ("pending", "Pending"),
        ("installing", "Installing"),
        ("failed", "Failed"),
        ("completed", "Completed"),
    ]

    host = models.OneToOneField(Host, on_delete=models.CASCADE, related_name="bootstrap_state", primary_key=True)
    phase = models.CharField(max_length=20, choices=PHASE_CHOICES, default="pending")
    step_progress_json = models.JSONField(default=dict, blank=True)
    config_json = models.JSONField(default=dict, blank=True)
    last_error = models.TextField(blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)


class ScheduledTaskRun(models.Model):
    TRIGGER_CHOICES = [
        ("schedule", "Schedule"),
        ("manual", "Manual"),
        ("heartbeat", "Heartbeat"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    task = models.ForeignKey(ManagedResource, on_delete=models.CASCADE, related_name="task_runs")
    host = models.ForeignKey(Host, on_delete=models.CASCADE, related_name="task_runs")
    trigger = models.CharField(max_length=20, choices=TRIGGER_CHOICES, default="schedule")
    started_at = models.DateTimeField()
    completed_at = models.DateTimeField(null=True, blank=True)
    exit_code = models.IntegerField(null=True, blank=True)
    output = models.TextField(blank=True)
    error_output = models.TextField(blank=True)
    duration_ms = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-started_at"]

    def save(self, *args, **kwargs):
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            self.duration_ms = max(0, int(delta.total_seconds() * 1000))
        else:
            self.duration_ms = None
        if kwargs.get("update_fields") is not None:
            kwargs["update_fields"] = list(set(kwargs["update_fields"]) | {"duration_ms"})
        super().save(*args, **kwargs)

    @property
    def successful(self) -> bool:
        return self.exit_code == 0


class Deployment(models.Model):
    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("updating", "Updating"),
        ("success", "Success"),
        ("failed", "Failed"),
    ]
    TRIGGER_CHOICES = [
        ("manual", "Manual"),
        ("webhook", "Webhook"),
        ("rollback", "Rollback"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    site = models.ForeignKey(ManagedResource, on_delete=models.CASCADE, related_name="deployments")
    host = models.ForeignKey(Host, on_delete=models.CASCADE, related_name="deployments")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    trigger = models.CharField(max_length=20, choices=TRIGGER_CHOICES, default="manual")
    branch = models.CharField(max_length=200, blank=True)
    commit_sha = models.CharField(max_length=64, blank=True)
    deploy_script = models.TextField(blank=True)
    release_path = models.CharField(max_length=500, blank=True)
    rollback_of = models.ForeignKey(
        "self", null=True, blank=True, on_delete=models.SET_NULL, related_name="rollbacks"
    )
    exit_code = models.IntegerField(null=True, blank=True)
    output = models.TextField(blank=True)
    error_output = models.TextField(blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    duration_ms = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]


class SiteSource(models.Model):
    site = models.OneToOneField(ManagedResource, on_delete=models.CASCADE, related_name="source", primary_key=True)
    repository_url = models.CharField(max_length=500)
    branch = models.CharField(max_length=200, default="main")
    deploy_script = models.TextField(blank=True)
    auto_deploy_enabled = models.BooleanField(default=False)
    webhook_secret = models.CharField(max_length=64, default=_token)
    active_deployment = models.ForeignKey(
        Deployment, null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    updated_at = models.DateTimeField(auto_now=True)


class HostMetric(models.Model):
    id = models.BigAutoField(primary_key=True)
    host = models.ForeignKey(Host, on_delete=models.CASCADE, related_name="metrics")
    cpu_usage = models.FloatField()
    memory_total_mb = models.PositiveIntegerField()
    memory_used_mb = models.PositiveIntegerField()
    memory_usage_percentage = models.FloatField()
    storage_total_gb = models.PositiveIntegerField()
    storage_used_gb = models.PositiveIntegerField()
    storage_usage_percentage = models.FloatField()
    collected_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-collected_at"]
        indexes = [models.Index(fields=["host", "collected_at"], name="yard_metric_host_time_idx")]


class HostMonitor(models.Model):
    METRIC_CHOICES = [
        ("cpu", "CPU"),
        ("memory", "Memory"),
        ("storage", "Storage"),
    ]
    OPERATOR_CHOICES = [
        (">", "Above"),
        (">=", "At or above"),
        ("<", "Below"),
        ("<=", "At or below"),
        ("==", "Equal to"),
    ]
    STATUS_CHOICES = [
        ("normal", "Normal"),
        ("triggered", "Triggered"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    host = models.ForeignKey(Host, on_delete=models.CASCADE, related_name="monitors")
    name = models.CharField(max_length=100)
    metric_type = models.CharField(max_length=20, choices=METRIC_CHOICES)
    operator = models.CharField(max_length=2, choices=OPERATOR_CHOICES, default=">")
    threshold = models.FloatField()
    duration_minutes = models.PositiveIntegerField(default=5)
    cooldown_minutes = models.PositiveIntegerField(default=60)
    enabled = models.BooleanField(default=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="normal")
    last_triggered_at = models.DateTimeField(null=True, blank=True)
    last_recovered_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]


class SiteCommandRun(models.Model):
    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("running", "Running"),
        ("success", "Success"),
        ("failed", "Failed"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    site = models.ForeignKey(ManagedResource, on_delete=models.CASCADE, related_name="command_runs")
    host = models.ForeignKey(Host, on_delete=models.CASCADE, related_name="site_command_runs")
    command = models.TextField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    exit_code = models.IntegerField(null=True, blank=True)
    output = models.TextField(blank=True)
    error_output = models.TextField(blank=True)
    requested_by = models.CharField(max_length=150, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    duration_ms = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
