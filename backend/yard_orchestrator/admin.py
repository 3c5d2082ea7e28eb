from django.contrib import admin

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


class HostBootstrapStateInline(admin.StackedInline):
    model = HostBootstrapState
    extra = 0
    readonly_fields = ("phase", "step_progress_json", "last_error", "started_at", "completed_at")


@admin.register(Host)
class HostAdmin(admin.ModelAdmin):
    list_display = ("name", "public_ip", "transport", "connection_status", "os_name", "os_version", "created_at")
    list_filter = ("transport", "connection_status")
    search_fields = ("name", "public_ip", "aws_instance_id")
    readonly_fields = ("monitoring_token", "scheduler_token", "created_at", "updated_at")
    inlines = [HostBootstrapStateInline]


@admin.register(ManagedResource)
class ManagedResourceAdmin(admin.ModelAdmin):
    list_display = ("kind", "identifying_key", "host", "status", "installed_at", "updated_at")
    list_filter = ("kind", "status")
    search_fields = ("identifying_key", "host__name")
    readonly_fields = ("status", "error_log", "installed_at", "uninstalled_at", "created_at", "updated_at")


@admin.register(OperationEvent)
class OperationEventAdmin(admin.ModelAdmin):
    list_display = ("created_at", "host", "resource_kind", "operation_type", "milestone", "current_step", "total_steps", "status")
    list_filter = ("operation_type", "status", "resource_kind")
    search_fields = ("milestone", "run_id")

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(ScheduledTaskRun)
class ScheduledTaskRunAdmin(admin.ModelAdmin):
    list_display = ("task", "host", "trigger", "started_at", "exit_code", "duration_ms")
    list_filter = ("trigger",)


@admin.register(SiteSource)
class SiteSourceAdmin(admin.ModelAdmin):
    list_display = ("site", "repository_url", "branch", "auto_deploy_enabled", "active_deployment")
    readonly_fields = ("webhook_secret", "active_deployment")


@admin.register(Deployment)
class DeploymentAdmin(admin.ModelAdmin):
    list_display = ("site", "trigger", "status", "branch", "commit_sha", "started_at", "duration_ms")
    list_filter = ("status", "trigger")
    readonly_fields = ("output", "error_output", "release_path", "rollback_of")


@admin.register(HostMetric)
class HostMetricAdmin(admin.ModelAdmin):
    list_display = ("host", "collected_at", "cpu_usage", "memory_usage_percentage", "storage_usage_percentage")
    list_filter = ("host",)


@admin.register(HostMonitor)
class HostMonitorAdmin(admin.ModelAdmin):
    list_display = ("name", "host", "metric_type", "operator", "threshold", "enabled", "status", "last_triggered_at")
    list_filter = ("metric_type", "status", "enabled")
    readonly_fields = ("status", "last_triggered_at", "last_recovered_at")


@admin.register(SiteCommandRun)
class SiteCommandRunAdmin(admin.ModelAdmin):
    list_display = ("site", "command", "status", "exit_code", "requested_by", "created_at")
    list_filter = ("status",)
    readonly_fields = ("output", "error_output", "exit_code", "started_at", "completed_at", "duration_ms")
