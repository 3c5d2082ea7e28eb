from django.urls import path

from . import views

urlpatterns = [
    path("api/hosts", views.hosts, name="yard-hosts"),
    path("api/hosts/<uuid:host_id>", views.host_detail, name="yard-host-detail"),
    path("api/hosts/<uuid:host_id>/bootstrap", views.host_bootstrap, name="yard-host-bootstrap"),
    path("api/hosts/<uuid:host_id>/resources", views.host_resources, name="yard-host-resources"),
    path(
        "api/hosts/<uuid:host_id>/resources/<uuid:resource_id>",
        views.resource_detail,
        name="yard-resource-detail",
    ),
    path(
        "api/hosts/<uuid:host_id>/resources/<uuid:resource_id>/runs",
        views.task_runs,
        name="yard-task-runs",
    ),
    path(
        "api/hosts/<uuid:host_id>/resources/<uuid:resource_id>/<slug:action>",
        views.resource_action,
        name="yard-resource-action",
    ),
    path("api/hosts/<uuid:host_id>/events", views.host_events, name="yard-host-events"),
    path("api/hosts/<uuid:host_id>/metrics", views.host_metrics, name="yard-host-metrics"),
    path("api/hosts/<uuid:host_id>/task-runs", views.host_task_report, name="yard-host-task-report"),
    path("api/hosts/<uuid:host_id>/monitors", views.host_monitors, name="yard-host-monitors"),
    path(
        "api/hosts/<uuid:host_id>/monitors/<uuid:monitor_id>",
        views.monitor_detail,
        name="yard-monitor-detail",
    ),
    path("api/sites/<uuid:site_id>/deployments", views.site_deployments, name="yard-site-deployments"),
    path("api/sites/<uuid:site_id>/rollback", views.site_rollback, name="yard-site-rollback"),
    path("api/sites/<uuid:site_id>/commands", views.site_commands, name="yard-site-commands"),
    path("webhooks/github/<uuid:site_id>", views.github_webhook, name="yard-github-webhook"),
]
