from django.db import migrations, models
import django.db.models.deletion
import uuid

import yard_orchestrator.models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Host",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=200)),
                ("public_ip", models.GenericIPAddressField(blank=True, null=True)),
                ("ssh_port", models.PositiveIntegerField(default=22)),
                ("ssh_user", models.CharField(default="root", max_length=64)),
                ("ssh_private_key", models.TextField(blank=True)),
                ("transport", models.CharField(choices=[("ssh", "SSH"), ("ssm", "AWS SSM")], default="ssh", max_length=10)),
                ("aws_instance_id", models.CharField(blank=True, max_length=64)),
                ("aws_region", models.CharField(blank=True, max_length=50)),
                (
                    "connection_status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("connected", "Connected"), ("failed", "Failed")],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("os_name", models.CharField(blank=True, max_length=64)),
                ("os_version", models.CharField(blank=True, max_length=64)),
                ("monitoring_token", models.CharField(default=yard_orchestrator.models._token, editable=False, max_length=64)),
                ("scheduler_token", models.CharField(default=yard_orchestrator.models._token, editable=False, max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"ordering": ["name"]},
        ),
        migrations.CreateModel(
            name="ManagedResource",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("runtime", "Runtime"),
                            ("database", "Database"),
                            ("firewall", "Firewall"),
                            ("firewall_rule", "Firewall rule"),
                            ("supervisor", "Supervisor"),
                            ("worker_task", "Worker task"),
                            ("scheduler", "Scheduler"),
                            ("recurring_task", "Recurring task"),
                            ("reverse_proxy", "Reverse proxy"),
                            ("site", "Site"),
                        ],
                        max_length=30,
                    ),
                ),
                ("identifying_key", models.CharField(max_length=255)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("installing", "Installing"),
                            ("active", "Active"),
                            ("failed", "Failed"),
                            ("removing", "Removing"),
                            ("uninstalled", "Uninstalled"),
                            ("paused", "Paused"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("error_log", models.TextField(blank=True)),
                ("config_json", models.JSONField(blank=True, default=dict)),
                ("installed_at", models.DateTimeField(blank=True, null=True)),
                ("uninstalled_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "host",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="resources",
                        to="yard_orchestrator.host",
                    ),
                ),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.AddIndex(
            model_name="managedresource",
            index=models.Index(fields=["host", "kind", "status"], name="yard_resource_host_kind_idx"),
        ),
        migrations.AddConstraint(
            model_name="managedresource",
            constraint=models.UniqueConstraint(
                condition=models.Q(("status", "uninstalled"), _negated=True),
                fields=("host", "kind", "identifying_key"),
                name="yard_resource_unique_live_key",
            ),
        ),
        migrations.CreateModel(
            name="OperationEvent",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("resource_kind", models.CharField(max_length=30)),
                ("run_id", models.UUIDField(db_index=True)),
                (
                    "operation_type",
                    models.CharField(choices=[("install", "Install"), ("uninstall", "Uninstall")], max_length=20),
                ),
                ("milestone", models.CharField(max_length=200)),
                ("current_step", models.PositiveIntegerField(default=0)),
                ("total_steps", models.PositiveIntegerField(default=0)),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("success", "Success"), ("failed", "Failed")],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("details_json", models.JSONField(blank=True, default=dict)),
                ("error_log", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "host",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="operation_events",
                        to="yard_orchestrator.host",
                    ),
                ),
                (
                    "resource",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="events",
                        to="yard_orchestrator.managedresource",
                    ),
                ),
            ],
            options={"ordering": ["id"]},
        ),
        migrations.CreateModel(
            name="HostBootstrapState",
            fields=[
                (
                    "host",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        primary_key=True,
                        related_name="bootstrap_state",
                        serialize=False,
                        to="yard_orchestrator.host",
                    ),
                ),
                (
                    "phase",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("installing", "Installing"),
                            ("failed", "Failed"),
                            ("completed", "Completed"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("step_progress_json", models.JSONField(blank=True, default=dict)),
                ("config_json", models.JSONField(blank=True, default=dict)),
                ("last_error", models.TextField(blank=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="ScheduledTaskRun",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "trigger",
                    models.CharField(
                        choices=[("schedule", "Schedule"), ("manual", "Manual"), ("heartbeat", "Heartbeat")],
                        default="schedule",
                        max_length=20,
                    ),
                ),
                ("started_at", models.DateTimeField()),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("exit_code", models.IntegerField(blank=True, null=True)),
                ("output", models.TextField(blank=True)),
                ("error_output", models.TextField(blank=True)),
                ("duration_ms", models.PositiveIntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "host",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="task_runs",
                        to="yard_orchestrator.host",
                    ),
                ),
                (
                    "task",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="task_runs",
                        to="yard_orchestrator.managedresource",
                    ),
                ),
            ],
            options={"ordering": ["-started_at"]},
        ),
        migrations.CreateModel(
            name="Deployment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("updating", "Updating"),
                            ("success", "Success"),
                            ("failed", "Failed"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                (
                    "trigger",
                    models.CharField(
                        choices=[("manual", "Manual"), ("webhook", "Webhook"), ("rollback", "Rollback")],
                        default="manual",
                        max_length=20,
                    ),
                ),
                ("branch", models.CharField(blank=True, max_length=200)),
                ("commit_sha", models.CharField(blank=True, max_length=64)),
                ("deploy_script", models.TextField(blank=True)),
                ("release_path", models.CharField(blank=True, max_length=500)),
                ("exit_code", models.IntegerField(blank=True, null=True)),
                ("output", models.TextField(blank=True)),
                ("error_output", models.TextField(blank=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("duration_ms", models.PositiveIntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "host",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="deployments",
                        to="yard_orchestrator.host",
                    ),
                ),
                (
                    "rollback_of",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="rollbacks",
                        to="yard_orchestrator.deployment",
                    ),
                ),
                (
                    "site",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="deployments",
                        to="yard_orchestrator.managedresource",
                    ),
                ),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.CreateModel(
            name="SiteSource",
            fields=[
                (
                    "site",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        primary_key=True,
                        related_name="source",
                        serialize=False,
                        to="yard_orchestrator.managedresource",
                    ),
                ),
                ("repository_url", models.CharField(max_length=500)),
                ("branch", models.CharField(default="main", max_length=200)),
                ("deploy_script", models.TextField(blank=True)),
                ("auto_deploy_enabled", models.BooleanField(default=False)),
                ("webhook_secret", models.CharField(default=yard_orchestrator.models._token, max_length=64)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "active_deployment",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="yard_orchestrator.deployment",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="HostMetric",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("cpu_usage", models.FloatField()),
                ("memory_total_mb", models.PositiveIntegerField()),
                ("memory_used_mb", models.PositiveIntegerField()),
                ("memory_usage_percentage", models.FloatField()),
                ("storage_total_gb", models.PositiveIntegerField()),
                ("storage_used_gb", models.PositiveIntegerField()),
                ("storage_usage_percentage", models.FloatField()),
                ("collected_at", models.DateTimeField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "host",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="metrics",
                        to="yard_orchestrator.host",
                    ),
                ),
            ],
            options={"ordering": ["-collected_at"]},
        ),
        migrations.AddIndex(
            model_name="hostmetric",
            index=models.Index(fields=["host", "collected_at"], name="yard_metric_host_time_idx"),
        ),
    ]
