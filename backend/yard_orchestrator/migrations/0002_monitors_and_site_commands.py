from django.db import migrations, models
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):

    dependencies = [
        ("yard_orchestrator", "0001_initial"),
    ]

    operations = [
        migrations.AlterField(
            model_name="managedresource",
            name="kind",
            field=models.CharField(
                choices=[
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
                ],
                max_length=30,
            ),
        ),
        migrations.CreateModel(
            name="HostMonitor",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=100)),
                (
                    "metric_type",
                    models.CharField(
                        choices=[("cpu", "CPU"), ("memory", "Memory"), ("storage", "Storage")],
                        max_length=20,
                    ),
                ),
                (
                    "operator",
                    models.CharField(
                        choices=[
                            (">", "Above"),
                            (">=", "At or above"),
                            ("<", "Below"),
                            ("<=", "At or below"),
                            ("==", "Equal to"),
                        ],
                        default=">",
                        max_length=2,
                    ),
                ),
                ("threshold", models.FloatField()),
                ("duration_minutes", models.PositiveIntegerField(default=5)),
                ("cooldown_minutes", models.PositiveIntegerField(default=60)),
                ("enabled", models.BooleanField(default=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("normal", "Normal"), ("triggered", "Triggered")],
                        default="normal",
                        max_length=20,
                    ),
                ),
                ("last_triggered_at", models.DateTimeField(blank=True, null=True)),
                ("last_recovered_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "host",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="monitors",
                        to="yard_orchestrator.host",
                    ),
                ),
            ],
            options={"ordering": ["name"]},
        ),
        migrations.CreateModel(
            name="SiteCommandRun",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("command", models.TextField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("running", "Running"),
                            ("success", "Success"),
                            ("failed", "Failed"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("exit_code", models.IntegerField(blank=True, null=True)),
                ("output", models.TextField(blank=True)),
                ("error_output", models.TextField(blank=True)),
                ("requested_by", models.CharField(blank=True, max_length=150)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("duration_ms", models.PositiveIntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "host",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="site_command_runs",
                        to="yard_orchestrator.host",
                    ),
                ),
                (
                    "site",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="command_runs",
                        to="yard_orchestrator.managedresource",
                    ),
                ),
            ],
            options={"ordering": ["-created_at"]},
        ),
    ]
