from unittest import mock

from django.test import TestCase, override_settings

from yard_orchestrator import enqueue, locks
from yard_orchestrator.errors import InvalidTransition, LockContention, ValidationFault
from yard_orchestrator.models import ManagedResource
from yard_orchestrator.tests.support import (
    ORCHESTRATOR_SETTINGS,
    ScriptedRunner,
    make_host,
    make_resource,
    reset_coordination,
)


@override_settings(**ORCHESTRATOR_SETTINGS)
class EnqueueTests(TestCase):
    def setUp(self):
        reset_coordination()
        self.host = make_host()
        make_resource(self.host, "firewall", "ufw")

    @mock.patch("yard_orchestrator.enqueue.dispatch", return_value="job-1")
    def test_duplicate_rule_request_is_rejected_while_first_is_queued(self, mock_dispatch):
        first = enqueue.request_install(self.host.pk, "firewall_rule", {"port": "8080", "rule_type": "allow"})
        self.assertEqual(first.status, "pending")

        with self.assertRaises(LockContention) as ctx:
            enqueue.request_install(self.host.pk, "firewall_rule", {"port": "8080", "rule_type": "allow"})

        self.assertEqual(ctx.exception.key, f"firewall_rule:{self.host.pk}:8080")
        self.assertEqual(mock_dispatch.call_count, 1)
        self.assertEqual(ManagedResource.objects.filter(kind="firewall_rule").count(), 1)
        args = mock_dispatch.call_args[0]
        self.assertEqual(args[0], "yard_orchestrator.jobs.run_installer")
        self.assertEqual(args[1:3], (str(first.pk), "install"))

    @mock.patch("yard_orchestrator.enqueue.dispatch", return_value="job-1")
    def test_different_ports_do_not_contend(self, mock_dispatch):
        enqueue.request_install(self.host.pk, "firewall_rule", {"port": "8080", "rule_type": "allow"})
        enqueue.request_install(self.host.pk, "firewall_rule", {"port": "8081", "rule_type": "allow"})
        self.assertEqual(mock_dispatch.call_count, 2)

    @mock.patch("yard_orchestrator.enqueue.dispatch", side_effect=ConnectionError("redis down"))
    def test_lock_is_released_when_dispatch_fails(self, _mock_dispatch):
        resource = make_resource(self.host, "firewall_rule", "9000", status="pending", port="9000", rule_type="allow")
        with self.assertRaises(ConnectionError):
            enqueue.enqueue_install(self.host.pk, resource.pk)
        self.assertFalse(locks.is_held(f"firewall_rule:{self.host.pk}:9000"))

    def test_install_on_active_resource_is_rejected(self):
        resource = make_resource(self.host, "firewall_rule", "22", port="22", rule_type="allow")
        with self.assertRaises(ValidationFault):
            enqueue.enqueue_install(self.host.pk, resource.pk)

    def test_existing_key_is_rejected_before_creating_a_row(self):
        make_resource(self.host, "firewall_rule", "443", port="443", rule_type="allow")
        with self.assertRaises(ValidationFault):
            enqueue.request_install(self.host.pk, "firewall_rule", {"port": "443", "rule_type": "allow"})
        self.assertEqual(ManagedResource.objects.filter(kind="firewall_rule", identifying_key="443").count(), 1)

    def test_uninstall_requires_active(self):
        resource = make_resource(self.host, "firewall_rule", "22", status="pending", port="22", rule_type="allow")
        with self.assertRaises(InvalidTransition):
            enqueue.enqueue_uninstall(self.host.pk, resource.pk)

    def test_uninstall_guard_blocks_runtime_in_use(self):
        runtime = make_resource(self.host, "runtime", "8.3", version="8.3")
        make_resource(self.host, "site", "shop.example.com", domain="shop.example.com", runtime_version="8.3")
        with self.assertRaises(ValidationFault) as ctx:
            enqueue.enqueue_uninstall(self.host.pk, runtime.pk)
        self.assertIn("still used", ctx.exception.errors[0])

    def test_resource_must_belong_to_host(self):
        other = make_host(name="web-2")
        resource = make_resource(other, "firewall", "ufw")
        with self.assertRaises(ValidationFault):
            enqueue.enqueue_uninstall(self.host.pk, resource.pk)

    def test_host_must_be_bootstrapped(self):
        fresh = make_host(name="fresh", ready=False)
        with self.assertRaises(ValidationFault):
            enqueue.request_install(fresh.pk, "firewall", {})

    def test_invalid_config_lists_every_problem(self):
        with self.assertRaises(ValidationFault) as ctx:
            enqueue.request_install(self.host.pk, "firewall_rule", {"port": "70000", "rule_type": "allow", "name": "bad name!"})
        self.assertEqual(len(ctx.exception.errors), 2)

    def test_unknown_kind_is_rejected(self):
        with self.assertRaises(ValidationFault):
            enqueue.request_install(self.host.pk, "mailserver", {})

    def test_dangerous_task_command_is_rejected(self):
        make_resource(self.host, "scheduler", "scheduler")
        with self.assertRaises(ValidationFault):
            enqueue.request_install(
                self.host.pk,
                "recurring_task",
                {"name": "cleanup", "command": "rm -rf /", "frequency": "daily"},
            )

    def test_custom_cron_must_have_five_fields(self):
        make_resource(self.host, "scheduler", "scheduler")
        with self.assertRaises(ValidationFault) as ctx:
            enqueue.request_install(
                self.host.pk,
                "recurring_task",
                {"name": "report", "command": "php artisan report", "frequency": "custom", "cron_expression": "0 * * *"},
            )
        self.assertIn("cron_expression must have exactly 5 fields", ctx.exception.errors)

    def test_only_task_kinds_pause(self):
        resource = make_resource(self.host, "runtime", "8.3", version="8.3")
        with self.assertRaises(ValidationFault):
            enqueue.pause_resource(self.host.pk, resource.pk)

    def test_mysql_and_mariadb_exclude_each_other(self):
        make_resource(self.host, "database", "mysql", engine="mysql", version="8.0")
        with self.assertRaises(ValidationFault):
            enqueue.request_install(
                self.host.pk,
                "database",
                {"engine": "mariadb", "version": "11.4", "root_password": "long-enough-secret"},
            )

    def test_paused_task_run_is_rejected(self):
        runner = ScriptedRunner()
        task = make_resource(self.host, "recurring_task", "backup", status="paused", name="backup", command="true")
        with mock.patch("yard_orchestrator.remote.get_runner", return_value=runner):
            with self.assertRaises(ValidationFault):
                enqueue.enqueue_task_run(self.host.pk, task.pk)
        self.assertEqual(runner.calls, [])
