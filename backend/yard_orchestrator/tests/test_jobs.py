from datetime import timedelta
from unittest import mock

from django.test import TestCase, override_settings
from django.utils import timezone

from yard_orchestrator import enqueue, jobs, locks
from yard_orchestrator.errors import ConnectionFault, FatalJobFault, ValidationFault
from yard_orchestrator.installers.runtime import RuntimeInstaller
from yard_orchestrator.models import ManagedResource, OperationEvent
from yard_orchestrator.tests.support import (
    ORCHESTRATOR_SETTINGS,
    ScriptedRunner,
    make_host,
    make_resource,
    reset_coordination,
)

WORDPRESS = {
    "db_name": "blog",
    "db_user": "blog",
    "db_password": "s3cret-pass",
    "admin_email": "ops@example.com",
    "admin_user": "admin",
    "admin_password": "correct horse",
}


@override_settings(**ORCHESTRATOR_SETTINGS)
class InstallerJobTests(TestCase):
    def setUp(self):
        reset_coordination()
        self.host = make_host()
        self.runner = ScriptedRunner()
        patcher = mock.patch("yard_orchestrator.remote.get_runner", return_value=self.runner)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _events(self, resource):
        return list(OperationEvent.objects.filter(resource=resource).order_by("id"))

    def test_first_runtime_becomes_default(self):
        resource = enqueue.request_install(self.host.pk, "runtime", {"version": "8.3"})

        self.assertEqual(resource.status, "active")
        self.assertTrue(resource.config_json["is_cli_default"])
        self.assertTrue(resource.config_json["is_site_default"])
        self.assertIsNotNone(resource.installed_at)
        self.assertTrue(self.runner.ran("add-apt-repository -y ppa:ondrej/php"))
        self.assertTrue(self.runner.ran("update-alternatives --set php /usr/bin/php8.3"))

        events = self._events(resource)
        self.assertEqual([e.status for e in events], ["pending"] * 6 + ["success"])
        self.assertEqual([e.current_step for e in events], [1, 2, 3, 4, 5, 6, 6])
        self.assertEqual({e.total_steps for e in events}, {6})
        self.assertEqual(len({e.run_id for e in events}), 1)
        self.assertEqual(events[2].milestone, "Installing PHP 8.3")
        self.assertEqual(events[-1].milestone, "Installed")
        self.assertFalse(locks.is_held(f"host:{self.host.pk}:packages"))

    def test_second_runtime_leaves_default_alone(self):
        make_resource(self.host, "runtime", "8.3", version="8.3", is_cli_default=True, is_site_default=True)
        resource = enqueue.request_install(self.host.pk, "runtime", {"version": "8.2"})
        self.assertEqual(resource.status, "active")
        self.assertFalse(resource.config_json["is_cli_default"])
        self.assertFalse(self.runner.ran("update-alternatives"))

    def test_failed_command_marks_resource_failed(self):
        self.runner.fail_when("php8.3-fpm php8.3-cli", stderr="E: Unable to locate package php8.3-fpm")
        resource = enqueue.request_install(self.host.pk, "runtime", {"version": "8.3"})

        self.assertEqual(resource.status, "failed")
        self.assertIn("Unable to locate package", resource.error_log)
        final = self._events(resource)[-1]
        self.assertEqual(final.status, "failed")
        self.assertEqual(final.milestone, "Installing PHP 8.3")
        self.assertEqual(final.current_step, 3)
        self.assertFalse(self.runner.ran("systemctl enable php8.3-fpm"))
        self.assertFalse(locks.is_held(f"host:{self.host.pk}:packages"))

    def test_failed_resource_can_be_reinstalled(self):
        resource = make_resource(self.host, "runtime", "8.3", status="failed", version="8.3")
        enqueue.enqueue_install(self.host.pk, resource.pk)
        resource.refresh_from_db()
        self.assertEqual(resource.status, "active")
        self.assertEqual(resource.error_log, "")

    def test_unreachable_host_fails_the_operation(self):
        self.runner.raise_when("", ConnectionFault("SSH connection to 203.0.113.10:22 failed: timed out"))
        resource = enqueue.request_install(self.host.pk, "firewall", {})
        self.assertEqual(resource.status, "failed")
        self.assertIn("timed out", resource.error_log)
        self.assertEqual(self._events(resource)[-1].status, "failed")

    def test_unexpected_error_is_fatal_but_recorded(self):
        with mock.patch.object(RuntimeInstaller, "on_installed", side_effect=RuntimeError("config write failed")):
            with self.assertRaises(FatalJobFault):
                enqueue.request_install(self.host.pk, "runtime", {"version": "8.3"})
        resource = ManagedResource.objects.get(host=self.host, kind="runtime")
        self.assertEqual(resource.status, "failed")
        self.assertIn("config write failed", resource.error_log)
        self.assertEqual(self._events(resource)[-1].status, "failed")
        self.assertFalse(locks.is_held(f"host:{self.host.pk}:packages"))

    def test_wordpress_site_installs_as_app_user(self):
        make_resource(self.host, "reverse_proxy", "nginx")
        make_resource(self.host, "runtime", "8.3", version="8.3", is_cli_default=True, is_site_default=True)
        resource = enqueue.request_install(
            self.host.pk,
            "site",
            {"domain": "blog.example.com", "framework": "wordpress", "wordpress": WORDPRESS},
        )

        self.assertEqual(resource.status, "active")
        self.assertEqual(resource.config_json["runtime_version"], "8.3")
        release = "/home/shipyard/blog.example.com/releases/initial"
        self.assertEqual(self.runner.user_for("wp core download"), "shipyard")
        self.assertTrue(self.runner.ran(f"cd {release} && wp core download --quiet"))
        self.assertTrue(self.runner.ran("wp core install --url=https://blog.example.com"))
        self.assertTrue(self.runner.ran("fastcgi_pass unix:/run/php/php8.3-fpm.sock"))
        commands = self.runner.commands
        wp_cli = next(i for i, c in enumerate(commands) if "/usr/local/bin/wp" in c)
        download = next(i for i, c in enumerate(commands) if "wp core download" in c)
        self.assertLess(wp_cli, download)
        milestones = [e.milestone for e in self._events(resource)]
        self.assertEqual(
            milestones,
            [
                "Preparing site directory",
                "Installing WP-CLI",
                "Installing WordPress",
                "Configuring web server",
                "Reloading web server",
                "Installed",
            ],
        )

    def test_uninstall_reaches_uninstalled_and_allows_reinstall(self):
        make_resource(self.host, "firewall", "ufw")
        rule = make_resource(self.host, "firewall_rule", "8080", port="8080", rule_type="allow", protocol="tcp", name="app")
        enqueue.enqueue_uninstall(self.host.pk, rule.pk)
        rule.refresh_from_db()
        self.assertEqual(rule.status, "uninstalled")
        self.assertTrue(self.runner.ran("ufw delete allow 8080/tcp"))
        events = self._events(rule)
        self.assertEqual(events[-1].operation_type, "uninstall")
        self.assertEqual(events[-1].milestone, "Uninstalled")

        again = enqueue.request_install(self.host.pk, "firewall_rule", {"port": "8080", "rule_type": "allow"})
        self.assertNotEqual(again.pk, rule.pk)
        self.assertEqual(again.status, "active")

    def test_pausing_worker_stops_its_processes(self):
        make_resource(self.host, "supervisor", "supervisor")
        worker = make_resource(self.host, "worker_task", "queue", name="queue", command="php artisan queue:work")
        paused = enqueue.pause_resource(self.host.pk, worker.pk)
        self.assertEqual(paused.status, "paused")
        self.assertTrue(self.runner.ran("supervisorctl stop 'shipyard-worker-queue:*'"))
        resumed = enqueue.resume_resource(self.host.pk, worker.pk)
        self.assertEqual(resumed.status, "active")
        self.assertTrue(self.runner.ran("supervisorctl start 'shipyard-worker-queue:*'"))

    def test_stale_operations_are_recovered(self):
        resource = make_resource(self.host, "firewall", "ufw", status="installing")
        ManagedResource.objects.filter(pk=resource.pk).update(updated_at=timezone.now() - timedelta(hours=2))
        self.assertEqual(jobs.recover_stale_operations(), 1)
        resource.refresh_from_db()
        self.assertEqual(resource.status, "failed")
        self.assertIn("abandoned", resource.error_log)

    def test_recovery_skips_operations_still_holding_their_lock(self):
        resource = make_resource(self.host, "firewall", "ufw", status="installing")
        ManagedResource.objects.filter(pk=resource.pk).update(updated_at=timezone.now() - timedelta(hours=2))
        locks.acquire(f"host:{self.host.pk}:packages", 600)
        self.assertEqual(jobs.recover_stale_operations(), 0)
        resource.refresh_from_db()
        self.assertEqual(resource.status, "installing")

    def test_port_range_rule_runs_two_commands(self):
        make_resource(self.host, "firewall", "ufw")
        resource = enqueue.request_install(self.host.pk, "firewall_rule", {"port": "3000-3005", "rule_type": "allow"})
        self.assertEqual(resource.status, "active")
        self.assertEqual(resource.identifying_key, "3000-3005")
        self.assertEqual(self.runner.commands, ["ufw allow 3000:3005/tcp comment 'shipyard 3000-3005'", "ufw reload"])
        self.assertEqual([e.milestone for e in self._events(resource)], ["Applying rule", "Reloading firewall", "Installed"])

    def test_wordpress_download_failure_fails_the_site(self):
        make_resource(self.host, "reverse_proxy", "nginx")
        make_resource(self.host, "runtime", "8.3", version="8.3", is_cli_default=True, is_site_default=True)
        self.runner.fail_when("wp core download", stderr="Error: Failed to get url 'https://api.wordpress.org'")
        resource = enqueue.request_install(
            self.host.pk,
            "site",
            {"domain": "blog.example.com", "framework": "wordpress", "wordpress": WORDPRESS},
        )
        self.assertEqual(resource.status, "failed")
        self.assertIn("Failed to get url", resource.error_log)
        self.assertIn("exited with code 1", resource.error_log)
        self.assertFalse(self.runner.ran("nginx -t"))
        final = self._events(resource)[-1]
        self.assertEqual((final.status, final.milestone), ("failed", "Installing WordPress"))

    def test_database_password_never_reaches_error_log_or_events(self):
        password = "TopSecret-12345"
        self.runner.fail_when("ALTER USER", stderr=f"ERROR 1064 near '{password}'")
        with self.assertLogs("yard_orchestrator.jobs", level="WARNING") as logs:
            resource = enqueue.request_install(
                self.host.pk, "database", {"engine": "mysql", "version": "8.0", "root_password": password}
            )

        self.assertEqual(resource.status, "failed")
        self.assertNotIn(password, resource.error_log)
        self.assertIn("***REDACTED***", resource.error_log)
        self.assertTrue(self.runner.ran(password))
        for event in self._events(resource):
            self.assertNotIn(password, event.error_log)
        self.assertNotIn(password, "\n".join(logs.output))

    def test_wordpress_passwords_are_masked_when_the_install_fails(self):
        make_resource(self.host, "reverse_proxy", "nginx")
        make_resource(self.host, "runtime", "8.3", version="8.3", is_cli_default=True, is_site_default=True)
        self.runner.fail_when("wp core install", stderr="Error: Database connection refused")
        resource = enqueue.request_install(
            self.host.pk,
            "site",
            {"domain": "blog.example.com", "framework": "wordpress", "wordpress": WORDPRESS},
        )
        self.assertEqual(resource.status, "failed")
        self.assertNotIn(WORDPRESS["db_password"], resource.error_log)
        self.assertNotIn(WORDPRESS["admin_password"], resource.error_log)
        self.assertIn("Database connection refused", resource.error_log)

    def test_removing_default_runtime_switches_cli_to_successor(self):
        default = make_resource(self.host, "runtime", "8.3", version="8.3", is_cli_default=True, is_site_default=True)
        make_resource(self.host, "runtime", "8.1", version="8.1", is_cli_default=False, is_site_default=False)
        successor = make_resource(self.host, "runtime", "8.2", version="8.2", is_cli_default=False, is_site_default=False)

        enqueue.enqueue_uninstall(self.host.pk, default.pk)

        default.refresh_from_db()
        successor.refresh_from_db()
        self.assertEqual(default.status, "uninstalled")
        self.assertTrue(successor.config_json["is_cli_default"])
        self.assertTrue(self.runner.ran("update-alternatives --set php /usr/bin/php8.2"))
        self.assertEqual(self._events(default)[-2].milestone, "Switching default version")

    def test_removing_non_default_runtime_leaves_alternatives_alone(self):
        make_resource(self.host, "runtime", "8.3", version="8.3", is_cli_default=True, is_site_default=True)
        other = make_resource(self.host, "runtime", "8.2", version="8.2", is_cli_default=False, is_site_default=False)
        enqueue.enqueue_uninstall(self.host.pk, other.pk)
        self.assertFalse(self.runner.ran("update-alternatives"))


@override_settings(**ORCHESTRATOR_SETTINGS)
class ToolchainAndDatabaseUserTests(TestCase):
    def setUp(self):
        reset_coordination()
        self.host = make_host()
        self.runner = ScriptedRunner().respond("composer --version", stdout="Composer version 2.8.12 2025-09-19 13:41:59\n")
        patcher = mock.patch("yard_orchestrator.remote.get_runner", return_value=self.runner)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_toolchain_installs_node_and_composer(self):
        make_resource(self.host, "runtime", "8.3", version="8.3", is_cli_default=True, is_site_default=True)
        resource = enqueue.request_install(self.host.pk, "toolchain", {"node_version": "22"})
        self.assertEqual(resource.status, "active")
        self.assertEqual(resource.identifying_key, "node")
        self.assertTrue(self.runner.ran("https://deb.nodesource.com/setup_22.x"))
        self.assertTrue(self.runner.ran("php composer-setup.php"))
        self.assertEqual(resource.config_json["composer_version"], "2.8.12")
        self.assertFalse(locks.is_held(f"host:{self.host.pk}:packages"))

    def test_composer_needs_a_runtime(self):
        with self.assertRaises(ValidationFault) as ctx:
            enqueue.request_install(self.host.pk, "toolchain", {"node_version": "20"})
        self.assertIn("composer needs a PHP runtime installed on this host", ctx.exception.errors)

    def test_node_only_toolchain_skips_composer(self):
        resource = enqueue.request_install(self.host.pk, "toolchain", {"node_version": "20", "composer": False})
        self.assertEqual(resource.status, "active")
        self.assertFalse(self.runner.ran("composer"))

    def test_mysql_user_is_created_with_grants(self):
        make_resource(self.host, "database", "mysql", engine="mysql", version="8.0", root_password="RootSecret-999")
        resource = enqueue.request_install(
            self.host.pk,
            "database_user",
            {"engine": "mysql", "username": "shop", "password": "ShopSecret-123", "privileges": "read_write", "schemas": ["shop"]},
        )
        self.assertEqual(resource.status, "active")
        self.assertEqual(resource.identifying_key, "mysql:shop")
        self.assertTrue(self.runner.ran("CREATE DATABASE IF NOT EXISTS `shop`"))
        self.assertTrue(self.runner.ran("GRANT SELECT, INSERT, UPDATE, DELETE ON `shop`.* TO 'shop'@'%'"))
        self.assertTrue(self.runner.ran("MYSQL_PWD=RootSecret-999 mysql -uroot"))

    def test_database_user_failure_hides_both_passwords(self):
        make_resource(self.host, "database", "mysql", engine="mysql", version="8.0", root_password="RootSecret-999")
        self.runner.fail_when("CREATE USER", stderr="ERROR 1396: Operation CREATE USER failed")
        resource = enqueue.request_install(
            self.host.pk, "database_user", {"engine": "mysql", "username": "shop", "password": "ShopSecret-123"}
        )
        self.assertEqual(resource.status, "failed")
        self.assertNotIn("RootSecret-999", resource.error_log)
        self.assertNotIn("ShopSecret-123", resource.error_log)
        self.assertIn("Operation CREATE USER failed", resource.error_log)

    def test_postgres_user_runs_as_postgres(self):
        make_resource(self.host, "database", "postgresql", engine="postgresql", version="16")
        enqueue.request_install(
            self.host.pk, "database_user", {"engine": "postgresql", "username": "app", "password": "AppSecret-1234", "schemas": ["app"]}
        )
        self.assertEqual(self.runner.user_for("CREATE ROLE app LOGIN"), "postgres")
        self.assertTrue(self.runner.ran("|| createdb app"))
        self.assertTrue(self.runner.ran("GRANT ALL PRIVILEGES ON DATABASE app TO app;"))

    def test_database_user_needs_its_engine(self):
        with self.assertRaises(ValidationFault):
            enqueue.request_install(
                self.host.pk, "database_user", {"engine": "mariadb", "username": "shop", "password": "ShopSecret-123"}
            )

    def test_engine_cannot_be_removed_while_users_remain(self):
        engine = make_resource(self.host, "database", "mysql", engine="mysql", version="8.0", root_password="RootSecret-999")
        make_resource(self.host, "database_user", "mysql:shop", engine="mysql", username="shop", password="ShopSecret-123")
        with self.assertRaises(ValidationFault):
            enqueue.enqueue_uninstall(self.host.pk, engine.pk)
