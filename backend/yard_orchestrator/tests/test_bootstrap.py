from datetime import timedelta
from unittest import mock

from django.test import TestCase, override_settings
from django.utils import timezone

from yard_orchestrator import bootstrap, enqueue, locks
from yard_orchestrator.dispatch import dispatch as real_dispatch
from yard_orchestrator.errors import ConnectionFault, LockContention, ValidationFault
from yard_orchestrator.models import Host, HostBootstrapState, ManagedResource
from yard_orchestrator.tests.support import (
    ORCHESTRATOR_SETTINGS,
    ScriptedRunner,
    make_host,
    make_resource,
    reset_coordination,
)


def _healthy_runner() -> ScriptedRunner:
    return ScriptedRunner().respond("/etc/os-release", stdout="ubuntu\n24.04\n")


@override_settings(**ORCHESTRATOR_SETTINGS)
class BootstrapTests(TestCase):
    def setUp(self):
        reset_coordination()
        self.host = make_host(ready=False)
        self.runner = _healthy_runner()
        patcher = mock.patch("yard_orchestrator.remote.get_runner", return_value=self.runner)
        self.get_runner = patcher.start()
        self.addCleanup(patcher.stop)

    def _state(self) -> HostBootstrapState:
        return HostBootstrapState.objects.get(host=self.host)

    def _statuses(self):
        state = self._state()
        return [bootstrap.step_status(state, step) for step in range(1, 9)]

    def test_full_bootstrap_installs_the_base_stack(self):
        enqueue.enqueue_bootstrap(self.host.pk)

        state = self._state()
        self.assertEqual(state.phase, "completed")
        self.assertEqual(self._statuses(), ["completed"] * 8)
        self.assertIsNotNone(state.completed_at)
        host = Host.objects.get(pk=self.host.pk)
        self.assertTrue(host.is_ready)
        self.assertEqual(host.connection_status, "connected")
        self.assertEqual((host.os_name, host.os_version), ("ubuntu", "24.04"))
        active = set(
            ManagedResource.objects.filter(host=self.host, status="active").values_list("kind", "identifying_key")
        )
        self.assertEqual(
            active,
            {
                ("firewall", "ufw"),
                ("firewall_rule", "80"),
                ("firewall_rule", "443"),
                ("runtime", "8.3"),
                ("reverse_proxy", "nginx"),
                ("scheduler", "scheduler"),
                ("supervisor", "supervisor"),
                ("recurring_task", "remove-unused-packages"),
            },
        )
        self.assertTrue(self.runner.ran("touch /var/lib/shipyard/READY"))
        self.assertFalse(locks.is_held(bootstrap.lock_key(self.host.pk)))

    def test_runtime_version_comes_from_bootstrap_config(self):
        enqueue.enqueue_bootstrap(self.host.pk, {"runtime_version": "8.2"})
        self.assertTrue(
            ManagedResource.objects.filter(host=self.host, kind="runtime", identifying_key="8.2", status="active").exists()
        )

    def test_already_installed_resources_are_skipped(self):
        make_resource(self.host, "firewall", "ufw")
        enqueue.enqueue_bootstrap(self.host.pk)
        self.assertEqual(self._state().phase, "completed")
        self.assertFalse(self.runner.ran("ufw --force enable"))
        self.assertTrue(self.runner.ran("ufw allow 80/tcp"))

    def test_failed_step_leaves_later_steps_pending(self):
        self.runner.fail_when("apt-get update -q", stderr="Temporary failure resolving archive.ubuntu.com")
        enqueue.enqueue_bootstrap(self.host.pk)

        state = self._state()
        self.assertEqual(state.phase, "failed")
        self.assertEqual(self._statuses(), ["completed", "failed"] + ["pending"] * 6)
        self.assertIn("Temporary failure resolving", state.last_error)
        self.assertFalse(Host.objects.get(pk=self.host.pk).is_ready)
        self.assertFalse(locks.is_held(bootstrap.lock_key(self.host.pk)))

    def test_retry_resumes_at_the_failed_step(self):
        self.runner.fail_when("apt-get update -q")
        enqueue.enqueue_bootstrap(self.host.pk)

        retry_runner = _healthy_runner()
        self.get_runner.return_value = retry_runner
        enqueue.enqueue_bootstrap(self.host.pk)

        self.assertEqual(self._state().phase, "completed")
        self.assertFalse(retry_runner.ran("/etc/os-release"))
        self.assertTrue(retry_runner.commands[0].startswith("apt-get update"))

    def test_connection_failure_restarts_from_the_first_step(self):
        self.runner.raise_when("/etc/os-release", ConnectionFault("SSH connection refused"))
        enqueue.enqueue_bootstrap(self.host.pk)
        self.assertEqual(self._statuses()[0], "failed")
        self.assertEqual(Host.objects.get(pk=self.host.pk).connection_status, "failed")

        retry_runner = _healthy_runner()
        self.get_runner.return_value = retry_runner
        enqueue.enqueue_bootstrap(self.host.pk)
        self.assertTrue(retry_runner.ran("/etc/os-release"))
        self.assertEqual(self._state().phase, "completed")

    @mock.patch("yard_orchestrator.bootstrap.dispatch", return_value="job-1")
    def test_second_bootstrap_is_rejected_while_a_step_runs(self, mock_dispatch):
        enqueue.enqueue_bootstrap(self.host.pk)
        self.assertEqual(self._statuses()[0], "installing")
        with self.assertRaises(LockContention):
            enqueue.enqueue_bootstrap(self.host.pk)
        self.assertEqual(mock_dispatch.call_count, 1)

    def test_bootstrap_in_progress_between_steps_is_rejected(self):
        HostBootstrapState.objects.create(host=self.host, phase="installing", step_progress_json={"1": "completed", "2": "installing"})
        with self.assertRaises(ValidationFault):
            enqueue.enqueue_bootstrap(self.host.pk)
        self.assertFalse(locks.is_held(bootstrap.lock_key(self.host.pk)))

    def test_failed_handoff_fails_the_next_step_and_allows_retry(self):
        dispatched = []

        def flaky_dispatch(*args, **kwargs):
            dispatched.append(args)
            if len(dispatched) == 2:
                raise ConnectionError("Error 111 connecting to localhost:6379")
            return real_dispatch(*args, **kwargs)

        with mock.patch("yard_orchestrator.bootstrap.dispatch", side_effect=flaky_dispatch):
            with self.assertRaises(ConnectionError):
                enqueue.enqueue_bootstrap(self.host.pk)

        state = self._state()
        self.assertEqual(state.phase, "failed")
        self.assertEqual(self._statuses(), ["completed", "failed"] + ["pending"] * 6)
        self.assertIn("Could not queue step 2", state.last_error)
        self.assertFalse(locks.is_held(bootstrap.lock_key(self.host.pk)))

        retry_runner = _healthy_runner()
        self.get_runner.return_value = retry_runner
        enqueue.enqueue_bootstrap(self.host.pk)
        self.assertEqual(self._state().phase, "completed")
        self.assertFalse(retry_runner.ran("/etc/os-release"))

    def test_stale_bootstrap_is_failed_so_it_can_resume(self):
        HostBootstrapState.objects.create(host=self.host, phase="installing", step_progress_json={"1": "completed", "2": "installing"})
        HostBootstrapState.objects.filter(host=self.host).update(updated_at=timezone.now() - timedelta(hours=2))

        self.assertEqual(bootstrap.recover_stale_bootstraps(), 1)
        state = self._state()
        self.assertEqual(state.phase, "failed")
        self.assertEqual(self._statuses()[:3], ["completed", "failed", "pending"])
        self.assertIn("abandoned", state.last_error)

        enqueue.enqueue_bootstrap(self.host.pk)
        self.assertEqual(self._state().phase, "completed")

    def test_stale_sweep_skips_bootstrap_holding_its_lock(self):
        HostBootstrapState.objects.create(host=self.host, phase="installing", step_progress_json={"1": "installing"})
        HostBootstrapState.objects.filter(host=self.host).update(updated_at=timezone.now() - timedelta(hours=2))
        locks.acquire(bootstrap.lock_key(self.host.pk), 600)
        self.assertEqual(bootstrap.recover_stale_bootstraps(), 0)
        self.assertEqual(self._state().phase, "installing")

    def test_recent_bootstrap_is_not_swept(self):
        HostBootstrapState.objects.create(host=self.host, phase="installing", step_progress_json={"1": "installing"})
        self.assertEqual(bootstrap.recover_stale_bootstraps(), 0)

    def test_completed_host_cannot_bootstrap_again(self):
        enqueue.enqueue_bootstrap(self.host.pk)
        with self.assertRaises(ValidationFault):
            enqueue.enqueue_bootstrap(self.host.pk)

    def test_missing_steps_read_as_pending(self):
        state = HostBootstrapState.objects.create(host=self.host)
        payload = bootstrap.progress_payload(state)
        self.assertEqual([step["status"] for step in payload["steps"]], ["pending"] * 8)
        self.assertEqual(payload["steps"][0]["label"], "Waiting for connection")
