from datetime import timedelta
from unittest import mock

from django.test import TestCase, override_settings
from django.utils import timezone

from yard_orchestrator import monitors
from yard_orchestrator.errors import ValidationFault
from yard_orchestrator.models import HostMetric, HostMonitor
from yard_orchestrator.tests.support import ORCHESTRATOR_SETTINGS, make_host, reset_coordination


@override_settings(**ORCHESTRATOR_SETTINGS)
class MonitorEvaluationTests(TestCase):
    def setUp(self):
        reset_coordination()
        self.host = make_host()
        self.now = timezone.now()
        self.monitor = HostMonitor.objects.create(
            host=self.host,
            name="High CPU",
            metric_type="cpu",
            operator=">",
            threshold=80,
            duration_minutes=5,
            cooldown_minutes=30,
        )

    def _sample(self, cpu, minutes_ago):
        return HostMetric.objects.create(
            host=self.host,
            cpu_usage=cpu,
            memory_total_mb=2048,
            memory_used_mb=512,
            memory_usage_percentage=25,
            storage_total_gb=40,
            storage_used_gb=10,
            storage_usage_percentage=25,
            collected_at=self.now - timedelta(minutes=minutes_ago),
        )

    @mock.patch("yard_orchestrator.monitors.publish_host_event")
    def test_sustained_breach_triggers(self, mock_publish):
        self._sample(91, 1)
        self._sample(88, 3)
        self.assertEqual(monitors.evaluate(self.monitor, self.now), "triggered")
        self.monitor.refresh_from_db()
        self.assertEqual(self.monitor.status, "triggered")
        self.assertEqual(self.monitor.last_triggered_at, self.now)
        self.assertEqual(mock_publish.call_args[0][1], "monitor.triggered")
        self.assertEqual(mock_publish.call_args[0][2]["value"], 91)

    def test_single_dip_inside_window_does_not_trigger(self):
        self._sample(91, 1)
        self._sample(40, 3)
        self.assertIsNone(monitors.evaluate(self.monitor, self.now))
        self.assertEqual(HostMonitor.objects.get(pk=self.monitor.pk).status, "normal")

    def test_samples_outside_window_are_ignored(self):
        self._sample(95, 20)
        self.assertIsNone(monitors.evaluate(self.monitor, self.now))

    def test_recovery_waits_for_cooldown(self):
        self.monitor.status = "triggered"
        self.monitor.last_triggered_at = self.now - timedelta(minutes=10)
        self.monitor.save()
        self._sample(20, 1)
        self.assertIsNone(monitors.evaluate(self.monitor, self.now))

        later = self.now + timedelta(minutes=25)
        HostMetric.objects.create(
            host=self.host,
            cpu_usage=15,
            memory_total_mb=2048,
            memory_used_mb=512,
            memory_usage_percentage=25,
            storage_total_gb=40,
            storage_used_gb=10,
            storage_usage_percentage=25,
            collected_at=later - timedelta(minutes=1),
        )
        self.assertEqual(monitors.evaluate(self.monitor, later), "recovered")
        self.monitor.refresh_from_db()
        self.assertEqual(self.monitor.status, "normal")
        self.assertEqual(self.monitor.last_recovered_at, later)

    def test_disabled_monitors_are_skipped(self):
        self.monitor.enabled = False
        self.monitor.save()
        self._sample(99, 1)
        self.assertEqual(monitors.evaluate_monitors(self.now), (0, 0))

    def test_operators(self):
        self.assertTrue(monitors.breaches(">=", 80, 80))
        self.assertFalse(monitors.breaches(">", 80, 80))
        self.assertTrue(monitors.breaches("<", 5, 10))
        self.assertTrue(monitors.breaches("==", 50.004, 50))


class MonitorCreationTests(TestCase):
    def setUp(self):
        self.host = make_host()

    def test_monitor_is_created_with_defaults(self):
        monitor = monitors.create_monitor(
            self.host, {"name": "Disk nearly full", "metric_type": "storage", "operator": ">=", "threshold": 90}
        )
        self.assertEqual((monitor.duration_minutes, monitor.cooldown_minutes), (5, 60))
        self.assertTrue(monitor.enabled)

    def test_unknown_metric_is_rejected(self):
        with self.assertRaises(ValidationFault):
            monitors.create_monitor(self.host, {"name": "Load", "metric_type": "load", "operator": ">", "threshold": 4})
