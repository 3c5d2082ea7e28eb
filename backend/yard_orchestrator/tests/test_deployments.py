import hashlib
import hmac
import json
from datetime import timedelta
from unittest import mock

from django.test import TestCase, override_settings
from django.utils import timezone

from yard_orchestrator import deployments, locks
from yard_orchestrator.errors import LockContention, ValidationFault
from yard_orchestrator.models import Deployment, SiteSource
from yard_orchestrator.tests.support import (
    ORCHESTRATOR_SETTINGS,
    ScriptedRunner,
    make_host,
    make_resource,
    reset_coordination,
)

ROOT = "/home/shipyard/shop.example.com"
SCRIPT = "composer install --no-dev\n# warm caches later\n\nphp artisan migrate --force\n"


def _sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@override_settings(**ORCHESTRATOR_SETTINGS)
class DeploymentTests(TestCase):
    def setUp(self):
        reset_coordination()
        self.host = make_host()
        self.site = make_resource(self.host, "site", "shop.example.com", domain="shop.example.com", framework="laravel")
        self.source = SiteSource.objects.create(
            site=self.site,
            repository_url="git@github.com:acme/shop.git",
            branch="main",
            deploy_script=SCRIPT,
            auto_deploy_enabled=True,
        )
        self.runner = ScriptedRunner().respond("rev-parse HEAD", stdout="4f2a9c1\n")
        patcher = mock.patch("yard_orchestrator.remote.get_runner", return_value=self.runner)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _previous_release(self) -> Deployment:
        deployment = Deployment.objects.create(
            site=self.site,
            host=self.host,
            status="success",
            branch="main",
            commit_sha="1111111",
            release_path=f"{ROOT}/releases/previous",
        )
        deployments.activate(self.source, deployment)
        return deployment

    def test_successful_deployment_becomes_active(self):
        deployment = deployments.queue_deployment(self.site.pk)

        self.assertEqual(deployment.status, "success")
        self.assertEqual(deployment.commit_sha, "4f2a9c1")
        self.assertEqual(deployment.exit_code, 0)
        release = f"{ROOT}/releases/{deployment.pk}"
        self.assertEqual(deployment.release_path, release)
        self.source.refresh_from_db()
        self.assertEqual(self.source.active_deployment_id, deployment.pk)

        self.assertTrue(self.runner.ran(f"git clone --depth 1 --branch main git@github.com:acme/shop.git {release}"))
        self.assertEqual(self.runner.user_for("git clone"), "shipyard")
        self.assertTrue(self.runner.ran(f"cd {release} && composer install --no-dev"))
        self.assertTrue(self.runner.ran(f"cd {release} && php artisan migrate --force"))
        self.assertFalse(self.runner.ran("warm caches"))
        self.assertTrue(self.runner.ran(f"ln -sfn {release} {ROOT}/current.next && mv -Tf {ROOT}/current.next {ROOT}/current"))
        self.assertTrue(self.runner.ran("tail -n +6"))
        self.assertFalse(locks.is_held(deployments.lock_key(self.site.pk)))

    def test_failed_script_keeps_previous_release_live(self):
        previous = self._previous_release()
        self.runner.fail_when("php artisan migrate", stderr="SQLSTATE[HY000] [2002] Connection refused")
        deployment = deployments.queue_deployment(self.site.pk)

        self.assertEqual(deployment.status, "failed")
        self.assertEqual(deployment.exit_code, 1)
        self.assertIn("Connection refused", deployment.error_output)
        self.assertIsNotNone(deployment.duration_ms)
        self.source.refresh_from_db()
        self.assertEqual(self.source.active_deployment_id, previous.pk)
        self.assertFalse(self.runner.ran("mv -Tf"))
        self.assertTrue(self.runner.ran(f"rm -rf {ROOT}/releases/{deployment.pk}"))

    def test_requested_commit_is_checked_out(self):
        deployment = deployments.queue_deployment(self.site.pk, commit_sha="9e8d7c6")
        self.assertTrue(self.runner.ran("checkout --force 9e8d7c6"))
        self.assertEqual(deployment.status, "success")

    def test_rollback_repoints_current_at_earlier_release(self):
        previous = self._previous_release()
        latest = deployments.queue_deployment(self.site.pk)
        self.assertEqual(latest.status, "success")

        rollback = deployments.queue_rollback(self.site.pk, previous.pk)

        self.assertEqual(rollback.status, "success")
        self.assertEqual(rollback.trigger, "rollback")
        self.assertEqual(rollback.rollback_of_id, previous.pk)
        self.assertEqual(rollback.release_path, previous.release_path)
        self.assertEqual(rollback.commit_sha, "1111111")
        self.assertTrue(self.runner.ran(f"test -d {previous.release_path}"))
        self.assertTrue(self.runner.ran(f"ln -sfn {previous.release_path} {ROOT}/current.next"))
        self.source.refresh_from_db()
        self.assertEqual(self.source.active_deployment_id, rollback.pk)

    def test_rollback_to_pruned_release_fails_without_moving_pointer(self):
        previous = self._previous_release()
        latest = deployments.queue_deployment(self.site.pk)
        self.runner.fail_when(f"test -d {previous.release_path}")
        rollback = deployments.queue_rollback(self.site.pk, previous.pk)
        self.assertEqual(rollback.status, "failed")
        self.source.refresh_from_db()
        self.assertEqual(self.source.active_deployment_id, latest.pk)

    def test_rollback_target_must_have_succeeded(self):
        failed = Deployment.objects.create(site=self.site, host=self.host, status="failed", release_path=f"{ROOT}/releases/x")
        with self.assertRaises(ValidationFault):
            deployments.queue_rollback(self.site.pk, failed.pk)

    def test_pointer_refuses_unsuccessful_deployment(self):
        pending = Deployment.objects.create(site=self.site, host=self.host)
        with self.assertRaises(ValueError):
            deployments.activate(self.source, pending)

    def test_concurrent_deployment_is_rejected(self):
        locks.acquire(deployments.lock_key(self.site.pk), 900)
        with self.assertRaises(LockContention):
            deployments.queue_deployment(self.site.pk)
        self.assertFalse(Deployment.objects.exists())

    def test_site_without_repository_cannot_deploy(self):
        bare = make_resource(self.host, "site", "bare.example.com", domain="bare.example.com", framework="static")
        with self.assertRaises(ValidationFault):
            deployments.queue_deployment(bare.pk)

    def test_stale_deployments_are_failed(self):
        stuck = Deployment.objects.create(site=self.site, host=self.host, status="updating")
        queued = Deployment.objects.create(site=self.site, host=self.host, status="pending")
        Deployment.objects.filter(pk__in=[stuck.pk, queued.pk]).update(updated_at=timezone.now() - timedelta(hours=2))

        self.assertEqual(deployments.recover_stale_deployments(), 2)
        stuck.refresh_from_db()
        self.assertEqual(stuck.status, "failed")
        self.assertIn("abandoned", stuck.error_output)
        self.assertIsNotNone(stuck.completed_at)
        self.assertEqual(Deployment.objects.get(pk=queued.pk).status, "failed")

    def test_stale_sweep_skips_deployments_still_holding_their_lock(self):
        stuck = Deployment.objects.create(site=self.site, host=self.host, status="updating")
        Deployment.objects.filter(pk=stuck.pk).update(updated_at=timezone.now() - timedelta(hours=2))
        locks.acquire(deployments.lock_key(self.site.pk), 900)
        self.assertEqual(deployments.recover_stale_deployments(), 0)
        self.assertEqual(Deployment.objects.get(pk=stuck.pk).status, "updating")

    def test_recent_deployments_are_left_alone(self):
        Deployment.objects.create(site=self.site, host=self.host, status="updating")
        self.assertEqual(deployments.recover_stale_deployments(), 0)

    def test_script_lines_skip_blanks_and_comments(self):
        self.assertEqual(deployments.script_lines(SCRIPT), ["composer install --no-dev", "php artisan migrate --force"])


@override_settings(**ORCHESTRATOR_SETTINGS)
class PushWebhookTests(TestCase):
    def setUp(self):
        reset_coordination()
        host = make_host()
        self.site = make_resource(host, "site", "shop.example.com", domain="shop.example.com", framework="laravel")
        self.source = SiteSource.objects.create(
            site=self.site, repository_url="https://github.com/acme/shop.git", branch="main", auto_deploy_enabled=True
        )
        self.runner = ScriptedRunner().respond("rev-parse HEAD", stdout="abc1234\n")
        patcher = mock.patch("yard_orchestrator.remote.get_runner", return_value=self.runner)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _push(self, ref="refs/heads/main", secret=None, event="push"):
        body = json.dumps({"ref": ref, "after": "abc1234"}).encode()
        signature = _sign(secret or self.source.webhook_secret, body)
        return deployments.handle_push_webhook(self.site.pk, event, body, signature)

    def test_push_to_tracked_branch_deploys(self):
        deployment, reason = self._push()
        self.assertEqual(reason, "deployment queued")
        self.assertEqual(deployment.trigger, "webhook")
        self.assertEqual(deployment.status, "success")
        self.assertTrue(self.runner.ran("checkout --force abc1234"))

    def test_bad_signature_is_rejected(self):
        with self.assertRaises(deployments.WebhookRejected) as ctx:
            self._push(secret="wrong")
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertFalse(Deployment.objects.exists())

    def test_other_branch_is_ignored(self):
        deployment, reason = self._push(ref="refs/heads/feature/x")
        self.assertIsNone(deployment)
        self.assertIn("feature/x", reason)

    def test_disabled_auto_deploy_is_ignored(self):
        self.source.auto_deploy_enabled = False
        self.source.save()
        deployment, _ = self._push()
        self.assertIsNone(deployment)

    def test_ping_is_acknowledged(self):
        deployment, reason = self._push(event="ping")
        self.assertIsNone(deployment)
        self.assertEqual(reason, "pong")

    def test_signature_helper(self):
        body = b'{"ref": "refs/heads/main"}'
        self.assertTrue(deployments.verify_signature("s3cret", body, _sign("s3cret", body)))
        self.assertFalse(deployments.verify_signature("s3cret", body, "sha1=abc"))
        self.assertFalse(deployments.verify_signature("s3cret", body, ""))

    def _deliver(self, payload):
        body = json.dumps(payload).encode()
        return deployments.handle_push_webhook(self.site.pk, "push", body, _sign(self.source.webhook_secret, body))

    def test_non_object_payload_is_rejected(self):
        with self.assertRaises(deployments.WebhookRejected) as ctx:
            self._deliver([{"ref": "refs/heads/main"}])
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertFalse(Deployment.objects.exists())

    def test_branch_deletion_is_ignored(self):
        deployment, reason = self._deliver({"ref": "refs/heads/main", "deleted": True, "after": "0" * 40})
        self.assertIsNone(deployment)
        self.assertEqual(reason, "ignored deletion of main")
        self.assertFalse(Deployment.objects.exists())

    def test_zero_after_sha_counts_as_deletion(self):
        deployment, _ = self._deliver({"ref": "refs/heads/main", "after": "0" * 40})
        self.assertIsNone(deployment)
        self.assertFalse(self.runner.ran("git clone"))
