import time

from django.core.management.base import BaseCommand
from django.utils import timezone

from yard_orchestrator.bootstrap import recover_stale_bootstraps
from yard_orchestrator.deployments import recover_stale_deployments
from yard_orchestrator.jobs import recover_stale_operations
from yard_orchestrator.monitors import evaluate_monitors
from yard_orchestrator.scheduling import dispatch_due_tasks, prune_task_runs
from yard_orchestrator.site_commands import recover_stale_site_commands


class Command(BaseCommand):
    help = "Fire due recurring tasks once a minute, evaluate monitors and sweep abandoned work."

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Run a single tick and exit")

    def tick(self) -> None:
        now = timezone.now()
        fired = dispatch_due_tasks(now)
        recovered = (
            recover_stale_operations()
            + recover_stale_bootstraps()
            + recover_stale_deployments()
            + recover_stale_site_commands()
        )
        triggered, cleared = evaluate_monitors(now)
        pruned = prune_task_runs(now) if now.minute == 0 else 0
        self.stdout.write(
            f"{now:%Y-%m-%d %H:%M} fired={fired} recovered={recovered} "
            f"triggered={triggered} cleared={cleared} pruned={pruned}"
        )

    def handle(self, *args, **options):
        if options["once"]:
            self.tick()
            return
        while True:
            self.tick()
            time.sleep(60 - timezone.now().second)
