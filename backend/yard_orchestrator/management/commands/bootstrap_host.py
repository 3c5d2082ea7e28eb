from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError

from yard_orchestrator.enqueue import enqueue_bootstrap
from yard_orchestrator.errors import OrchestratorError
from yard_orchestrator.models import Host


class Command(BaseCommand):
    help = "Start or resume the bootstrap of a host."

    def add_arguments(self, parser):
        parser.add_argument("host_id", help="Host UUID")
        parser.add_argument("--runtime-version", help="PHP version to install during bootstrap")

    def handle(self, *args, **options):
        config = {}
        if options.get("runtime_version"):
            config["runtime_version"] = options["runtime_version"]
        try:
            job_id = enqueue_bootstrap(options["host_id"], config or None)
        except (Host.DoesNotExist, ValidationError):
            raise CommandError(f"Host {options['host_id']} not found") from None
        except OrchestratorError as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(f"Bootstrap queued as job {job_id}")
