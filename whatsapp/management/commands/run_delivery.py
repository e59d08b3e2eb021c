import logging
import time

from django.core.management.base import BaseCommand

from whatsapp import scheduler
from whatsapp.services.cleanup_service import CleanupService
from whatsapp.services.worker_service import WorkerPool

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Run the lesson scheduler and queue workers, or drain due jobs once"

    def add_arguments(self, parser):
        parser.add_argument(
            "--once",
            action="store_true",
            help="Process every job that is due now, then exit",
        )
        parser.add_argument(
            "--cleanup",
            action="store_true",
            help="Run the maintenance sweeps before starting",
        )

    def handle(self, *args, **options):
        if options["cleanup"]:
            results = CleanupService.run_all()
            self.stdout.write(f"Cleanup: {results}")

        if options["once"]:
            processed = WorkerPool().run_pending()
            self.stdout.write(self.style.SUCCESS(f"Processed {processed} jobs"))
            return

        scheduler.start()
        self.stdout.write(self.style.SUCCESS("Delivery running, press Ctrl+C to stop"))
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            scheduler.stop()
