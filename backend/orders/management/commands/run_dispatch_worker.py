import signal

from django.core.management.base import BaseCommand

from services.dispatch.worker import DispatchWorker


class Command(BaseCommand):
    help = "Run the dispatch worker: consume lifecycle events and scan for expired offers."

    def add_arguments(self, parser):
        parser.add_argument(
            "--consumer-name",
            default=None,
            help="Checkpoint name for this consumer (default: DISPATCH['CONSUMER_NAME']).",
        )
        parser.add_argument(
            "--no-scanner",
            action="store_true",
            help="Do not start the in-process expiration scanner (e.g. when Celery beat runs it).",
        )

    def handle(self, *args, **options):
        worker = DispatchWorker(consumer_name=options["consumer_name"])

        def _shutdown(signum, frame):
            self.stdout.write(f"Received signal {signum}, stopping...")
            worker.stop()

        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)

        self.stdout.write(self.style.SUCCESS(f"Dispatch worker {worker.consumer_name} running"))
        worker.run(with_scanner=not options["no_scanner"])
        self.stdout.write(self.style.SUCCESS("Dispatch worker stopped"))
