from django.core.management.base import BaseCommand

from services.dispatch.reconciliation import scan_expired_offers


class Command(BaseCommand):
    help = "Emit offer_expired for offers past their deadline and re-announce stalled pending orders."

    def add_arguments(self, parser):
        parser.add_argument(
            "--batch-size",
            type=int,
            default=None,
            help="Maximum number of orders handled per pass (default: DISPATCH['EXPIRATION_SCAN_BATCH_SIZE']).",
        )

    def handle(self, *args, **options):
        expired_count, cleaned_count, retried_count = scan_expired_offers(batch_size=options["batch_size"])

        self.stdout.write(
            self.style.SUCCESS(
                f"Expired {expired_count} offer(s); cleaned {cleaned_count} stale offer(s); "
                f"re-dispatched {retried_count} stalled order(s)."
            )
        )
