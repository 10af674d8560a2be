import logging
from datetime import date

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from billing.ledger import mark_overdue_payments
from billing.scheduler import process_due_obligations
from common.dates import current_date

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Mark overdue payments and advance every recurring payment that is due."

    def add_arguments(self, parser):
        parser.add_argument(
            "--owner-id",
            dest="owner_id",
            type=int,
            default=None,
            help="Optional: run for a single user id.",
        )
        parser.add_argument(
            "--catch-up",
            dest="catch_up",
            action="store_true",
            help="Advance repeatedly until no obligation is still due.",
        )
        parser.add_argument(
            "--date",
            dest="run_date",
            default=None,
            help="Run as of this date (YYYY-MM-DD) instead of today.",
        )

    def handle(self, *args, **options):
        today = current_date()
        if options.get("run_date"):
            try:
                today = date.fromisoformat(options["run_date"])
            except ValueError:
                raise CommandError(f"Invalid --date: {options['run_date']} (expected YYYY-MM-DD)")

        owner = None
        if options.get("owner_id"):
            try:
                owner = get_user_model().objects.get(pk=options["owner_id"])
            except get_user_model().DoesNotExist:
                raise CommandError(f"User {options['owner_id']} does not exist")

        overdue = mark_overdue_payments(owner=owner, today=today)
        result = process_due_obligations(today=today, catch_up=options["catch_up"], owner=owner)

        for failure in result.failed:
            self.stderr.write(f"Recurring payment {failure['id']}: {failure['error']}")

        summary = (
            f"Recurring payments processed for {today}: overdue={overdue} "
            f"advanced={result.advanced} completed={result.completed} failed={len(result.failed)}"
        )
        logger.info(summary)
        self.stdout.write(self.style.SUCCESS(summary))
