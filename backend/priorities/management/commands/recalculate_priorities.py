import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import DatabaseError

from priorities.services import recalculate_all_scores

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Recalculate stored priority scores for every user's tasks and projects."

    def add_arguments(self, parser):
        parser.add_argument(
            "--owner-id",
            dest="owner_id",
            type=int,
            default=None,
            help="Optional: run for a single user id.",
        )
        parser.add_argument(
            "--workers",
            dest="workers",
            type=int,
            default=None,
            help="Thread pool size (defaults to PRIORITY_RECALC_WORKERS).",
        )

    def handle(self, *args, **options):
        workers = options.get("workers") or settings.PRIORITY_RECALC_WORKERS
        owner_id = options.get("owner_id")

        users = get_user_model().objects.filter(is_active=True).order_by("pk")
        if owner_id:
            users = users.filter(pk=owner_id)

        total_tasks = 0
        total_projects = 0
        failed = 0

        for user in users:
            try:
                result = recalculate_all_scores(user, max_workers=workers)
            except DatabaseError:
                failed += 1
                logger.exception("Priority recalculation failed for user %s", user.pk)
                self.stderr.write(f"User {user.pk}: recalculation failed")
                continue
            total_tasks += result["tasks_updated"]
            total_projects += result["projects_updated"]

        summary = f"Priority recalculation complete: tasks={total_tasks} projects={total_projects} failed_users={failed}"
        logger.info(summary)
        self.stdout.write(self.style.SUCCESS(summary))
