"""
Write-back of calculated priority scores.

Scores are recomputed from scratch on every refresh and written with a single
UPDATE; concurrent refreshes of the same item simply let the last writer win.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, Optional

from django.db import connection

from common.dates import current_time
from common.errors import NotFoundError
from crm.models import Project, Task

from .scoring import ScoreBreakdown, compute_project_breakdown, compute_task_breakdown

logger = logging.getLogger(__name__)


def refresh_task_score(owner, task_id: int, now: Optional[datetime] = None) -> ScoreBreakdown:
    """Recalculate and store one task's score."""
    now = now or current_time()
    try:
        task = Task.objects.select_related('project__client').get(pk=task_id, owner=owner)
    except Task.DoesNotExist:
        raise NotFoundError(f"Task {task_id} not found")

    breakdown = compute_task_breakdown(task, now)
    Task.objects.filter(pk=task.pk).update(
        priority_score=breakdown.total_score,
        priority_calculated_at=now
    )
    return breakdown


def refresh_project_score(owner, project_id: int, now: Optional[datetime] = None) -> ScoreBreakdown:
    """Recalculate and store one project's score."""
    now = now or current_time()
    try:
        project = Project.objects.select_related('client').get(pk=project_id, owner=owner)
    except Project.DoesNotExist:
        raise NotFoundError(f"Project {project_id} not found")

    breakdown = compute_project_breakdown(project, now)
    Project.objects.filter(pk=project.pk).update(
        priority_score=breakdown.total_score,
        priority_calculated_at=now
    )
    return breakdown


def _refresh_in_worker(refresh, owner, item_id: int, now: datetime) -> ScoreBreakdown:
    # Worker threads get their own connection; release it when done.
    try:
        return refresh(owner, item_id, now)
    finally:
        connection.close()


def recalculate_all_scores(
    owner,
    max_workers: int = 1,
    now: Optional[datetime] = None
) -> Dict[str, int]:
    """
    Refresh every task and project belonging to ``owner``.

    Items have no dependency on each other, so with ``max_workers`` > 1 the
    refreshes run on a bounded thread pool. With the default of one worker
    they run in the calling thread, which is what request handlers use.

    Returns:
        {'tasks_updated': int, 'projects_updated': int}
    """
    now = now or current_time()
    task_ids = list(Task.objects.filter(owner=owner).values_list('pk', flat=True))
    project_ids = list(Project.objects.filter(owner=owner).values_list('pk', flat=True))

    logger.info(
        "Recalculating priority scores for user %s: %d tasks, %d projects",
        getattr(owner, 'pk', owner), len(task_ids), len(project_ids)
    )

    jobs = [(refresh_task_score, pk) for pk in task_ids]
    jobs.extend((refresh_project_score, pk) for pk in project_ids)

    if max_workers <= 1:
        for refresh, pk in jobs:
            refresh(owner, pk, now)
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(_refresh_in_worker, refresh, owner, pk, now)
                for refresh, pk in jobs
            ]
            for future in futures:
                future.result()

    result = {
        'tasks_updated': len(task_ids),
        'projects_updated': len(project_ids)
    }
    logger.info("Priority recalculation finished for user %s: %s", getattr(owner, 'pk', owner), result)
    return result
