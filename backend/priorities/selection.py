"""
Ranking of stored priority scores for the dashboard.

Scores are read as stored; nothing here recalculates them. The reason text
attached to each item is derived from the item's current attributes so the
dashboard can explain a score even when it was calculated a while ago.

Ordering:
--------
Items are ordered by stored score, highest first. Equal scores are broken by
creation time (older first), then kind (projects before tasks), then id, so
repeated reads of unchanged data always return the same order.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from common.dates import current_time, is_due_today_or_past
from crm.models import CLOSED_PROJECT_STATUSES, CLOSED_TASK_STATUSES, Project, Task

from .scoring import (
    ItemKind,
    ReasonTag,
    UrgencyLevel,
    classify_urgency,
    compute_project_breakdown,
    compute_task_breakdown,
)


DEFAULT_LIMIT = 10
MAX_LIMIT = 50

# How many top items "today" is drawn from, and the score that qualifies on its own.
TODAY_POOL_SIZE = 5
TODAY_SCORE_THRESHOLD = 50

# Projects sort ahead of tasks when score and creation time tie.
KIND_ORDER = {ItemKind.PROJECT: 0, ItemKind.TASK: 1}


@dataclass
class PriorityItem:
    """One ranked entry of the priority list."""
    id: int
    kind: ItemKind
    title: str
    priority_score: int
    urgency_level: UrgencyLevel
    created_at: datetime
    reasons: List[ReasonTag] = field(default_factory=list)
    deadline: Optional[datetime] = None
    client_name: Optional[str] = None
    budget: Optional[Decimal] = None

    @property
    def reason(self) -> str:
        return ", ".join(tag.value for tag in self.reasons)

    def sort_key(self):
        return (-self.priority_score, self.created_at, KIND_ORDER[self.kind], self.id)


def priority_item_to_dict(item: PriorityItem) -> Dict:
    """Convert a PriorityItem to a dictionary for JSON serialization."""
    return {
        'id': item.id,
        'type': item.kind.value,
        'title': item.title,
        'priority_score': item.priority_score,
        'urgency_level': item.urgency_level.value,
        'reason': item.reason,
        'reasons': [tag.name for tag in item.reasons],
        'deadline': item.deadline.isoformat() if item.deadline else None,
        'client_name': item.client_name,
        'budget': float(item.budget) if item.budget is not None else None
    }


def _task_item(task: Task, now: datetime) -> PriorityItem:
    project = task.project
    client = project.client if project is not None else None
    return PriorityItem(
        id=task.pk,
        kind=ItemKind.TASK,
        title=task.title,
        priority_score=task.priority_score,
        urgency_level=classify_urgency(task.priority_score),
        created_at=task.created_at,
        reasons=compute_task_breakdown(task, now).reasons,
        deadline=task.due_date,
        client_name=client.name if client is not None else None,
        budget=project.budget if project is not None else None
    )


def _project_item(project: Project, now: datetime) -> PriorityItem:
    client = project.client
    return PriorityItem(
        id=project.pk,
        kind=ItemKind.PROJECT,
        title=project.name,
        priority_score=project.priority_score,
        urgency_level=classify_urgency(project.priority_score),
        created_at=project.created_at,
        reasons=compute_project_breakdown(project, now).reasons,
        deadline=project.deadline,
        client_name=client.name if client is not None else None,
        budget=project.budget
    )


def get_top_priority_items(
    owner,
    limit: int = DEFAULT_LIMIT,
    now: Optional[datetime] = None
) -> List[PriorityItem]:
    """
    Return up to ``limit`` open tasks and projects, highest stored score first.

    The top ``ceil(limit / 2)`` open tasks and the top ``ceil(limit / 2)``
    open projects are fetched, merged, re-sorted and truncated. Completed and
    cancelled records are excluded whatever their stored score.
    """
    now = now or current_time()
    per_kind = math.ceil(limit / 2)

    tasks = (
        Task.objects
        .filter(owner=owner)
        .exclude(status__in=CLOSED_TASK_STATUSES)
        .select_related('project__client')
        .order_by('-priority_score', 'created_at', 'id')[:per_kind]
    )
    projects = (
        Project.objects
        .filter(owner=owner)
        .exclude(status__in=CLOSED_PROJECT_STATUSES)
        .select_related('client')
        .order_by('-priority_score', 'created_at', 'id')[:per_kind]
    )

    items = [_task_item(task, now) for task in tasks]
    items.extend(_project_item(project, now) for project in projects)
    items.sort(key=PriorityItem.sort_key)
    return items[:limit]


def get_recommended_for_today(owner, now: Optional[datetime] = None) -> List[PriorityItem]:
    """
    Filter the top-ranked items down to what should be done today.

    An item qualifies when its score is at least TODAY_SCORE_THRESHOLD, or
    when its deadline is today or already past. Order is kept as ranked.
    """
    now = now or current_time()
    return [
        item for item in get_top_priority_items(owner, TODAY_POOL_SIZE, now)
        if item.priority_score >= TODAY_SCORE_THRESHOLD
        or (item.deadline is not None and is_due_today_or_past(item.deadline, now))
    ]
