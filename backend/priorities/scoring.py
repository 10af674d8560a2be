"""
Priority Scoring Algorithm for tasks and projects.

This module decides how urgently a piece of work deserves attention. Each
task or project receives a score between 0 and 100 built from four fixed
components, plus a short explanation of which factors pushed it up.

Scoring Formula:
---------------
priority_score = deadline_score   (0-40)
               + value_score      (0-30)
               + client_score     (0-20)
               + status_score     (0-10)

The component maxima sum to exactly 100, so the total never needs clamping.
Weights and thresholds are business constants and are deliberately not
exposed as settings.

Component rules:
---------------
- Deadline: banded on whole days until the deadline (rounded up).
  Overdue -> 40, 0-1 days -> 35, 2-3 -> 30, 4-7 -> 20, 8-14 -> 10,
  later -> 5, no deadline -> 0.
- Value: linear in the monetary value up to a 50,000 ceiling.
  A task is valued at its project's budget.
- Client: VIP -> 20, any other client -> 10, no client -> 0.
  A task inherits its project's client.
- Status: task lifecycle status or project stage (see STATUS_SCORES).

Scoring is pure: it reads a snapshot of the item and a reference instant and
never touches the database. Persisting the result is the caller's job.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional

from common.dates import current_time, days_until, is_past
from crm.models import ClientTier, ProjectStage, TaskStatus


# ==================== Item Kinds & Reasons ====================

class ItemKind(Enum):
    """The two kinds of workable item."""
    TASK = "task"
    PROJECT = "project"


class ReasonTag(Enum):
    """Qualifying reasons, in the order they are reported."""
    URGENT_DEADLINE = "urgent deadline"
    HIGH_BUDGET = "high budget"
    VIP_CLIENT = "VIP client"
    WAITING_ON_APPROVAL = "waiting on approval"
    ADVANCED_STAGE = "advanced stage"
    NORMAL_PRIORITY = "normal priority"


class UrgencyLevel(Enum):
    """Coarse classification of a stored priority score."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ==================== Constants ====================

MAX_DEADLINE_SCORE = 40
MAX_VALUE_SCORE = 30
MAX_CLIENT_SCORE = 20
MAX_STATUS_SCORE = 10

# Monetary value that earns the full value component.
VALUE_CEILING = Decimal('50000')

# (upper bound in days, score); the first band whose bound is >= days wins.
DEADLINE_BANDS = (
    (1, 35),
    (3, 30),
    (7, 20),
    (14, 10),
)
OVERDUE_SCORE = 40
DISTANT_DEADLINE_SCORE = 5

VIP_CLIENT_SCORE = 20
REGULAR_CLIENT_SCORE = 10

STATUS_SCORES = {
    ItemKind.TASK: {
        TaskStatus.WAITING_APPROVAL: 10,
        TaskStatus.IN_PROGRESS: 8,
        TaskStatus.TODO: 5,
        TaskStatus.COMPLETED: 0,
        TaskStatus.CANCELLED: 0,
    },
    ItemKind.PROJECT: {
        ProjectStage.REVIEW: 10,
        ProjectStage.DELIVERY: 10,
        ProjectStage.TESTING: 8,
        ProjectStage.DEVELOPMENT: 6,
        ProjectStage.PLANNING: 4,
        ProjectStage.MAINTENANCE: 2,
    },
}
# Used for statuses outside the known set.
DEFAULT_STATUS_SCORES = {
    ItemKind.TASK: 5,
    ItemKind.PROJECT: 4,
}

# Reason thresholds
URGENT_DEADLINE_THRESHOLD = 30
HIGH_BUDGET_THRESHOLD = 20
VIP_CLIENT_THRESHOLD = 20
STATUS_REASON_THRESHOLD = 8

STATUS_REASONS = {
    ItemKind.TASK: ReasonTag.WAITING_ON_APPROVAL,
    ItemKind.PROJECT: ReasonTag.ADVANCED_STAGE,
}

# Urgency cut-offs, highest first.
URGENCY_LEVELS = (
    (70, UrgencyLevel.CRITICAL),
    (40, UrgencyLevel.HIGH),
    (20, UrgencyLevel.MEDIUM),
)


# ==================== Data Classes ====================

@dataclass(frozen=True)
class ItemSnapshot:
    """
    The attributes of a task or project that scoring reads.

    Attributes:
        kind: Task or project
        status: Task status, or project stage
        deadline: Task due date / project deadline (optional)
        monetary_value: Project budget (optional)
        client_tier: Tier of the associated client; None when there is no client
    """
    kind: ItemKind
    status: str
    deadline: Optional[datetime] = None
    monetary_value: Optional[Decimal] = None
    client_tier: Optional[str] = None


@dataclass
class ScoreBreakdown:
    """Detailed breakdown of how an item's score was calculated."""
    deadline_score: int = 0
    value_score: float = 0.0
    client_score: int = 0
    status_score: int = 0
    total_score: int = 0
    reasons: List[ReasonTag] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return ", ".join(tag.value for tag in self.reasons)

    def to_dict(self) -> Dict:
        return {
            'deadline_score': self.deadline_score,
            'value_score': round(self.value_score, 2),
            'client_score': self.client_score,
            'status_score': self.status_score,
            'total_score': self.total_score,
            'reasons': [tag.name for tag in self.reasons],
            'reason': self.reason
        }


# ==================== Scorer ====================

class PriorityScorer:
    """
    Computes the four-component priority score for one item.

    The scorer holds no state between calls; an instance exists so the
    individual components can be exercised on their own.
    """

    def calculate_deadline_score(
        self,
        deadline: Optional[datetime],
        now: Optional[datetime] = None
    ) -> int:
        """
        Score deadline proximity (0-40).

        Any deadline strictly before ``now`` is overdue and earns the maximum
        no matter how long ago it passed. Otherwise the score is banded on
        ``ceil(days until deadline)``; band boundaries belong to the more
        urgent band.
        """
        if deadline is None:
            return 0

        now = now or current_time()
        if is_past(deadline, now):
            return OVERDUE_SCORE

        days = days_until(deadline, now)
        for upper_bound, score in DEADLINE_BANDS:
            if days <= upper_bound:
                return score
        return DISTANT_DEADLINE_SCORE

    def calculate_value_score(self, monetary_value: Optional[Decimal]) -> Decimal:
        """
        Score monetary value (0-30), linear up to VALUE_CEILING.

        Returned as a Decimal so the total can be rounded without float noise.
        """
        if not monetary_value:
            return Decimal('0')
        value = max(Decimal(str(monetary_value)), Decimal('0'))
        return min(Decimal(MAX_VALUE_SCORE), value / VALUE_CEILING * MAX_VALUE_SCORE)

    def calculate_client_score(self, client_tier: Optional[str]) -> int:
        """Score the client relationship (0-20)."""
        if client_tier is None:
            return 0
        if client_tier == ClientTier.VIP:
            return VIP_CLIENT_SCORE
        return REGULAR_CLIENT_SCORE

    def calculate_status_score(self, kind: ItemKind, status: str) -> int:
        """Score lifecycle status / project stage (0-10)."""
        return STATUS_SCORES[kind].get(status, DEFAULT_STATUS_SCORES[kind])

    def collect_reasons(
        self,
        kind: ItemKind,
        deadline_score: int,
        value_score: Decimal,
        client_score: int,
        status_score: int
    ) -> List[ReasonTag]:
        """Build the ordered list of qualifying reasons."""
        reasons = []
        if deadline_score >= URGENT_DEADLINE_THRESHOLD:
            reasons.append(ReasonTag.URGENT_DEADLINE)
        if value_score >= HIGH_BUDGET_THRESHOLD:
            reasons.append(ReasonTag.HIGH_BUDGET)
        if client_score >= VIP_CLIENT_THRESHOLD:
            reasons.append(ReasonTag.VIP_CLIENT)
        if status_score >= STATUS_REASON_THRESHOLD:
            reasons.append(STATUS_REASONS[kind])
        if not reasons:
            reasons.append(ReasonTag.NORMAL_PRIORITY)
        return reasons

    def score(self, item: ItemSnapshot, now: Optional[datetime] = None) -> ScoreBreakdown:
        """Calculate the complete breakdown for one item."""
        deadline_score = self.calculate_deadline_score(item.deadline, now)
        value_score = self.calculate_value_score(item.monetary_value)
        client_score = self.calculate_client_score(item.client_tier)
        status_score = self.calculate_status_score(item.kind, item.status)

        raw_total = deadline_score + value_score + client_score + status_score
        total = int(raw_total.quantize(Decimal('1'), rounding=ROUND_HALF_UP))

        return ScoreBreakdown(
            deadline_score=deadline_score,
            value_score=float(value_score),
            client_score=client_score,
            status_score=status_score,
            total_score=total,
            reasons=self.collect_reasons(
                item.kind, deadline_score, value_score, client_score, status_score
            )
        )


_scorer = PriorityScorer()


# ==================== Snapshots ====================

def snapshot_from_task(task) -> ItemSnapshot:
    """Read a task's scoring inputs, resolving budget and client via its project."""
    project = task.project if task.project_id else None
    client = project.client if project is not None and project.client_id else None
    return ItemSnapshot(
        kind=ItemKind.TASK,
        status=task.status,
        deadline=task.due_date,
        monetary_value=project.budget if project is not None else None,
        client_tier=client.tier if client is not None else None
    )


def snapshot_from_project(project) -> ItemSnapshot:
    client = project.client if project.client_id else None
    return ItemSnapshot(
        kind=ItemKind.PROJECT,
        status=project.stage,
        deadline=project.deadline,
        monetary_value=project.budget,
        client_tier=client.tier if client is not None else None
    )


# ==================== Public API ====================

def compute_breakdown(item: ItemSnapshot, now: Optional[datetime] = None) -> ScoreBreakdown:
    return _scorer.score(item, now)


def compute_task_breakdown(task, now: Optional[datetime] = None) -> ScoreBreakdown:
    return _scorer.score(snapshot_from_task(task), now)


def compute_project_breakdown(project, now: Optional[datetime] = None) -> ScoreBreakdown:
    return _scorer.score(snapshot_from_project(project), now)


def classify_urgency(score: int) -> UrgencyLevel:
    """Map a 0-100 score to an urgency level."""
    for threshold, level in URGENCY_LEVELS:
        if score >= threshold:
            return level
    return UrgencyLevel.LOW
