"""
Client, project and task records for the operations backend.

These are the records the prioritization engine scores. Their CRUD lives
elsewhere; the only fields written here by the engine are
``priority_score`` and ``priority_calculated_at``.
"""

from django.conf import settings
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models


class ClientTier(models.TextChoices):
    REGULAR = 'REGULAR', 'Regular'
    VIP = 'VIP', 'VIP'


class ClientStatus(models.TextChoices):
    ACTIVE = 'ACTIVE', 'Active'
    INACTIVE = 'INACTIVE', 'Inactive'


class ProjectStatus(models.TextChoices):
    DRAFT = 'DRAFT', 'Draft'
    IN_PROGRESS = 'IN_PROGRESS', 'In progress'
    ON_HOLD = 'ON_HOLD', 'On hold'
    COMPLETED = 'COMPLETED', 'Completed'
    CANCELLED = 'CANCELLED', 'Cancelled'


class ProjectStage(models.TextChoices):
    PLANNING = 'PLANNING', 'Planning'
    DEVELOPMENT = 'DEVELOPMENT', 'Development'
    TESTING = 'TESTING', 'Testing'
    REVIEW = 'REVIEW', 'Review'
    DELIVERY = 'DELIVERY', 'Delivery'
    MAINTENANCE = 'MAINTENANCE', 'Maintenance'


class TaskStatus(models.TextChoices):
    TODO = 'TODO', 'To do'
    IN_PROGRESS = 'IN_PROGRESS', 'In progress'
    WAITING_APPROVAL = 'WAITING_APPROVAL', 'Waiting for approval'
    COMPLETED = 'COMPLETED', 'Completed'
    CANCELLED = 'CANCELLED', 'Cancelled'


# Records in these states never show up in priority listings.
CLOSED_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.CANCELLED)
CLOSED_PROJECT_STATUSES = (ProjectStatus.COMPLETED, ProjectStatus.CANCELLED)


class Client(models.Model):
    """
    A customer of the business.

    Attributes:
        tier: VIP clients weigh more in priority scoring
        total_revenue: Running sum of paid payment instances, maintained
            only by the billing ledger
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='clients'
    )
    name = models.CharField(max_length=255)
    email = models.EmailField(blank=True, default='')
    phone = models.CharField(max_length=40, blank=True, default='')
    company = models.CharField(max_length=255, blank=True, default='')
    tier = models.CharField(
        max_length=20,
        choices=ClientTier.choices,
        default=ClientTier.REGULAR
    )
    status = models.CharField(
        max_length=20,
        choices=ClientStatus.choices,
        default=ClientStatus.ACTIVE
    )
    total_revenue = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return f"{self.name} ({self.tier})"

    @property
    def is_vip(self) -> bool:
        return self.tier == ClientTier.VIP


class Project(models.Model):
    """
    A piece of client work with a budget and a delivery deadline.

    ``status`` says whether the project is still open; ``stage`` says how far
    along it is and feeds the status component of its priority score.
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='projects'
    )
    client = models.ForeignKey(
        Client,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name='projects'
    )
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    budget = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(0)]
    )
    deadline = models.DateTimeField(null=True, blank=True)
    status = models.CharField(
        max_length=20,
        choices=ProjectStatus.choices,
        default=ProjectStatus.DRAFT
    )
    stage = models.CharField(
        max_length=20,
        choices=ProjectStage.choices,
        default=ProjectStage.PLANNING
    )
    priority_score = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    priority_calculated_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['owner', 'status', '-priority_score'], name='crm_project_priority_idx'),
        ]

    def __str__(self):
        return f"{self.name} [{self.stage}]"


class Task(models.Model):
    """
    A unit of work, optionally attached to a project.

    A task has no budget or client of its own: both are read through its
    project when scoring.
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='tasks'
    )
    project = models.ForeignKey(
        Project,
        null=True,
        blank=True,
        on_delete=models.CASCADE,
        related_name='tasks'
    )
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    due_date = models.DateTimeField(null=True, blank=True)
    status = models.CharField(
        max_length=20,
        choices=TaskStatus.choices,
        default=TaskStatus.TODO
    )
    priority_score = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    priority_calculated_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['owner', 'status', '-priority_score'], name='crm_task_priority_idx'),
        ]

    def __str__(self):
        return f"{self.title} ({self.status})"

    @property
    def client(self):
        return self.project.client if self.project_id else None

    @property
    def budget(self):
        return self.project.budget if self.project_id else None


class Activity(models.Model):
    """Audit trail entry for user-visible actions."""

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='activities'
    )
    action = models.CharField(max_length=64)
    entity_type = models.CharField(max_length=64)
    entity_id = models.CharField(max_length=64)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        verbose_name_plural = 'activities'

    def __str__(self):
        return f"{self.action} {self.entity_type}#{self.entity_id}"
