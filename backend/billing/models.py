"""
Recurring obligations and the payment instances they generate.

A ``RecurringPayment`` is a standing agreement to bill a client at a fixed
frequency. Each billing cycle materializes one ``Payment``; the history is
reachable through ``recurring.payment_history``. Both are scoped to a user
through their client.

State changes go through ``billing.scheduler`` and ``billing.ledger``; these
models only describe the data and its database-level guarantees.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q

from common.dates import current_date
from crm.models import Client, Project


class Frequency(models.TextChoices):
    DAILY = 'DAILY', 'Daily'
    WEEKLY = 'WEEKLY', 'Weekly'
    MONTHLY = 'MONTHLY', 'Monthly'
    QUARTERLY = 'QUARTERLY', 'Quarterly'
    YEARLY = 'YEARLY', 'Yearly'


class ObligationStatus(models.TextChoices):
    ACTIVE = 'ACTIVE', 'Active'
    PAUSED = 'PAUSED', 'Paused'
    CANCELLED = 'CANCELLED', 'Cancelled'
    COMPLETED = 'COMPLETED', 'Completed'


class PaymentStatus(models.TextChoices):
    PENDING = 'PENDING', 'Pending'
    PAID = 'PAID', 'Paid'
    OVERDUE = 'OVERDUE', 'Overdue'
    CANCELLED = 'CANCELLED', 'Cancelled'


class RecurringPayment(models.Model):
    """
    A standing billing agreement with one client.

    Attributes:
        next_due_date: Due date of the most recently generated payment
            instance; only ever moves forward
        last_paid_date: The due date that was current before the last advance
        end_date: Date after which no further cycles are billed (optional)
        external_id: Retainer id at the invoicing provider; blank when the
            obligation is not mirrored
    """

    client = models.ForeignKey(
        Client,
        on_delete=models.PROTECT,
        related_name='recurring_payments'
    )
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    frequency = models.CharField(
        max_length=20,
        choices=Frequency.choices,
        default=Frequency.MONTHLY
    )
    status = models.CharField(
        max_length=20,
        choices=ObligationStatus.choices,
        default=ObligationStatus.ACTIVE
    )
    next_due_date = models.DateField()
    last_paid_date = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    external_id = models.CharField(max_length=100, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['next_due_date', 'id']
        indexes = [
            models.Index(fields=['status', 'next_due_date'], name='billing_recurring_due_idx'),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name='billing_recurring_amount_positive'),
        ]

    def __str__(self):
        return f"{self.name} ({self.frequency}, {self.status})"

    @property
    def is_active(self) -> bool:
        return self.status == ObligationStatus.ACTIVE


class Payment(models.Model):
    """
    One concrete billing event.

    ``status`` is what was last written. OVERDUE is derived for pending
    instances past their due date; ``effective_status`` reports it without a
    write, and ``billing.ledger.mark_overdue_payments`` persists it.
    """

    client = models.ForeignKey(
        Client,
        on_delete=models.PROTECT,
        related_name='payments'
    )
    project = models.ForeignKey(
        Project,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name='payments'
    )
    recurring_payment = models.ForeignKey(
        RecurringPayment,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name='payment_history'
    )
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING
    )
    due_date = models.DateField()
    paid_at = models.DateTimeField(null=True, blank=True)
    invoice_number = models.CharField(max_length=100, blank=True, default='')
    notes = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-due_date', '-id']
        indexes = [
            models.Index(fields=['status', 'due_date'], name='billing_payment_due_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~Q(status='PAID') | Q(paid_at__isnull=False),
                name='billing_payment_paid_has_paid_at'
            ),
        ]

    def __str__(self):
        return f"{self.amount} due {self.due_date} ({self.status})"

    def effective_status(self, today: Optional[date] = None) -> str:
        today = today or current_date()
        if self.status == PaymentStatus.PENDING and self.due_date < today:
            return PaymentStatus.OVERDUE
        return self.status
