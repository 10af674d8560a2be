"""
Payment instance transitions and reporting.

    PENDING | OVERDUE -> PAID | CANCELLED

Marking a payment PAID is the only place client revenue changes: the
instance update and the ``Client.total_revenue`` increment are written in
the same transaction, the increment as an ``F()`` expression so concurrent
payments for one client add up correctly.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from django.db import transaction
from django.db.models import Count, F, Q, Sum
from django.utils import timezone

from common.dates import current_date, current_time, month_bounds, window_end
from common.errors import InvalidStateTransition, NotFoundError
from crm.activity import log_activity
from crm.models import Client

from .models import ObligationStatus, Payment, PaymentStatus, RecurringPayment

logger = logging.getLogger(__name__)


OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.OVERDUE)
UPCOMING_WINDOW_DAYS = 7
RECENT_PAYMENTS = 5


def _get_payment(owner, payment_id: int, lock: bool = False) -> Payment:
    queryset = Payment.objects.select_related('client')
    if lock:
        queryset = queryset.select_for_update(of=('self',))
    try:
        return queryset.get(pk=payment_id, client__owner=owner)
    except Payment.DoesNotExist:
        raise NotFoundError(f"Payment {payment_id} not found")


def _ensure_open(payment: Payment, action: str) -> None:
    if payment.status not in OPEN_PAYMENT_STATUSES:
        raise InvalidStateTransition(
            f"Cannot {action} a payment that is {payment.status.lower()}",
            details={'current_status': payment.status}
        )


def mark_payment_paid(
    owner,
    payment_id: int,
    paid_at: Optional[datetime] = None,
    invoice_number: str = ''
) -> Payment:
    """Mark an open payment as paid and add its amount to the client's revenue."""
    with transaction.atomic():
        payment = _get_payment(owner, payment_id, lock=True)
        _ensure_open(payment, 'mark as paid')

        payment.status = PaymentStatus.PAID
        payment.paid_at = paid_at or current_time()
        update_fields = ['status', 'paid_at', 'updated_at']
        if invoice_number:
            payment.invoice_number = invoice_number
            update_fields.append('invoice_number')
        payment.save(update_fields=update_fields)

        Client.objects.filter(pk=payment.client_id).update(
            total_revenue=F('total_revenue') + payment.amount
        )
        log_activity(owner, 'payment_paid', 'payment', payment.pk, {'amount': payment.amount})

    logger.info("Payment %s paid: %s added to client %s", payment.pk, payment.amount, payment.client_id)
    return payment


def cancel_payment(owner, payment_id: int) -> Payment:
    with transaction.atomic():
        payment = _get_payment(owner, payment_id, lock=True)
        _ensure_open(payment, 'cancel')
        payment.status = PaymentStatus.CANCELLED
        payment.save(update_fields=['status', 'updated_at'])
        log_activity(owner, 'payment_cancelled', 'payment', payment.pk)

    logger.info("Payment %s cancelled", payment.pk)
    return payment


def delete_payment(owner, payment_id: int) -> None:
    """
    Delete a one-off payment that was never paid.

    Paid payments are part of revenue, and payments generated by a recurring
    payment are its history; both can only be cancelled.
    """
    with transaction.atomic():
        payment = _get_payment(owner, payment_id, lock=True)
        if payment.status == PaymentStatus.PAID:
            raise InvalidStateTransition("Paid payments cannot be deleted")
        if payment.recurring_payment_id is not None:
            raise InvalidStateTransition(
                f"Payment {payment_id} belongs to recurring payment {payment.recurring_payment_id}; cancel it instead",
                details={'recurring_payment_id': payment.recurring_payment_id}
            )
        log_activity(owner, 'payment_deleted', 'payment', payment.pk, {'amount': payment.amount})
        payment.delete()

    logger.info("Payment %s deleted", payment_id)


def mark_overdue_payments(owner=None, today: Optional[date] = None) -> int:
    """Persist OVERDUE for pending payments due before ``today``. Returns the count."""
    today = today or current_date()
    overdue = Payment.objects.filter(status=PaymentStatus.PENDING, due_date__lt=today)
    if owner is not None:
        overdue = overdue.filter(client__owner=owner)
    count = overdue.update(status=PaymentStatus.OVERDUE, updated_at=timezone.now())
    if count:
        logger.info("Marked %d payments overdue as of %s", count, today)
    return count


def _payment_summary(payment: Payment) -> Dict[str, Any]:
    return {
        'id': payment.pk,
        'client_id': payment.client_id,
        'client_name': payment.client.name,
        'amount': payment.amount,
        'due_date': payment.due_date,
        'paid_at': payment.paid_at,
        'recurring_payment_id': payment.recurring_payment_id
    }


def payment_statistics(owner, today: Optional[date] = None) -> Dict[str, Any]:
    """
    Totals for the payments dashboard.

    Pending payments past their due date count as overdue whether or not
    ``mark_overdue_payments`` has run yet.
    """
    today = today or current_date()
    payments = Payment.objects.filter(client__owner=owner)

    overdue_q = Q(status=PaymentStatus.OVERDUE) | Q(status=PaymentStatus.PENDING, due_date__lt=today)
    pending_q = Q(status=PaymentStatus.PENDING, due_date__gte=today)
    paid_q = Q(status=PaymentStatus.PAID)

    month_start, next_month = month_bounds(today)
    month_q = paid_q & Q(paid_at__date__gte=month_start, paid_at__date__lt=next_month)

    totals = payments.aggregate(
        pending_amount=Sum('amount', filter=pending_q),
        pending_count=Count('id', filter=pending_q),
        overdue_amount=Sum('amount', filter=overdue_q),
        overdue_count=Count('id', filter=overdue_q),
        paid_amount=Sum('amount', filter=paid_q),
        paid_count=Count('id', filter=paid_q),
        monthly_revenue=Sum('amount', filter=month_q)
    )

    recurring = RecurringPayment.objects.filter(
        client__owner=owner,
        status=ObligationStatus.ACTIVE
    ).aggregate(total=Sum('amount'), count=Count('id'))

    upcoming = (
        payments
        .filter(status=PaymentStatus.PENDING, due_date__gte=today, due_date__lte=window_end(today, UPCOMING_WINDOW_DAYS))
        .select_related('client')
        .order_by('due_date', 'id')
    )
    recent = payments.filter(paid_q).select_related('client').order_by('-paid_at', '-id')[:RECENT_PAYMENTS]

    zero = Decimal('0')
    return {
        'pending': {'amount': totals['pending_amount'] or zero, 'count': totals['pending_count']},
        'overdue': {'amount': totals['overdue_amount'] or zero, 'count': totals['overdue_count']},
        'paid': {'amount': totals['paid_amount'] or zero, 'count': totals['paid_count']},
        'monthly_revenue': totals['monthly_revenue'] or zero,
        'recurring': {'amount': recurring['total'] or zero, 'count': recurring['count']},
        'upcoming': [_payment_summary(payment) for payment in upcoming],
        'recent_paid': [_payment_summary(payment) for payment in recent]
    }
