"""
Recurring payment scheduler.

Moves recurring obligations through their billing cycles and lifecycle
states. Every change that the invoicing provider mirrors is applied
sync-then-commit: the obligation row is locked, the request is validated,
the provider is called, and only then is the local change written. If the
provider call fails the transaction is rolled back and nothing changes
locally.

Advancing:
---------
advance moves an ACTIVE obligation forward by exactly one frequency unit
(calendar months and years, so Jan 31 becomes Feb 29 and then Mar 29),
records the previous due date as ``last_paid_date`` and creates one PENDING
payment instance due on the new date. The obligation update and the insert
share one transaction. A single call never skips ahead over missed periods;
``process_due_obligations(catch_up=True)`` calls it repeatedly instead.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from django.db import DatabaseError, transaction

from common.dates import current_date, roll_forward
from common.errors import (
    ErrorCode,
    InvalidStateTransition,
    NotFoundError,
    OpsError,
    ValidationFailed,
)
from crm.activity import log_activity
from crm.models import Client

from .lifecycle import ensure_transition, is_terminal
from .models import Frequency, ObligationStatus, Payment, PaymentStatus, RecurringPayment
from .morning import NullGateway, RetainerGateway, RetainerRequest, get_gateway

logger = logging.getLogger(__name__)


# ==================== Helpers ====================

def _get_obligation(owner, obligation_id: int, lock: bool = False) -> RecurringPayment:
    queryset = RecurringPayment.objects.select_related('client')
    if lock:
        queryset = queryset.select_for_update(of=('self',))
    try:
        return queryset.get(pk=obligation_id, client__owner=owner)
    except RecurringPayment.DoesNotExist:
        raise NotFoundError(f"Recurring payment {obligation_id} not found")


def _clean_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationFailed(f"Invalid amount: {amount}")
    if not value.is_finite() or value <= 0:
        raise ValidationFailed("Amount must be greater than zero")
    return value


def _check_frequency(gateway: RetainerGateway, frequency: str) -> None:
    if frequency not in Frequency.values:
        raise ValidationFailed(
            f"Invalid frequency '{frequency}'. Valid options: {Frequency.values}"
        )
    if not gateway.supports_frequency(frequency):
        raise ValidationFailed(
            f"Frequency {frequency} is not supported by the invoicing provider",
            code=ErrorCode.ERR_UNSUPPORTED_FREQUENCY
        )


def _mirrored(gateway: RetainerGateway, obligation: RecurringPayment) -> bool:
    return gateway.enabled and bool(obligation.external_id)


def _audit(obligation: RecurringPayment, action: str, **metadata: Any) -> None:
    log_activity(obligation.client.owner_id, action, 'recurring_payment', obligation.pk, metadata)


# ==================== Create / Update / Delete ====================

# Default for optional fields whose None means "clear".
UNCHANGED = object()


def create_obligation(
    owner,
    client_id: int,
    name: str,
    amount,
    frequency: str,
    next_due_date: date,
    description: str = '',
    end_date: Optional[date] = None,
    gateway: Optional[RetainerGateway] = None
) -> RecurringPayment:
    """
    Create an ACTIVE obligation together with its first payment instance.

    The first instance is due on ``next_due_date``. When the integration is
    enabled a retainer is opened first; if that fails nothing is stored.
    """
    gateway = gateway or get_gateway()

    name = (name or '').strip()
    if not name:
        raise ValidationFailed("Name is required")
    amount = _clean_amount(amount)
    _check_frequency(gateway, frequency)
    if end_date is not None and end_date < next_due_date:
        raise ValidationFailed("End date cannot be before the first due date")

    try:
        client = Client.objects.get(pk=client_id, owner=owner)
    except Client.DoesNotExist:
        raise NotFoundError(f"Client {client_id} not found")

    external_id = ''
    if gateway.enabled:
        external_id = gateway.create_retainer(RetainerRequest(
            client_name=client.name,
            description=description or name,
            amount=amount,
            frequency=frequency,
            start_date=next_due_date,
            end_date=end_date,
            client_email=client.email,
            client_phone=client.phone,
            remarks=f"Recurring payment: {name}"
        )) or ''

    try:
        with transaction.atomic():
            obligation = RecurringPayment.objects.create(
                client=client,
                name=name,
                description=description,
                amount=amount,
                frequency=frequency,
                status=ObligationStatus.ACTIVE,
                next_due_date=next_due_date,
                end_date=end_date,
                external_id=external_id
            )
            Payment.objects.create(
                client=client,
                recurring_payment=obligation,
                amount=amount,
                status=PaymentStatus.PENDING,
                due_date=next_due_date
            )
            _audit(obligation, 'recurring_payment_created', amount=amount, frequency=frequency)
    except DatabaseError:
        if external_id:
            logger.error("Retainer %s was opened but the recurring payment could not be stored", external_id)
        raise

    logger.info(
        "Created recurring payment %s for client %s: %s %s from %s",
        obligation.pk, client.pk, amount, frequency, next_due_date
    )
    return obligation


def update_obligation(
    owner,
    obligation_id: int,
    name: Optional[str] = None,
    amount=None,
    frequency: Optional[str] = None,
    description: Optional[str] = None,
    end_date: Any = UNCHANGED,
    gateway: Optional[RetainerGateway] = None
) -> RecurringPayment:
    """
    Change the terms of a non-terminal obligation.

    ``next_due_date`` is not editable. Amount, description, frequency and end
    date changes are mirrored to the provider before they are stored; the
    name is local only. Passing ``end_date=None`` removes the end date.
    """
    gateway = gateway or get_gateway()

    with transaction.atomic():
        obligation = _get_obligation(owner, obligation_id, lock=True)
        if is_terminal(obligation.status):
            raise InvalidStateTransition(
                f"Recurring payment {obligation_id} is {obligation.status.lower()} and can no longer be changed"
            )

        changes: Dict[str, Any] = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationFailed("Name is required")
            changes['name'] = name
        if amount is not None:
            changes['amount'] = _clean_amount(amount)
        if frequency is not None:
            _check_frequency(gateway, frequency)
            changes['frequency'] = frequency
        if description is not None:
            changes['description'] = description
        if end_date is not UNCHANGED:
            if end_date is not None and end_date < obligation.next_due_date:
                raise ValidationFailed("End date cannot be before the next due date")
            changes['end_date'] = end_date

        changes = {key: value for key, value in changes.items() if getattr(obligation, key) != value}
        if not changes:
            return obligation

        if _mirrored(gateway, obligation) and changes.keys() - {'name'}:
            # The provider keeps amount and description together as one income line.
            income_changed = bool({'amount', 'description'} & changes.keys())
            gateway.update_retainer(
                obligation.external_id,
                amount=changes.get('amount', obligation.amount) if income_changed else None,
                description=changes.get('description', obligation.description) or obligation.name,
                frequency=changes.get('frequency'),
                end_date=changes.get('end_date'),
                clear_end_date='end_date' in changes and changes['end_date'] is None
            )

        for key, value in changes.items():
            setattr(obligation, key, value)
        obligation.save(update_fields=[*changes, 'updated_at'])
        _audit(obligation, 'recurring_payment_updated', **changes)

    logger.info("Updated recurring payment %s: %s", obligation.pk, ', '.join(changes))
    return obligation


def delete_obligation(owner, obligation_id: int, gateway: Optional[RetainerGateway] = None) -> None:
    """
    Delete an obligation that never generated a payment instance.

    Obligations with history can only be cancelled.
    """
    gateway = gateway or get_gateway()

    with transaction.atomic():
        obligation = _get_obligation(owner, obligation_id, lock=True)
        if obligation.payment_history.exists():
            raise InvalidStateTransition(
                f"Recurring payment {obligation_id} has payment history; cancel it instead of deleting"
            )
        if _mirrored(gateway, obligation) and not is_terminal(obligation.status):
            gateway.cancel_retainer(obligation.external_id)
        _audit(obligation, 'recurring_payment_deleted', name=obligation.name)
        obligation.delete()

    logger.info("Deleted recurring payment %s", obligation_id)


# ==================== Advance ====================

def _past_end_date(obligation: RecurringPayment) -> bool:
    """True when the next cycle would fall after the obligation's end date."""
    if obligation.end_date is None:
        return False
    return roll_forward(obligation.next_due_date, obligation.frequency) > obligation.end_date


def _advance(obligation: RecurringPayment) -> Payment:
    # Caller holds the row lock inside a transaction.
    previous_due = obligation.next_due_date
    obligation.last_paid_date = previous_due
    obligation.next_due_date = roll_forward(previous_due, obligation.frequency)
    obligation.save(update_fields=['last_paid_date', 'next_due_date', 'updated_at'])

    payment = Payment.objects.create(
        client_id=obligation.client_id,
        recurring_payment=obligation,
        amount=obligation.amount,
        status=PaymentStatus.PENDING,
        due_date=obligation.next_due_date
    )
    _audit(
        obligation,
        'recurring_payment_advanced',
        previous_due_date=previous_due,
        next_due_date=obligation.next_due_date
    )
    logger.info(
        "Advanced recurring payment %s: %s -> %s (payment %s)",
        obligation.pk, previous_due, obligation.next_due_date, payment.pk
    )
    return payment


def advance_obligation(owner, obligation_id: int) -> Payment:
    """
    Advance one billing cycle and return the new payment instance.

    Raises:
        NotFoundError: unknown obligation or another user's
        InvalidStateTransition (ERR_OBLIGATION_NOT_ACTIVE): not ACTIVE
        InvalidStateTransition (ERR_INVALID_STATE): the next cycle would pass the end date
    """
    with transaction.atomic():
        obligation = _get_obligation(owner, obligation_id, lock=True)
        if not obligation.is_active:
            raise InvalidStateTransition(
                f"Recurring payment {obligation_id} is not active ({obligation.status.lower()})",
                code=ErrorCode.ERR_OBLIGATION_NOT_ACTIVE,
                details={'status': obligation.status}
            )
        if _past_end_date(obligation):
            raise InvalidStateTransition(
                f"Recurring payment {obligation_id} ends on {obligation.end_date}; "
                f"the cycle after {obligation.next_due_date} would fall past it",
                details={'end_date': str(obligation.end_date), 'next_due_date': str(obligation.next_due_date)}
            )
        return _advance(obligation)


# ==================== Lifecycle ====================

def _transition(
    owner,
    obligation_id: int,
    target: str,
    sync_method: Optional[str],
    gateway: Optional[RetainerGateway]
) -> RecurringPayment:
    gateway = gateway or get_gateway()

    with transaction.atomic():
        obligation = _get_obligation(owner, obligation_id, lock=True)
        previous = obligation.status
        ensure_transition(previous, target)
        if sync_method and _mirrored(gateway, obligation):
            getattr(gateway, sync_method)(obligation.external_id)
        obligation.status = target
        obligation.save(update_fields=['status', 'updated_at'])
        _audit(obligation, f'recurring_payment_{target.lower()}', previous_status=previous)

    logger.info("Recurring payment %s: %s -> %s", obligation.pk, previous, target)
    return obligation


def pause_obligation(owner, obligation_id: int, gateway: Optional[RetainerGateway] = None) -> RecurringPayment:
    """ACTIVE -> PAUSED. No instances are generated while paused."""
    return _transition(owner, obligation_id, ObligationStatus.PAUSED, 'pause_retainer', gateway)


def resume_obligation(owner, obligation_id: int, gateway: Optional[RetainerGateway] = None) -> RecurringPayment:
    """
    PAUSED -> ACTIVE with ``next_due_date`` left as it was.

    A date that passed during the pause is picked up by the next scheduler run.
    """
    return _transition(owner, obligation_id, ObligationStatus.ACTIVE, 'resume_retainer', gateway)


def cancel_obligation(owner, obligation_id: int, gateway: Optional[RetainerGateway] = None) -> RecurringPayment:
    """ACTIVE or PAUSED -> CANCELLED. Existing payment instances are kept."""
    return _transition(owner, obligation_id, ObligationStatus.CANCELLED, 'cancel_retainer', gateway)


def complete_obligation(owner, obligation_id: int) -> RecurringPayment:
    """
    ACTIVE -> COMPLETED once the end date is reached.

    Local only: the provider completes its retainer on its own clock.
    """
    return _transition(owner, obligation_id, ObligationStatus.COMPLETED, None, NullGateway())


# ==================== Periodic processing ====================

@dataclass
class ProcessingResult:
    """Outcome of one scheduler run."""
    advanced: int = 0
    completed: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)


def _process_one(obligation_id: int, today: date, catch_up: bool) -> ProcessingResult:
    outcome = ProcessingResult()
    with transaction.atomic():
        obligation = (
            RecurringPayment.objects
            .select_related('client')
            .select_for_update(of=('self',))
            .filter(pk=obligation_id)
            .first()
        )
        if obligation is None:
            raise NotFoundError(f"Recurring payment {obligation_id} was removed during the run")
        while obligation.is_active and obligation.next_due_date <= today:
            if _past_end_date(obligation):
                obligation.status = ObligationStatus.COMPLETED
                obligation.save(update_fields=['status', 'updated_at'])
                _audit(obligation, 'recurring_payment_completed', end_date=obligation.end_date)
                logger.info("Recurring payment %s completed at end date %s", obligation.pk, obligation.end_date)
                outcome.completed += 1
                break
            _advance(obligation)
            outcome.advanced += 1
            if not catch_up:
                break
    return outcome


def process_due_obligations(
    today: Optional[date] = None,
    catch_up: bool = False,
    owner=None
) -> ProcessingResult:
    """
    Advance every ACTIVE obligation whose next due date is today or earlier.

    Each obligation is advanced once, or repeatedly until it is no longer due
    when ``catch_up`` is set. Obligations whose next cycle would fall after
    their end date are completed instead. Every obligation runs in its own
    transaction; a failure is recorded in the result and the run continues.
    """
    today = today or current_date()
    due = RecurringPayment.objects.filter(status=ObligationStatus.ACTIVE, next_due_date__lte=today)
    if owner is not None:
        due = due.filter(client__owner=owner)

    result = ProcessingResult()
    for obligation_id in due.order_by('next_due_date', 'id').values_list('pk', flat=True):
        try:
            outcome = _process_one(obligation_id, today, catch_up)
        except (OpsError, DatabaseError) as exc:
            logger.exception("Failed to process recurring payment %s", obligation_id)
            result.failed.append({'id': obligation_id, 'error': str(exc)})
            continue
        result.advanced += outcome.advanced
        result.completed += outcome.completed

    logger.info(
        "Recurring run for %s: advanced=%d completed=%d failed=%d",
        today, result.advanced, result.completed, len(result.failed)
    )
    return result


# ==================== Provider history ====================

def list_retainer_documents(
    owner,
    obligation_id: int,
    gateway: Optional[RetainerGateway] = None
) -> List[Dict[str, Any]]:
    """Documents the provider has issued from this obligation's retainer."""
    gateway = gateway or get_gateway()
    obligation = _get_obligation(owner, obligation_id)
    if not _mirrored(gateway, obligation):
        return []
    return gateway.list_retainer_documents(obligation.external_id)
