"""
Unit Tests for recurring billing.

Covers calendar rollover, the recurring payment lifecycle, advancing and the
periodic run, sync-then-commit behaviour against an in-memory provider, the
Morning adapter's wire format (with ``requests`` patched), the payment ledger
and the billing API endpoints.
"""

import json
from datetime import date, datetime, timezone as dt_timezone
from decimal import Decimal
from io import StringIO
from unittest import mock

import requests
from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.db import IntegrityError, transaction
from django.test import TestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from common.dates import roll_forward
from common.errors import (
    ErrorCode,
    ExternalSyncError,
    InvalidStateTransition,
    NotFoundError,
    ValidationFailed,
)
from crm.models import Activity, Client

from . import ledger, scheduler
from .models import Frequency, ObligationStatus, Payment, PaymentStatus, RecurringPayment
from .morning import (
    FREQUENCY_CODES,
    MorningGateway,
    NullGateway,
    RetainerGateway,
    RetainerRequest,
    get_gateway,
)


def make_user(username='owner'):
    return get_user_model().objects.create_user(username=username, password='secret')


class FakeGateway(RetainerGateway):
    """In-memory provider that records calls and can be told to fail."""

    enabled = True

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def _record(self, *call):
        if self.fail:
            raise ExternalSyncError('Retainer service unavailable', 503)
        self.calls.append(call)

    def supports_frequency(self, frequency):
        return frequency in FREQUENCY_CODES

    def create_retainer(self, request):
        self._record('create', request)
        return 'ret-1'

    def update_retainer(self, remote_id, amount=None, description=None, frequency=None, end_date=None, status=None,
                        clear_end_date=False):
        self._record('update', remote_id, {
            'amount': amount, 'description': description, 'frequency': frequency,
            'end_date': end_date, 'status': status, 'clear_end_date': clear_end_date
        })

    def list_retainer_documents(self, remote_id):
        self._record('documents', remote_id)
        return [{'id': 'doc-1', 'number': 1001}]


class RollForwardTests(TestCase):
    """Tests for calendar-correct frequency steps."""

    def test_month_end_clamps_and_stays_clamped(self):
        """Jan 31 -> Feb 29 -> Mar 29 in a leap year."""
        february = roll_forward(date(2024, 1, 31), Frequency.MONTHLY)
        march = roll_forward(february, Frequency.MONTHLY)
        self.assertEqual(february, date(2024, 2, 29))
        self.assertEqual(march, date(2024, 3, 29))

    def test_non_leap_february(self):
        self.assertEqual(roll_forward(date(2023, 1, 31), Frequency.MONTHLY), date(2023, 2, 28))

    def test_each_frequency(self):
        start = date(2024, 2, 29)
        expected = {
            Frequency.DAILY: date(2024, 3, 1),
            Frequency.WEEKLY: date(2024, 3, 7),
            Frequency.MONTHLY: date(2024, 3, 29),
            Frequency.QUARTERLY: date(2024, 5, 29),
            Frequency.YEARLY: date(2025, 2, 28),
        }
        for frequency, result in expected.items():
            with self.subTest(frequency=frequency):
                self.assertEqual(roll_forward(start, frequency), result)


class ObligationTestMixin:
    def setUp(self):
        self.user = make_user()
        self.customer = Client.objects.create(owner=self.user, name='Acme', email='billing@acme.test')

    def create(self, gateway=None, **overrides):
        params = {
            'client_id': self.customer.pk,
            'name': 'Website maintenance',
            'amount': Decimal('300'),
            'frequency': Frequency.MONTHLY,
            'next_due_date': date(2024, 1, 31),
        }
        params.update(overrides)
        return scheduler.create_obligation(self.user, gateway=gateway or NullGateway(), **params)


class CreateObligationTests(ObligationTestMixin, TestCase):
    """Tests for opening a recurring payment."""

    def test_creates_first_payment(self):
        obligation = self.create()

        self.assertEqual(obligation.status, ObligationStatus.ACTIVE)
        self.assertTrue(obligation.is_active)
        payments = list(obligation.payment_history.all())
        self.assertEqual(len(payments), 1)
        self.assertEqual(payments[0].due_date, date(2024, 1, 31))
        self.assertEqual(payments[0].status, PaymentStatus.PENDING)
        self.assertEqual(payments[0].amount, Decimal('300'))
        self.assertEqual(payments[0].client_id, self.customer.pk)

    def test_rejects_non_positive_amount(self):
        for amount in (Decimal('0'), Decimal('-5'), 'abc'):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationFailed):
                    self.create(amount=amount)
        self.assertFalse(RecurringPayment.objects.exists())

    def test_rejects_unknown_frequency(self):
        with self.assertRaises(ValidationFailed):
            self.create(frequency='FORTNIGHTLY')

    def test_rejects_end_date_before_start(self):
        with self.assertRaises(ValidationFailed):
            self.create(end_date=date(2024, 1, 1))

    def test_other_users_client_is_not_found(self):
        stranger = Client.objects.create(owner=make_user('other'), name='Globex')
        with self.assertRaises(NotFoundError):
            self.create(client_id=stranger.pk)

    def test_all_frequencies_allowed_without_integration(self):
        obligation = self.create(frequency=Frequency.WEEKLY)
        self.assertEqual(obligation.frequency, Frequency.WEEKLY)

    def test_mirrors_to_provider(self):
        gateway = FakeGateway()
        obligation = self.create(gateway=gateway)

        self.assertEqual(obligation.external_id, 'ret-1')
        action, request = gateway.calls[0]
        self.assertEqual(action, 'create')
        self.assertEqual(request.client_name, 'Acme')
        self.assertEqual(request.start_date, date(2024, 1, 31))

    def test_provider_rejects_daily_and_weekly(self):
        for frequency in (Frequency.DAILY, Frequency.WEEKLY):
            with self.subTest(frequency=frequency):
                with self.assertRaises(ValidationFailed) as ctx:
                    self.create(gateway=FakeGateway(), frequency=frequency)
                self.assertEqual(ctx.exception.code, ErrorCode.ERR_UNSUPPORTED_FREQUENCY)

    def test_provider_failure_stores_nothing(self):
        with self.assertRaises(ExternalSyncError) as ctx:
            self.create(gateway=FakeGateway(fail=True))

        self.assertEqual(ctx.exception.message, 'Retainer service unavailable')
        self.assertFalse(RecurringPayment.objects.exists())
        self.assertFalse(Payment.objects.exists())


class AdvanceObligationTests(ObligationTestMixin, TestCase):
    """Tests for advancing one billing cycle."""

    def test_advance_once(self):
        obligation = self.create()

        payment = scheduler.advance_obligation(self.user, obligation.pk)

        obligation.refresh_from_db()
        self.assertEqual(obligation.next_due_date, date(2024, 2, 29))
        self.assertEqual(obligation.last_paid_date, date(2024, 1, 31))
        self.assertEqual(payment.due_date, date(2024, 2, 29))
        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertEqual(payment.amount, Decimal('300'))
        self.assertEqual(payment.recurring_payment_id, obligation.pk)
        self.assertEqual(obligation.payment_history.count(), 2)

    def test_advance_twice_moves_one_cycle_each(self):
        obligation = self.create()

        first = scheduler.advance_obligation(self.user, obligation.pk)
        second = scheduler.advance_obligation(self.user, obligation.pk)

        self.assertEqual(first.due_date, date(2024, 2, 29))
        self.assertEqual(second.due_date, date(2024, 3, 29))
        self.assertEqual(obligation.payment_history.count(), 3)

    def test_advance_uses_current_amount(self):
        obligation = self.create()
        scheduler.update_obligation(self.user, obligation.pk, amount=Decimal('350'), gateway=NullGateway())

        payment = scheduler.advance_obligation(self.user, obligation.pk)

        self.assertEqual(payment.amount, Decimal('350'))

    def test_inactive_obligation_cannot_advance(self):
        """Paused and cancelled obligations fail without side effects."""
        for transition in (scheduler.pause_obligation, scheduler.cancel_obligation):
            with self.subTest(transition=transition.__name__):
                obligation = self.create()
                transition(self.user, obligation.pk, gateway=NullGateway())
                obligation.refresh_from_db()
                before = (obligation.next_due_date, obligation.last_paid_date, obligation.updated_at)

                with self.assertRaises(InvalidStateTransition) as ctx:
                    scheduler.advance_obligation(self.user, obligation.pk)

                self.assertEqual(ctx.exception.code, ErrorCode.ERR_OBLIGATION_NOT_ACTIVE)
                obligation.refresh_from_db()
                self.assertEqual(
                    (obligation.next_due_date, obligation.last_paid_date, obligation.updated_at),
                    before
                )
                self.assertEqual(obligation.payment_history.count(), 1)

    def test_advance_past_end_date_is_rejected(self):
        obligation = self.create(end_date=date(2024, 2, 15))

        with self.assertRaises(InvalidStateTransition) as ctx:
            scheduler.advance_obligation(self.user, obligation.pk)

        self.assertEqual(ctx.exception.code, ErrorCode.ERR_INVALID_STATE)
        obligation.refresh_from_db()
        self.assertEqual(obligation.next_due_date, date(2024, 1, 31))
        self.assertEqual(obligation.status, ObligationStatus.ACTIVE)
        self.assertEqual(obligation.payment_history.count(), 1)

    def test_advance_up_to_end_date(self):
        obligation = self.create(end_date=date(2024, 2, 29))

        payment = scheduler.advance_obligation(self.user, obligation.pk)

        self.assertEqual(payment.due_date, date(2024, 2, 29))
        with self.assertRaises(InvalidStateTransition):
            scheduler.advance_obligation(self.user, obligation.pk)

    def test_other_users_obligation_is_not_found(self):
        obligation = self.create()
        with self.assertRaises(NotFoundError):
            scheduler.advance_obligation(make_user('other'), obligation.pk)

    def test_advance_records_activity_after_commit(self):
        obligation = self.create()

        with self.captureOnCommitCallbacks(execute=True):
            scheduler.advance_obligation(self.user, obligation.pk)

        activity = Activity.objects.get(action='recurring_payment_advanced')
        self.assertEqual(activity.entity_id, str(obligation.pk))
        self.assertEqual(activity.metadata['next_due_date'], '2024-02-29')


class LifecycleTests(ObligationTestMixin, TestCase):
    """Tests for pause, resume, cancel, complete and delete."""

    def test_resume_keeps_due_date(self):
        obligation = self.create()
        scheduler.pause_obligation(self.user, obligation.pk, gateway=NullGateway())

        resumed = scheduler.resume_obligation(self.user, obligation.pk, gateway=NullGateway())

        self.assertEqual(resumed.status, ObligationStatus.ACTIVE)
        self.assertEqual(resumed.next_due_date, date(2024, 1, 31))

    def test_invalid_transitions(self):
        obligation = self.create()
        with self.assertRaises(InvalidStateTransition):
            scheduler.resume_obligation(self.user, obligation.pk, gateway=NullGateway())

        scheduler.pause_obligation(self.user, obligation.pk, gateway=NullGateway())
        with self.assertRaises(InvalidStateTransition):
            scheduler.pause_obligation(self.user, obligation.pk, gateway=NullGateway())

        scheduler.cancel_obligation(self.user, obligation.pk, gateway=NullGateway())
        for transition in (scheduler.pause_obligation, scheduler.resume_obligation, scheduler.cancel_obligation):
            with self.subTest(transition=transition.__name__):
                with self.assertRaises(InvalidStateTransition) as ctx:
                    transition(self.user, obligation.pk, gateway=NullGateway())
                self.assertEqual(ctx.exception.code, ErrorCode.ERR_INVALID_STATE)

    def test_completed_is_terminal(self):
        obligation = self.create()
        scheduler.complete_obligation(self.user, obligation.pk)

        with self.assertRaises(InvalidStateTransition):
            scheduler.cancel_obligation(self.user, obligation.pk, gateway=NullGateway())
        with self.assertRaises(InvalidStateTransition):
            scheduler.update_obligation(self.user, obligation.pk, name='Renamed', gateway=NullGateway())

    def test_cancel_keeps_existing_payments(self):
        obligation = self.create()
        scheduler.cancel_obligation(self.user, obligation.pk, gateway=NullGateway())

        payment = obligation.payment_history.get()
        self.assertEqual(payment.status, PaymentStatus.PENDING)

    def test_transitions_are_mirrored(self):
        gateway = FakeGateway()
        obligation = self.create(gateway=gateway)

        scheduler.pause_obligation(self.user, obligation.pk, gateway=gateway)
        scheduler.resume_obligation(self.user, obligation.pk, gateway=gateway)
        scheduler.cancel_obligation(self.user, obligation.pk, gateway=gateway)

        statuses = [call[2]['status'] for call in gateway.calls if call[0] == 'update']
        self.assertEqual(statuses, [ObligationStatus.PAUSED, ObligationStatus.ACTIVE, ObligationStatus.CANCELLED])

    def test_failed_sync_leaves_state_unchanged(self):
        obligation = self.create(gateway=FakeGateway())

        with self.assertRaises(ExternalSyncError):
            scheduler.pause_obligation(self.user, obligation.pk, gateway=FakeGateway(fail=True))

        obligation.refresh_from_db()
        self.assertEqual(obligation.status, ObligationStatus.ACTIVE)

    def test_update_mirrors_income_line(self):
        gateway = FakeGateway()
        obligation = self.create(gateway=gateway)

        scheduler.update_obligation(self.user, obligation.pk, amount=Decimal('450'), gateway=gateway)

        action, remote_id, fields = gateway.calls[-1]
        self.assertEqual((action, remote_id), ('update', 'ret-1'))
        self.assertEqual(fields['amount'], Decimal('450'))
        self.assertEqual(fields['description'], 'Website maintenance')
        self.assertIsNone(fields['frequency'])

    def test_end_date_can_be_cleared(self):
        gateway = FakeGateway()
        obligation = self.create(gateway=gateway, end_date=date(2024, 6, 30))

        scheduler.update_obligation(self.user, obligation.pk, end_date=None, gateway=gateway)

        obligation.refresh_from_db()
        self.assertIsNone(obligation.end_date)
        action, remote_id, fields = gateway.calls[-1]
        self.assertEqual((action, remote_id), ('update', 'ret-1'))
        self.assertTrue(fields['clear_end_date'])

    def test_omitted_end_date_is_kept(self):
        obligation = self.create(end_date=date(2024, 6, 30))

        scheduler.update_obligation(self.user, obligation.pk, amount=Decimal('310'), gateway=NullGateway())

        obligation.refresh_from_db()
        self.assertEqual(obligation.end_date, date(2024, 6, 30))

    def test_rename_is_local_only(self):
        gateway = FakeGateway()
        obligation = self.create(gateway=gateway)

        scheduler.update_obligation(self.user, obligation.pk, name='Hosting', gateway=gateway)

        self.assertEqual(len(gateway.calls), 1)
        obligation.refresh_from_db()
        self.assertEqual(obligation.name, 'Hosting')

    def test_failed_update_sync_keeps_old_amount(self):
        obligation = self.create(gateway=FakeGateway())

        with self.assertRaises(ExternalSyncError):
            scheduler.update_obligation(
                self.user, obligation.pk, amount=Decimal('999'), gateway=FakeGateway(fail=True)
            )

        obligation.refresh_from_db()
        self.assertEqual(obligation.amount, Decimal('300'))

    def test_delete_with_history_is_rejected(self):
        obligation = self.create()

        with self.assertRaises(InvalidStateTransition):
            scheduler.delete_obligation(self.user, obligation.pk, gateway=NullGateway())
        self.assertTrue(RecurringPayment.objects.filter(pk=obligation.pk).exists())

    def test_generated_payment_cannot_be_deleted(self):
        obligation = self.create()
        first = obligation.payment_history.get()

        with self.assertRaises(InvalidStateTransition):
            ledger.delete_payment(self.user, first.pk)
        with self.assertRaises(InvalidStateTransition):
            scheduler.delete_obligation(self.user, obligation.pk, gateway=NullGateway())

        self.assertTrue(Payment.objects.filter(pk=first.pk).exists())
        self.assertTrue(RecurringPayment.objects.filter(pk=obligation.pk).exists())

    def test_delete_without_history(self):
        obligation = RecurringPayment.objects.create(
            client=self.customer,
            name='Never billed',
            amount=Decimal('100'),
            frequency=Frequency.MONTHLY,
            next_due_date=date(2024, 1, 31)
        )

        scheduler.delete_obligation(self.user, obligation.pk, gateway=NullGateway())

        self.assertFalse(RecurringPayment.objects.filter(pk=obligation.pk).exists())

    def test_documents_from_provider(self):
        gateway = FakeGateway()
        mirrored = self.create(gateway=gateway)
        local = self.create()

        self.assertEqual(scheduler.list_retainer_documents(self.user, mirrored.pk, gateway=gateway)[0]['id'], 'doc-1')
        self.assertEqual(scheduler.list_retainer_documents(self.user, local.pk, gateway=gateway), [])


class ProcessDueObligationsTests(ObligationTestMixin, TestCase):
    """Tests for the periodic scheduler run."""

    def test_advances_due_obligations_once(self):
        due = self.create(next_due_date=date(2024, 3, 1))
        also_due = self.create(next_due_date=date(2024, 2, 1))
        not_due = self.create(next_due_date=date(2024, 3, 20))

        result = scheduler.process_due_obligations(today=date(2024, 3, 10))

        self.assertEqual(result.advanced, 2)
        self.assertEqual(result.failed, [])
        self.assertEqual(RecurringPayment.objects.get(pk=due.pk).next_due_date, date(2024, 4, 1))
        self.assertEqual(RecurringPayment.objects.get(pk=also_due.pk).next_due_date, date(2024, 3, 1))
        self.assertEqual(RecurringPayment.objects.get(pk=not_due.pk).next_due_date, date(2024, 3, 20))

    def test_catch_up_advances_until_not_due(self):
        obligation = self.create(next_due_date=date(2024, 1, 15))

        result = scheduler.process_due_obligations(today=date(2024, 4, 20), catch_up=True)

        obligation.refresh_from_db()
        self.assertEqual(result.advanced, 4)
        self.assertEqual(obligation.next_due_date, date(2024, 5, 15))
        due_dates = list(obligation.payment_history.order_by('due_date').values_list('due_date', flat=True))
        self.assertEqual(due_dates, [
            date(2024, 1, 15), date(2024, 2, 15), date(2024, 3, 15), date(2024, 4, 15), date(2024, 5, 15)
        ])

    def test_skips_paused_obligations(self):
        obligation = self.create(next_due_date=date(2024, 1, 15))
        scheduler.pause_obligation(self.user, obligation.pk, gateway=NullGateway())

        result = scheduler.process_due_obligations(today=date(2024, 2, 1))

        self.assertEqual(result.advanced, 0)
        self.assertEqual(obligation.payment_history.count(), 1)

    def test_completes_at_end_date(self):
        obligation = self.create(next_due_date=date(2024, 1, 31), end_date=date(2024, 2, 15))

        result = scheduler.process_due_obligations(today=date(2024, 1, 31))

        obligation.refresh_from_db()
        self.assertEqual(result.completed, 1)
        self.assertEqual(result.advanced, 0)
        self.assertEqual(obligation.status, ObligationStatus.COMPLETED)
        self.assertEqual(obligation.payment_history.count(), 1)

    def test_obligation_removed_during_run_is_reported(self):
        gone = self.create(next_due_date=date(2024, 1, 1))
        kept = self.create(next_due_date=date(2024, 1, 2))
        process_one = scheduler._process_one

        def remove_then_process(obligation_id, today, catch_up):
            if obligation_id == gone.pk:
                Payment.objects.filter(recurring_payment_id=gone.pk).delete()
                RecurringPayment.objects.filter(pk=gone.pk).delete()
            return process_one(obligation_id, today, catch_up)

        with mock.patch.object(scheduler, '_process_one', side_effect=remove_then_process):
            result = scheduler.process_due_obligations(today=date(2024, 1, 10))

        self.assertEqual(result.advanced, 1)
        self.assertEqual([failure['id'] for failure in result.failed], [gone.pk])
        self.assertEqual(RecurringPayment.objects.get(pk=kept.pk).next_due_date, date(2024, 2, 2))

    def test_owner_scope(self):
        self.create(next_due_date=date(2024, 1, 1))
        other = make_user('other')
        other_client = Client.objects.create(owner=other, name='Globex')
        scheduler.create_obligation(
            other, other_client.pk, 'Support', Decimal('50'), Frequency.MONTHLY, date(2024, 1, 1),
            gateway=NullGateway()
        )

        result = scheduler.process_due_obligations(today=date(2024, 1, 2), owner=other)

        self.assertEqual(result.advanced, 1)
        self.assertEqual(
            RecurringPayment.objects.get(client__owner=self.user).next_due_date,
            date(2024, 1, 1)
        )


class ProcessRecurringCommandTests(ObligationTestMixin, TestCase):
    """Tests for the process_recurring_payments command."""

    def test_marks_overdue_and_advances(self):
        obligation = self.create(next_due_date=date(2024, 1, 15))
        out = StringIO()

        call_command('process_recurring_payments', '--date', '2024-03-20', '--catch-up', stdout=out)

        self.assertIn('overdue=1 advanced=3 completed=0 failed=0', out.getvalue())
        obligation.refresh_from_db()
        self.assertEqual(obligation.next_due_date, date(2024, 4, 15))

    def test_rejects_bad_date(self):
        with self.assertRaises(CommandError):
            call_command('process_recurring_payments', '--date', '20-03-2024', stdout=StringIO())

    def test_rejects_unknown_owner(self):
        with self.assertRaises(CommandError):
            call_command('process_recurring_payments', '--owner-id', '999999', stdout=StringIO())

class LedgerTests(ObligationTestMixin, TestCase):
    """Tests for payment transitions and revenue."""

    def setUp(self):
        super().setUp()
        self.obligation = self.create()
        self.payment = self.obligation.payment_history.get()

    def test_paid_adds_revenue_once(self):
        paid_at = datetime(2024, 2, 1, 10, 0, tzinfo=dt_timezone.utc)

        payment = ledger.mark_payment_paid(self.user, self.payment.pk, paid_at=paid_at, invoice_number='INV-7')

        self.customer.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.PAID)
        self.assertEqual(payment.paid_at, paid_at)
        self.assertEqual(payment.invoice_number, 'INV-7')
        self.assertEqual(self.customer.total_revenue, Decimal('300'))

        with self.assertRaises(InvalidStateTransition):
            ledger.mark_payment_paid(self.user, self.payment.pk)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.total_revenue, Decimal('300'))

    def test_overdue_payment_can_be_paid(self):
        ledger.mark_overdue_payments(today=date(2024, 3, 1))

        ledger.mark_payment_paid(self.user, self.payment.pk)

        self.customer.refresh_from_db()
        self.assertEqual(self.customer.total_revenue, Decimal('300'))

    def test_cancelled_payment_cannot_be_paid(self):
        ledger.cancel_payment(self.user, self.payment.pk)

        with self.assertRaises(InvalidStateTransition):
            ledger.mark_payment_paid(self.user, self.payment.pk)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.total_revenue, Decimal('0'))

    def test_mark_overdue(self):
        self.assertEqual(self.payment.effective_status(date(2024, 2, 1)), PaymentStatus.OVERDUE)
        self.assertEqual(self.payment.effective_status(date(2024, 1, 31)), PaymentStatus.PENDING)

        self.assertEqual(ledger.mark_overdue_payments(today=date(2024, 1, 31)), 0)
        self.assertEqual(ledger.mark_overdue_payments(owner=self.user, today=date(2024, 2, 1)), 1)

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.OVERDUE)

    def test_paid_payment_cannot_be_deleted(self):
        ledger.mark_payment_paid(self.user, self.payment.pk)

        with self.assertRaises(InvalidStateTransition):
            ledger.delete_payment(self.user, self.payment.pk)

    def test_one_off_payment_can_be_deleted(self):
        one_off = Payment.objects.create(client=self.customer, amount=Decimal('80'), due_date=date(2024, 2, 1))

        ledger.delete_payment(self.user, one_off.pk)

        self.assertFalse(Payment.objects.filter(pk=one_off.pk).exists())

    def test_paid_requires_paid_at(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Payment.objects.create(
                    client=self.customer,
                    amount=Decimal('10'),
                    status=PaymentStatus.PAID,
                    due_date=date(2024, 1, 1)
                )

    def test_other_users_payment_is_not_found(self):
        with self.assertRaises(NotFoundError):
            ledger.mark_payment_paid(make_user('other'), self.payment.pk)

    def test_statistics(self):
        today = date(2024, 2, 20)
        scheduler.advance_obligation(self.user, self.obligation.pk)  # due 2024-02-29
        Payment.objects.create(client=self.customer, amount=Decimal('120'), due_date=date(2024, 2, 10))
        ledger.mark_payment_paid(
            self.user, self.payment.pk, paid_at=datetime(2024, 2, 5, 9, 0, tzinfo=dt_timezone.utc)
        )

        stats = ledger.payment_statistics(self.user, today=today)

        self.assertEqual(stats['paid'], {'amount': Decimal('300'), 'count': 1})
        self.assertEqual(stats['monthly_revenue'], Decimal('300'))
        self.assertEqual(stats['pending'], {'amount': Decimal('300'), 'count': 1})
        self.assertEqual(stats['overdue'], {'amount': Decimal('120'), 'count': 1})
        self.assertEqual(stats['recurring'], {'amount': Decimal('300'), 'count': 1})
        self.assertEqual(len(stats['upcoming']), 0)
        self.assertEqual(len(stats['recent_paid']), 1)

        stats = ledger.payment_statistics(self.user, today=date(2024, 2, 25))
        self.assertEqual([item['due_date'] for item in stats['upcoming']], [date(2024, 2, 29)])


class MorningGatewayTests(TestCase):
    """Tests for the provider adapter, with the HTTP session patched."""

    def setUp(self):
        MorningGateway.clear_token_cache()
        self.gateway = MorningGateway(
            base_url='https://provider.test/api/v1',
            api_key='key',
            api_secret='secret',
            timeout=5
        )
        patcher = mock.patch.object(requests.Session, 'request')
        self.request = patcher.start()
        self.addCleanup(patcher.stop)

    @staticmethod
    def response(status_code, body=None):
        resp = requests.Response()
        resp.status_code = status_code
        resp._content = json.dumps(body).encode() if body is not None else b''
        resp.headers['Content-Type'] = 'application/json'
        return resp

    def token_response(self):
        return self.response(200, {'token': 'tok', 'expiresAt': 0})

    def retainer_request(self, frequency=Frequency.MONTHLY):
        return RetainerRequest(
            client_name='Acme',
            description='Website maintenance',
            amount=Decimal('300'),
            frequency=frequency,
            start_date=date(2024, 1, 31),
            client_email='billing@acme.test'
        )

    def test_create_retainer_payload(self):
        self.request.side_effect = [self.token_response(), self.response(201, {'id': 'ret-9'})]

        remote_id = self.gateway.create_retainer(self.retainer_request())

        self.assertEqual(remote_id, 'ret-9')
        token_call, create_call = self.request.call_args_list
        self.assertEqual(token_call.args[:2], ('POST', 'https://provider.test/api/v1/account/token'))
        self.assertEqual(token_call.kwargs['json'], {'id': 'key', 'secret': 'secret'})

        self.assertEqual(create_call.args[:2], ('POST', 'https://provider.test/api/v1/retainers'))
        self.assertEqual(create_call.kwargs['headers'], {'Authorization': 'Bearer tok'})
        self.assertEqual(create_call.kwargs['timeout'], 5)
        payload = create_call.kwargs['json']
        self.assertEqual(payload['type'], 305)
        self.assertEqual(payload['frequency'], 1)
        self.assertEqual(payload['startDate'], '2024-01-31')
        self.assertEqual(payload['client'], {'name': 'Acme', 'add': True, 'emails': ['billing@acme.test']})
        self.assertEqual(payload['income'], [{
            'description': 'Website maintenance',
            'quantity': 1,
            'price': 300.0,
            'currency': 'ILS',
            'vatType': 1
        }])
        self.assertNotIn('endDate', payload)

    def test_token_is_reused(self):
        self.request.side_effect = [self.token_response(), self.response(200, {}), self.response(200, {})]

        self.gateway.pause_retainer('ret-1')
        self.gateway.resume_retainer('ret-1')

        urls = [call.args[1] for call in self.request.call_args_list]
        self.assertEqual(urls.count('https://provider.test/api/v1/account/token'), 1)

    def test_clearing_end_date(self):
        self.request.side_effect = [self.token_response(), self.response(200, {})]

        self.gateway.update_retainer('ret-1', clear_end_date=True)

        self.assertEqual(self.request.call_args_list[1].kwargs['json'], {'endDate': None})

    def test_status_codes(self):
        self.request.side_effect = [self.token_response()] + [self.response(200, {}) for _ in range(3)]

        self.gateway.pause_retainer('ret-1')
        self.gateway.resume_retainer('ret-1')
        self.gateway.cancel_retainer('ret-1')

        updates = self.request.call_args_list[1:]
        self.assertEqual([call.args[0] for call in updates], ['PUT', 'PUT', 'PUT'])
        self.assertEqual(updates[0].args[1], 'https://provider.test/api/v1/retainers/ret-1')
        self.assertEqual([call.kwargs['json'] for call in updates], [{'status': 1}, {'status': 0}, {'status': 3}])

    def test_update_amount_and_frequency(self):
        self.request.side_effect = [self.token_response(), self.response(200, {})]

        self.gateway.update_retainer(
            'ret-1', amount=Decimal('450'), description='Hosting',
            frequency=Frequency.QUARTERLY, end_date=date(2025, 1, 1)
        )

        payload = self.request.call_args_list[1].kwargs['json']
        self.assertEqual(payload['frequency'], 3)
        self.assertEqual(payload['endDate'], '2025-01-01')
        self.assertEqual(payload['income'][0]['price'], 450.0)
        self.assertEqual(payload['income'][0]['description'], 'Hosting')

    def test_provider_error_message_is_kept(self):
        self.request.side_effect = [
            self.token_response(),
            self.response(400, {'errorCode': 1003, 'errorMessage': 'Client is missing a tax id'})
        ]

        with self.assertRaises(ExternalSyncError) as ctx:
            self.gateway.create_retainer(self.retainer_request())

        self.assertEqual(ctx.exception.message, 'Client is missing a tax id')
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.code, ErrorCode.ERR_EXTERNAL_SYNC)

    def test_authentication_failure(self):
        self.request.return_value = self.response(401, {'errorMessage': 'Bad credentials'})

        with self.assertRaises(ExternalSyncError) as ctx:
            self.gateway.cancel_retainer('ret-1')

        self.assertEqual(ctx.exception.message, 'Bad credentials')
        self.assertEqual(self.request.call_count, 1)

    def test_unreachable_provider(self):
        self.request.side_effect = requests.ConnectionError('connection refused')

        with self.assertRaises(ExternalSyncError) as ctx:
            self.gateway.list_retainer_documents('ret-1')

        self.assertIsNone(ctx.exception.status_code)

    def test_non_json_reply(self):
        html = self.response(200)
        html._content = b'<html>gateway</html>'
        html.headers['Content-Type'] = 'text/html'
        self.request.side_effect = [self.token_response(), html]

        with self.assertRaises(ExternalSyncError) as ctx:
            self.gateway.create_retainer(self.retainer_request())

        self.assertEqual(ctx.exception.status_code, 200)
        self.assertEqual(ctx.exception.to_dict()['error_code'], 'ERR_EXTERNAL_SYNC')
        self.assertEqual(ctx.exception.http_status, 502)

    def test_token_reply_without_token(self):
        self.request.return_value = self.response(200, {'expiresAt': 0})

        with self.assertRaises(ExternalSyncError) as ctx:
            self.gateway.pause_retainer('ret-1')

        self.assertEqual(ctx.exception.status_code, 200)
        self.assertEqual(self.request.call_count, 1)

    def test_unsupported_frequency_sends_nothing(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self.gateway.create_retainer(self.retainer_request(Frequency.WEEKLY))

        self.assertEqual(ctx.exception.code, ErrorCode.ERR_UNSUPPORTED_FREQUENCY)
        self.request.assert_not_called()

    def test_documents(self):
        self.request.side_effect = [
            self.token_response(),
            self.response(200, {'items': [{'id': 'doc-1'}, {'id': 'doc-2'}]})
        ]

        documents = self.gateway.list_retainer_documents('ret-1')

        self.assertEqual([doc['id'] for doc in documents], ['doc-1', 'doc-2'])
        self.assertEqual(self.request.call_args_list[1].args[:2], ('GET', 'https://provider.test/api/v1/retainers/ret-1/documents'))

    @override_settings(MORNING_ENABLED=False, MORNING_API_KEY='key', MORNING_API_SECRET='secret')
    def test_disabled_integration_uses_null_gateway(self):
        self.assertIsInstance(get_gateway(), NullGateway)

    @override_settings(MORNING_ENABLED=True, MORNING_API_KEY='', MORNING_API_SECRET='')
    def test_missing_credentials_use_null_gateway(self):
        self.assertIsInstance(get_gateway(), NullGateway)

    @override_settings(MORNING_ENABLED=True, MORNING_API_KEY='key', MORNING_API_SECRET='secret')
    def test_enabled_integration_uses_provider(self):
        self.assertIsInstance(get_gateway(), MorningGateway)


@override_settings(MORNING_ENABLED=False)
class BillingAPITests(APITestCase):
    """Tests for the billing API endpoints."""

    def setUp(self):
        self.user = make_user()
        self.customer = Client.objects.create(owner=self.user, name='Acme')
        self.client.force_authenticate(user=self.user)

    def create_obligation(self, **overrides):
        data = {
            'client_id': self.customer.pk,
            'name': 'Website maintenance',
            'amount': '300.00',
            'frequency': 'MONTHLY',
            'next_due_date': '2024-01-31',
        }
        data.update(overrides)
        return self.client.post('/api/billing/recurring/', data, format='json')

    def test_create_and_list(self):
        response = self.create_obligation()

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['recurring_payment']['status'], 'ACTIVE')

        response = self.client.get('/api/billing/recurring/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 1)

    def test_create_validation(self):
        response = self.create_obligation(amount='0')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error_code'], 'ERR_VALIDATION')
        self.assertIn('amount', response.data['errors'])

    def test_create_for_unknown_client(self):
        response = self.create_obligation(client_id=999999)

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error_code'], 'ERR_NOT_FOUND')

    def test_detail_with_history(self):
        pk = self.create_obligation().data['recurring_payment']['id']

        response = self.client.get(f'/api/billing/recurring/{pk}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['payment_history']), 1)

    def test_advance(self):
        pk = self.create_obligation().data['recurring_payment']['id']

        response = self.client.post(f'/api/billing/recurring/{pk}/advance/')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['payment']['due_date'], '2024-02-29')
        self.assertEqual(response.data['recurring_payment']['last_paid_date'], '2024-01-31')

    def test_advance_paused(self):
        pk = self.create_obligation().data['recurring_payment']['id']
        self.assertEqual(self.client.post(f'/api/billing/recurring/{pk}/pause/').status_code, status.HTTP_200_OK)

        response = self.client.post(f'/api/billing/recurring/{pk}/advance/')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error_code'], 'ERR_OBLIGATION_NOT_ACTIVE')

    def test_resume_and_cancel(self):
        pk = self.create_obligation().data['recurring_payment']['id']
        self.client.post(f'/api/billing/recurring/{pk}/pause/')

        response = self.client.post(f'/api/billing/recurring/{pk}/resume/')
        self.assertEqual(response.data['recurring_payment']['status'], 'ACTIVE')

        response = self.client.post(f'/api/billing/recurring/{pk}/cancel/')
        self.assertEqual(response.data['recurring_payment']['status'], 'CANCELLED')

        response = self.client.post(f'/api/billing/recurring/{pk}/cancel/')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error_code'], 'ERR_INVALID_STATE')

    def test_patch(self):
        pk = self.create_obligation().data['recurring_payment']['id']

        response = self.client.patch(f'/api/billing/recurring/{pk}/', {'amount': '320.00'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['recurring_payment']['amount'], '320.00')

    def test_patch_clears_end_date(self):
        pk = self.create_obligation(end_date='2024-12-31').data['recurring_payment']['id']

        response = self.client.patch(f'/api/billing/recurring/{pk}/', {'end_date': None}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIsNone(response.data['recurring_payment']['end_date'])

    def test_patch_due_date_rejected(self):
        pk = self.create_obligation().data['recurring_payment']['id']

        response = self.client.patch(f'/api/billing/recurring/{pk}/', {'next_due_date': '2024-06-01'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_delete_with_history(self):
        pk = self.create_obligation().data['recurring_payment']['id']

        response = self.client.delete(f'/api/billing/recurring/{pk}/')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_documents_without_integration(self):
        pk = self.create_obligation().data['recurring_payment']['id']

        response = self.client.get(f'/api/billing/recurring/{pk}/documents/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['documents'], [])

    def test_other_users_obligation(self):
        pk = self.create_obligation().data['recurring_payment']['id']
        self.client.force_authenticate(user=make_user('other'))

        response = self.client.post(f'/api/billing/recurring/{pk}/advance/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_pay_and_stats(self):
        self.create_obligation()
        payment = Payment.objects.get()

        response = self.client.post(f'/api/billing/payments/{payment.pk}/pay/', {'invoice_number': 'INV-1'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['payment']['status'], 'PAID')
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.total_revenue, Decimal('300'))

        response = self.client.get('/api/billing/payments/stats/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['statistics']['paid']['count'], 1)

    def test_cancel_payment_twice(self):
        self.create_obligation()
        payment = Payment.objects.get()

        self.assertEqual(self.client.post(f'/api/billing/payments/{payment.pk}/cancel/').status_code, status.HTTP_200_OK)
        response = self.client.post(f'/api/billing/payments/{payment.pk}/cancel/')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_overdue(self):
        self.create_obligation(next_due_date='2020-01-31')

        response = self.client.get('/api/billing/payments/overdue/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['newly_overdue'], 1)
        self.assertEqual(response.data['payments'][0]['status'], 'OVERDUE')
