"""
API Views for recurring payments and payment instances.

Views validate the request shape, call the scheduler or ledger, and turn
service errors into the standard failure envelope.
"""

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import extend_schema
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.request import Request
from rest_framework.response import Response

from common.api import error_response, invalid_input_response
from common.errors import NotFoundError, OpsError

from . import ledger, scheduler
from .models import Payment, PaymentStatus, RecurringPayment
from .serializers import (
    MarkPaidSerializer,
    PaymentSerializer,
    RecurringPaymentCreateSerializer,
    RecurringPaymentSerializer,
    RecurringPaymentUpdateSerializer,
)


def _obligation_response(obligation: RecurringPayment, status_code: int = status.HTTP_200_OK) -> Response:
    return Response(
        {'success': True, 'recurring_payment': RecurringPaymentSerializer(obligation).data},
        status=status_code
    )


# ==================== Recurring payments ====================

@extend_schema(
    summary="List or create recurring payments",
    description="""
    GET lists the user's recurring payments. POST opens a new one together
    with its first pending payment, mirroring it to the invoicing provider
    when the integration is enabled.
    """,
    request=RecurringPaymentCreateSerializer,
    responses={200: RecurringPaymentSerializer(many=True), 201: OpenApiTypes.OBJECT},
    tags=['Recurring Payments']
)
@api_view(['GET', 'POST'])
def recurring_list(request: Request) -> Response:
    """
    GET /api/billing/recurring/
    POST /api/billing/recurring/
    """
    if request.method == 'GET':
        obligations = (
            RecurringPayment.objects
            .filter(client__owner=request.user)
            .select_related('client')
        )
        return Response({
            'success': True,
            'count': len(obligations),
            'recurring_payments': RecurringPaymentSerializer(obligations, many=True).data
        })

    serializer = RecurringPaymentCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)

    try:
        obligation = scheduler.create_obligation(request.user, **serializer.validated_data)
    except OpsError as exc:
        return error_response(exc)
    return _obligation_response(obligation, status.HTTP_201_CREATED)


@extend_schema(
    summary="Read, update or delete a recurring payment",
    request=RecurringPaymentUpdateSerializer,
    responses={200: OpenApiTypes.OBJECT, 204: None, 404: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    tags=['Recurring Payments']
)
@api_view(['GET', 'PATCH', 'DELETE'])
def recurring_detail(request: Request, pk: int) -> Response:
    """
    GET /api/billing/recurring/<id>/     -> recurring payment with its payment history
    PATCH /api/billing/recurring/<id>/   -> name, description, amount, frequency, end_date
    DELETE /api/billing/recurring/<id>/  -> only without payment history
    """
    if request.method == 'GET':
        obligation = (
            RecurringPayment.objects
            .filter(pk=pk, client__owner=request.user)
            .select_related('client')
            .first()
        )
        if obligation is None:
            return error_response(NotFoundError(f"Recurring payment {pk} not found"))
        history = obligation.payment_history.select_related('client').order_by('due_date', 'id')
        return Response({
            'success': True,
            'recurring_payment': RecurringPaymentSerializer(obligation).data,
            'payment_history': PaymentSerializer(history, many=True).data
        })

    if request.method == 'DELETE':
        try:
            scheduler.delete_obligation(request.user, pk)
        except OpsError as exc:
            return error_response(exc)
        return Response(status=status.HTTP_204_NO_CONTENT)

    serializer = RecurringPaymentUpdateSerializer(data=request.data, partial=True)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)

    try:
        obligation = scheduler.update_obligation(request.user, pk, **serializer.validated_data)
    except OpsError as exc:
        return error_response(exc)
    return _obligation_response(obligation)


@extend_schema(
    summary="Advance one billing cycle",
    description="""
    Moves the next due date forward by one frequency unit and creates the
    pending payment for the new date. Fails with ERR_OBLIGATION_NOT_ACTIVE
    when the recurring payment is paused, cancelled or completed.
    """,
    request=None,
    responses={201: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    tags=['Recurring Payments']
)
@api_view(['POST'])
def recurring_advance(request: Request, pk: int) -> Response:
    """
    POST /api/billing/recurring/<id>/advance/
    """
    try:
        payment = scheduler.advance_obligation(request.user, pk)
    except OpsError as exc:
        return error_response(exc)

    obligation = payment.recurring_payment
    return Response(
        {
            'success': True,
            'payment': PaymentSerializer(payment).data,
            'recurring_payment': RecurringPaymentSerializer(obligation).data
        },
        status=status.HTTP_201_CREATED
    )


def _transition_view(transition, request: Request, pk: int) -> Response:
    try:
        obligation = transition(request.user, pk)
    except OpsError as exc:
        return error_response(exc)
    return _obligation_response(obligation)


@extend_schema(summary="Pause a recurring payment", request=None,
               responses={200: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT, 502: OpenApiTypes.OBJECT},
               tags=['Recurring Payments'])
@api_view(['POST'])
def recurring_pause(request: Request, pk: int) -> Response:
    """POST /api/billing/recurring/<id>/pause/"""
    return _transition_view(scheduler.pause_obligation, request, pk)


@extend_schema(summary="Resume a paused recurring payment", request=None,
               responses={200: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT, 502: OpenApiTypes.OBJECT},
               tags=['Recurring Payments'])
@api_view(['POST'])
def recurring_resume(request: Request, pk: int) -> Response:
    """POST /api/billing/recurring/<id>/resume/"""
    return _transition_view(scheduler.resume_obligation, request, pk)


@extend_schema(summary="Cancel a recurring payment", request=None,
               responses={200: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT, 502: OpenApiTypes.OBJECT},
               tags=['Recurring Payments'])
@api_view(['POST'])
def recurring_cancel(request: Request, pk: int) -> Response:
    """POST /api/billing/recurring/<id>/cancel/"""
    return _transition_view(scheduler.cancel_obligation, request, pk)


@extend_schema(
    summary="Documents issued by the provider",
    description="Tax invoices the invoicing provider has generated from this recurring payment's retainer.",
    responses={200: OpenApiTypes.OBJECT, 502: OpenApiTypes.OBJECT},
    tags=['Recurring Payments']
)
@api_view(['GET'])
def recurring_documents(request: Request, pk: int) -> Response:
    """
    GET /api/billing/recurring/<id>/documents/
    """
    try:
        documents = scheduler.list_retainer_documents(request.user, pk)
    except OpsError as exc:
        return error_response(exc)
    return Response({'success': True, 'count': len(documents), 'documents': documents})


# ==================== Payments ====================

@extend_schema(
    summary="Mark a payment as paid",
    request=MarkPaidSerializer,
    responses={200: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    tags=['Payments']
)
@api_view(['POST'])
def payment_pay(request: Request, pk: int) -> Response:
    """
    POST /api/billing/payments/<id>/pay/

    Request Body (optional):
    {
        "paid_at": "2024-02-01T10:00:00Z",
        "invoice_number": "INV-1042"
    }
    """
    serializer = MarkPaidSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)

    try:
        payment = ledger.mark_payment_paid(request.user, pk, **serializer.validated_data)
    except OpsError as exc:
        return error_response(exc)
    return Response({'success': True, 'payment': PaymentSerializer(payment).data})


@extend_schema(
    summary="Cancel a payment",
    request=None,
    responses={200: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    tags=['Payments']
)
@api_view(['POST'])
def payment_cancel(request: Request, pk: int) -> Response:
    """
    POST /api/billing/payments/<id>/cancel/
    """
    try:
        payment = ledger.cancel_payment(request.user, pk)
    except OpsError as exc:
        return error_response(exc)
    return Response({'success': True, 'payment': PaymentSerializer(payment).data})


@extend_schema(
    summary="Delete an unpaid one-off payment",
    request=None,
    responses={204: None, 409: OpenApiTypes.OBJECT},
    tags=['Payments']
)
@api_view(['DELETE'])
def payment_detail(request: Request, pk: int) -> Response:
    """
    DELETE /api/billing/payments/<id>/
    """
    try:
        ledger.delete_payment(request.user, pk)
    except OpsError as exc:
        return error_response(exc)
    return Response(status=status.HTTP_204_NO_CONTENT)


@extend_schema(
    summary="Overdue payments",
    description="Marks pending payments past their due date as overdue, then lists every overdue payment.",
    responses={200: OpenApiTypes.OBJECT},
    tags=['Payments']
)
@api_view(['GET'])
def overdue_payments(request: Request) -> Response:
    """
    GET /api/billing/payments/overdue/
    """
    newly_overdue = ledger.mark_overdue_payments(owner=request.user)
    payments = (
        Payment.objects
        .filter(client__owner=request.user, status=PaymentStatus.OVERDUE)
        .select_related('client')
        .order_by('due_date', 'id')
    )
    return Response({
        'success': True,
        'newly_overdue': newly_overdue,
        'count': len(payments),
        'payments': PaymentSerializer(payments, many=True).data
    })


@extend_schema(
    summary="Payment statistics",
    description="Pending, paid and overdue totals, this month's revenue, active recurring amounts and the coming week's payments.",
    responses={200: OpenApiTypes.OBJECT},
    tags=['Payments']
)
@api_view(['GET'])
def payment_stats(request: Request) -> Response:
    """
    GET /api/billing/payments/stats/
    """
    return Response({'success': True, 'statistics': ledger.payment_statistics(request.user)})
