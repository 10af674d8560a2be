"""
Serializers for the billing API.

Input serializers only validate shape; lifecycle and ownership rules are
enforced by ``billing.scheduler`` and ``billing.ledger``.
"""

from decimal import Decimal

from rest_framework import serializers

from .models import Frequency, Payment, RecurringPayment


class PaymentSerializer(serializers.ModelSerializer):
    """A payment instance, with its derived status."""

    effective_status = serializers.SerializerMethodField()
    client_name = serializers.CharField(source='client.name', read_only=True)

    class Meta:
        model = Payment
        fields = [
            'id', 'client', 'client_name', 'project', 'recurring_payment', 'amount',
            'status', 'effective_status', 'due_date', 'paid_at', 'invoice_number',
            'notes', 'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_effective_status(self, obj: Payment) -> str:
        return obj.effective_status()


class RecurringPaymentSerializer(serializers.ModelSerializer):
    client_name = serializers.CharField(source='client.name', read_only=True)
    is_active = serializers.BooleanField(read_only=True)

    class Meta:
        model = RecurringPayment
        fields = [
            'id', 'client', 'client_name', 'name', 'description', 'amount', 'frequency',
            'status', 'is_active', 'next_due_date', 'last_paid_date', 'end_date',
            'external_id', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class RecurringPaymentCreateSerializer(serializers.Serializer):
    """
    Request body for opening a recurring payment.

    Example:
    {
        "client_id": 4,
        "name": "Website maintenance",
        "amount": "300.00",
        "frequency": "MONTHLY",
        "next_due_date": "2024-01-31"
    }
    """

    client_id = serializers.IntegerField(min_value=1)
    name = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0.01'))
    frequency = serializers.ChoiceField(choices=Frequency.choices)
    next_due_date = serializers.DateField()
    end_date = serializers.DateField(required=False, allow_null=True, default=None)

    def validate(self, attrs):
        if attrs.get('end_date') and attrs['end_date'] < attrs['next_due_date']:
            raise serializers.ValidationError({'end_date': 'End date cannot be before the first due date.'})
        return attrs


class RecurringPaymentUpdateSerializer(serializers.Serializer):
    """Partial update; the due date only moves through the scheduler."""

    name = serializers.CharField(max_length=255, required=False)
    description = serializers.CharField(required=False, allow_blank=True)
    amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=Decimal('0.01'), required=False
    )
    frequency = serializers.ChoiceField(choices=Frequency.choices, required=False)
    end_date = serializers.DateField(required=False, allow_null=True)

    def validate(self, attrs):
        if 'next_due_date' in self.initial_data or 'last_paid_date' in self.initial_data:
            raise serializers.ValidationError(
                'Due dates cannot be edited; advance the recurring payment instead.'
            )
        return attrs


class MarkPaidSerializer(serializers.Serializer):
    paid_at = serializers.DateTimeField(required=False, allow_null=True, default=None)
    invoice_number = serializers.CharField(max_length=100, required=False, allow_blank=True, default='')

