from django.contrib import admin

from .models import Payment, RecurringPayment


class PaymentInline(admin.TabularInline):
    model = Payment
    fields = ('due_date', 'amount', 'status', 'paid_at', 'invoice_number')
    readonly_fields = fields
    extra = 0
    can_delete = False


@admin.register(RecurringPayment)
class RecurringPaymentAdmin(admin.ModelAdmin):
    list_display = ('name', 'client', 'amount', 'frequency', 'status', 'next_due_date', 'external_id')
    list_filter = ('status', 'frequency')
    search_fields = ('name', 'client__name', 'external_id')
    readonly_fields = ('next_due_date', 'last_paid_date', 'external_id')
    inlines = [PaymentInline]


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ('client', 'amount', 'status', 'due_date', 'paid_at', 'recurring_payment')
    list_filter = ('status',)
    search_fields = ('client__name', 'invoice_number')
    readonly_fields = ('status', 'paid_at')
