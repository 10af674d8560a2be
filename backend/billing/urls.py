"""
URL configuration for the billing app.
"""

from django.urls import path
from . import views

urlpatterns = [
    path('billing/recurring/', views.recurring_list, name='recurring-list'),
    path('billing/recurring/<int:pk>/', views.recurring_detail, name='recurring-detail'),
    path('billing/recurring/<int:pk>/advance/', views.recurring_advance, name='recurring-advance'),
    path('billing/recurring/<int:pk>/pause/', views.recurring_pause, name='recurring-pause'),
    path('billing/recurring/<int:pk>/resume/', views.recurring_resume, name='recurring-resume'),
    path('billing/recurring/<int:pk>/cancel/', views.recurring_cancel, name='recurring-cancel'),
    path('billing/recurring/<int:pk>/documents/', views.recurring_documents, name='recurring-documents'),
    # Payment instances
    path('billing/payments/overdue/', views.overdue_payments, name='payments-overdue'),
    path('billing/payments/stats/', views.payment_stats, name='payments-stats'),
    path('billing/payments/<int:pk>/', views.payment_detail, name='payment-detail'),
    path('billing/payments/<int:pk>/pay/', views.payment_pay, name='payment-pay'),
    path('billing/payments/<int:pk>/cancel/', views.payment_cancel, name='payment-cancel'),
]
