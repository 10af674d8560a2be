"""
URL configuration for the ops_backend project.
"""

from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView, SpectacularSwaggerView


def home_view(request):
    """Root endpoint with API information."""
    return JsonResponse({
        'message': 'Operations Backend API',
        'version': '1.0.0',
        'endpoints': {
            'API Root': '/api/',
            'Top Priorities': 'GET /api/priority/top/',
            'Recommended Today': 'GET /api/priority/today/',
            'Recurring Payments': '/api/billing/recurring/',
            'Payment Statistics': 'GET /api/billing/payments/stats/',
            'API Documentation': '/api/docs/',
            'OpenAPI Schema': '/api/schema/',
        }
    })


urlpatterns = [
    path('', home_view, name='home'),
    path('admin/', admin.site.urls),
    # OpenAPI/Swagger Documentation
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
    path('api/redoc/', SpectacularRedocView.as_view(url_name='schema'), name='redoc'),
    path('api/', include('priorities.urls')),
    path('api/', include('billing.urls')),
]
