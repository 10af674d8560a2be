"""
URL configuration for the priorities app.
"""

from django.urls import path
from . import views

urlpatterns = [
    path('', views.api_info, name='api-info'),
    path('priority/top/', views.top_items, name='priority-top'),
    path('priority/today/', views.recommended_today, name='priority-today'),
    path('priority/recalculate/', views.recalculate, name='priority-recalculate'),
    path('priority/preview/', views.preview, name='priority-preview'),
    # Single-item refresh
    path('priority/tasks/<int:pk>/score/', views.score_task, name='priority-task-score'),
    path('priority/projects/<int:pk>/score/', views.score_project, name='priority-project-score'),
]
