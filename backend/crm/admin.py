from django.contrib import admin

from .models import Activity, Client, Project, Task


@admin.register(Client)
class ClientAdmin(admin.ModelAdmin):
    list_display = ('name', 'company', 'tier', 'status', 'total_revenue', 'owner')
    list_filter = ('tier', 'status')
    search_fields = ('name', 'company', 'email')
    readonly_fields = ('total_revenue',)


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ('name', 'client', 'status', 'stage', 'deadline', 'priority_score')
    list_filter = ('status', 'stage')
    search_fields = ('name',)
    readonly_fields = ('priority_score', 'priority_calculated_at')


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ('title', 'project', 'status', 'due_date', 'priority_score')
    list_filter = ('status',)
    search_fields = ('title',)
    readonly_fields = ('priority_score', 'priority_calculated_at')


@admin.register(Activity)
class ActivityAdmin(admin.ModelAdmin):
    list_display = ('action', 'entity_type', 'entity_id', 'owner', 'created_at')
    list_filter = ('action', 'entity_type')
