from django.contrib import admin

from .models import AuditEvent, Job, QueueHealthSnapshot


@admin.register(Job)
class JobAdmin(admin.ModelAdmin):
    list_display = ("id", "job_type", "status", "progress", "tenant_id", "created_at")
    list_filter = ("status", "job_type", "queue_name")
    search_fields = ("id", "tenant_id", "scope_key")
    raw_id_fields = ("parent",)


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ("job_id", "kind", "timestamp", "entity_id", "tenant_id")
    list_filter = ("kind",)
    search_fields = ("job_id", "entity_id", "tenant_id")

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(QueueHealthSnapshot)
class QueueHealthSnapshotAdmin(admin.ModelAdmin):
    list_display = ("queue_name", "timestamp", "waiting", "consumers", "is_healthy")
    list_filter = ("queue_name", "is_healthy")
