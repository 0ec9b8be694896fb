"""Read side of the append-only audit ledger."""
from datetime import timedelta

from django.db.models import Avg, Count, Max, Min
from django.utils import timezone

from .models import AuditEvent, AuditEventKind

ERROR_ANALYSIS_TOP_N = 10


def _default_since(since):
    return since or timezone.now() - timedelta(hours=24)


def timeline(job_id) -> list[AuditEvent]:
    return list(AuditEvent.objects.filter(job_id=job_id).order_by("timestamp", "id"))


def recent_events(tenant_id: str, limit: int = 100, kinds=None) -> list[AuditEvent]:
    qs = AuditEvent.objects.filter(tenant_id=tenant_id)
    if kinds:
        qs = qs.filter(kind__in=list(kinds))
    return list(qs.order_by("-timestamp", "-id")[:limit])


def performance_metrics(tenant_id: str, since=None) -> dict:
    since = _default_since(since)
    stats = AuditEvent.objects.filter(
        tenant_id=tenant_id,
        kind=AuditEventKind.COMPLETED,
        entity_id__isnull=True,
        timestamp__gte=since,
    ).aggregate(
        count=Count("id"),
        avg_processing_ms=Avg("processing_ms"),
        avg_wait_ms=Avg("queue_wait_ms"),
        min_processing_ms=Min("processing_ms"),
        max_processing_ms=Max("processing_ms"),
    )
    return {
        "count": stats["count"] or 0,
        "avgProcessingTime": stats["avg_processing_ms"] or 0,
        "avgWaitTime": stats["avg_wait_ms"] or 0,
        "minProcessingTime": stats["min_processing_ms"] or 0,
        "maxProcessingTime": stats["max_processing_ms"] or 0,
        "since": since.isoformat(),
    }


def error_analysis(tenant_id: str, since=None, top: int = ERROR_ANALYSIS_TOP_N) -> list[dict]:
    """Most frequent failure messages, grouped by exact string."""
    since = _default_since(since)
    failures = AuditEvent.objects.filter(
        tenant_id=tenant_id,
        kind=AuditEventKind.FAILED,
        error_message__isnull=False,
        timestamp__gte=since,
    ).exclude(error_message="")
    groups = (
        failures.values("error_message")
        .annotate(count=Count("id"), last_seen=Max("timestamp"))
        .order_by("-count", "-last_seen")[:top]
    )
    analysis = []
    for group in groups:
        job_ids = (
            failures.filter(error_message=group["error_message"])
            .order_by()
            .values_list("job_id", flat=True)
            .distinct()
        )
        analysis.append(
            {
                "error": group["error_message"],
                "count": group["count"],
                "lastSeen": group["last_seen"].isoformat(),
                "jobIds": sorted(str(job_id) for job_id in job_ids),
            }
        )
    return analysis

