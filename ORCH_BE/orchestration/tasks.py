"""
Celery tasks. ``process_job`` is the only consumer of job messages; the rest
run from beat: health sampling, reconciliation of lost or stuck jobs, and the
retention purge.
"""
import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.db import OperationalError
from django.utils import timezone

from .batching import BatchCoordinator
from .brokers import PROCESS_TASK_NAME
from .health import QueueHealthMonitor
from .lifecycle import JobLifecycleManager
from .models import (
    ACTIVE_STATUSES,
    PARENT_JOB_TYPES,
    AuditEvent,
    Job,
    JobStatus,
    QueueHealthSnapshot,
)
from .processors import JobProcessor

logger = logging.getLogger(__name__)

RECONCILE_BATCH = 50


def _time_budget_seconds() -> int:
    return int(getattr(settings, "JOB_TIME_BUDGET_SECONDS", 900))


def _republish_after_seconds() -> int:
    return int(getattr(settings, "JOB_PENDING_REPUBLISH_SECONDS", 300))


def _lease_grace_seconds() -> int:
    return int(getattr(settings, "JOB_LEASE_GRACE_SECONDS", 60))


@shared_task(
    name=PROCESS_TASK_NAME,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=_time_budget_seconds(),
)
def process_job(job_id: str) -> dict:
    job = JobProcessor().run(job_id)
    if job is None:
        return {"status": "skipped"}
    return {"status": job.status, "progress": job.progress}


@shared_task(name="orchestration.health_tick")
def health_tick() -> dict:
    snapshots = QueueHealthMonitor().record_snapshots()
    unhealthy = [s.queue_name for s in snapshots if not s.is_healthy]
    return {"sampled": len(snapshots), "unhealthy": unhealthy}


@shared_task(name="orchestration.reconcile")
def reconcile() -> dict:
    """Re-publish lost queued jobs, expire stuck workers and settle orphaned parents."""
    now = timezone.now()
    manager = JobLifecycleManager()
    coordinator = BatchCoordinator(manager)

    republish_cutoff = now - timedelta(seconds=_republish_after_seconds())
    republished = 0
    stale_queued = Job.objects.filter(
        status=JobStatus.QUEUED, updated_at__lt=republish_cutoff
    ).order_by("updated_at")
    for job in stale_queued[:RECONCILE_BATCH]:
        try:
            touched = Job.objects.filter(id=job.id, status=JobStatus.QUEUED).update(updated_at=now)
        except OperationalError:
            continue
        if touched:
            manager.publish(job)
            republished += 1

    lease_cutoff = now - timedelta(seconds=_time_budget_seconds() + _lease_grace_seconds())
    expired = 0
    stuck = Job.objects.filter(
        status=JobStatus.PROCESSING, started_at__lt=lease_cutoff, children__isnull=True
    ).order_by("started_at")
    for job in stuck[:RECONCILE_BATCH]:
        failed = manager.mark_failed(job.id, "Worker lease expired", retryable=True)
        if failed is None:
            continue
        expired += 1
        if failed.status == JobStatus.FAILED and failed.parent_id:
            coordinator.settle_parent(failed.parent_id)

    settled = 0
    waiting_parents = (
        Job.objects.filter(
            status=JobStatus.PROCESSING,
            job_type__in=list(PARENT_JOB_TYPES),
            children__isnull=False,
        )
        .exclude(children__status__in=list(ACTIVE_STATUSES))
        .distinct()
    )
    for parent in waiting_parents[:RECONCILE_BATCH]:
        if coordinator.settle_parent(parent.id) is not None:
            settled += 1

    if republished or expired or settled:
        logger.info(
            "Reconcile: republished=%d expired=%d settled=%d", republished, expired, settled
        )
    return {"republished": republished, "expired": expired, "settled": settled}


@shared_task(name="orchestration.purge_expired")
def purge_expired() -> dict:
    now = timezone.now()
    job_cutoff = now - timedelta(days=int(getattr(settings, "JOB_RETENTION_DAYS", 30)))
    audit_cutoff = now - timedelta(days=int(getattr(settings, "AUDIT_RETENTION_DAYS", 7)))
    health_cutoff = now - timedelta(days=int(getattr(settings, "HEALTH_RETENTION_DAYS", 7)))

    jobs, _ = Job.objects.filter(created_at__lt=job_cutoff).exclude(
        status__in=list(ACTIVE_STATUSES)
    ).delete()
    events, _ = AuditEvent.objects.filter(timestamp__lt=audit_cutoff).delete()
    snapshots, _ = QueueHealthSnapshot.objects.filter(timestamp__lt=health_cutoff).delete()
    logger.info("Purged %d job rows, %d audit events, %d health snapshots", jobs, events, snapshots)
    return {"jobs": jobs, "events": events, "snapshots": snapshots}
