"""
Job lifecycle: submission, idempotency and state transitions.

Every transition is a conditional update on the current status, so a worker
replaying a message it already handled sees zero rows change and backs off.
"""
import logging
import time
import uuid
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, OperationalError, connection, transaction
from django.utils import timezone
from kombu.exceptions import OperationalError as BrokerOperationalError
from rest_framework import exceptions

from .brokers import get_broker
from .exceptions import JobConflict, JobNotFound
from .filters import validate_filters
from .models import (
    ACTIVE_STATUSES,
    JOB_TYPE_FAMILY,
    JOB_TYPE_QUEUES,
    AuditEventKind,
    Job,
    JobPriority,
    JobStatus,
    JobType,
    routing_key_for,
)
from .payloads import (
    ScanParentPayload,
    SingleUpdatePayload,
    SyncParentPayload,
    encode_payload,
    scope_key_for,
)
from .ratelimit import gate_scan_scope

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = {"sync": 3, "scan": 2, "update": 3}


def _max_attempts_for(job_type: str) -> int:
    family = JOB_TYPE_FAMILY[JobType(job_type)]
    setting = f"{family.upper()}_MAX_ATTEMPTS"
    return int(getattr(settings, setting, DEFAULT_MAX_ATTEMPTS[family]))


def _progress_event_min_delta() -> int:
    return int(getattr(settings, "JOB_PROGRESS_EVENT_MIN_DELTA", 5))


def _retry_delay_seconds() -> int:
    return int(getattr(settings, "JOB_RETRY_DELAY_SECONDS", 5))


def _elapsed_ms(start, end) -> int | None:
    if not start or not end:
        return None
    return max(0, int((end - start) / timedelta(milliseconds=1)))


def _update_with_retry(qs, updates: dict, attempts: int = 3) -> int:
    for attempt in range(attempts):
        try:
            return qs.update(**updates)
        except OperationalError as exc:
            if connection.in_atomic_block:
                raise
            if "database is locked" not in str(exc).lower() or attempt >= attempts - 1:
                raise
            time.sleep(0.2 * (attempt + 1))
    return 0


def _parse_job_id(job_id) -> uuid.UUID | None:
    if isinstance(job_id, uuid.UUID):
        return job_id
    try:
        return uuid.UUID(str(job_id))
    except (TypeError, ValueError):
        return None


class JobLifecycleManager:
    def __init__(self, broker=None, clock=timezone.now):
        self.broker = broker if broker is not None else get_broker()
        self.clock = clock

    # Lookups

    def get_job(self, job_id) -> Job | None:
        parsed = _parse_job_id(job_id)
        if parsed is None:
            return None
        return Job.objects.filter(id=parsed).first()

    def get_status(self, job_id, tenant_id: str) -> Job:
        """Tenant-isolated read; another tenant's job is reported as missing."""
        job = self.get_job(job_id)
        if job is None or job.tenant_id != str(tenant_id):
            raise JobNotFound()
        return job

    # Submission

    def submit(self, job_type: str, tenant_id: str, user_id: str, payload,
               priority: int = JobPriority.NORMAL, max_attempts: int | None = None,
               metadata: dict | None = None) -> Job:
        job_type = JobType(job_type)
        if isinstance(payload, (SyncParentPayload, ScanParentPayload)):
            validate_filters(payload.filters)
        queue_name = JOB_TYPE_QUEUES[job_type]
        scope_key = scope_key_for(job_type, payload)

        with transaction.atomic():
            job = Job(
                job_type=job_type,
                tenant_id=str(tenant_id),
                user_id=str(user_id),
                queue_name=queue_name,
                routing_key=routing_key_for(queue_name, priority),
                payload=encode_payload(job_type, payload),
                status=JobStatus.QUEUED,
                scope_key=scope_key,
                priority=priority,
                max_attempts=max_attempts or _max_attempts_for(job_type),
                metadata=metadata or {},
                created_at=self.clock(),
            )
            try:
                with transaction.atomic():
                    job.save(force_insert=True)
            except IntegrityError:
                existing = (
                    Job.objects.filter(
                        tenant_id=job.tenant_id,
                        scope_key=scope_key,
                        status__in=ACTIVE_STATUSES,
                    )
                    .order_by("-created_at")
                    .first()
                )
                if existing is None:
                    raise exceptions.ValidationError(
                        "Scope conflict while submitting job. Please try again."
                    )
                logger.info(
                    "Rejected duplicate %s for tenant %s scope %s (active job %s)",
                    job_type,
                    tenant_id,
                    scope_key,
                    existing.id,
                )
                raise JobConflict(existing.id, existing.status)

            job.add_event(
                AuditEventKind.CREATED,
                new_status=JobStatus.QUEUED,
                metadata={"queueName": queue_name, "jobType": job_type},
            )
            transaction.on_commit(lambda: self.publish(job))
        logger.info("Submitted %s job %s for tenant %s", job_type, job.id, tenant_id)
        return job

    def submit_sync(self, tenant_id: str, user_id: str, connection_id: str, marketplace: str,
                    filters=None, batch_size: int | None = None,
                    estimated_items: int | None = None, **options) -> Job:
        normalized = validate_filters(filters)
        payload = SyncParentPayload(
            connection_id=str(connection_id),
            marketplace=marketplace,
            filters=normalized.to_dict(),
            batch_size=batch_size or int(getattr(settings, "SYNC_BATCH_SIZE", 75)),
            estimated_items=estimated_items,
        )
        return self.submit(JobType.SYNC_PARENT, tenant_id, user_id, payload, **options)

    def submit_scan(self, tenant_id: str, user_id: str, product_ids, marketplace: str | None = None,
                    filters=None, batch_size: int | None = None, **options):
        normalized = validate_filters(filters)
        partition = gate_scan_scope(product_ids, tenant_id, now=self.clock())
        payload = ScanParentPayload(
            product_ids=partition.eligible,
            marketplace=marketplace,
            filters=normalized.to_dict(),
            batch_size=batch_size or int(getattr(settings, "SCAN_BATCH_SIZE", 20)),
            blocked=[b.to_dict() for b in partition.blocked],
        )
        job = self.submit(JobType.SCAN_PARENT, tenant_id, user_id, payload, **options)
        return job, partition

    def submit_update(self, tenant_id: str, user_id: str, connection_id: str, marketplace: str,
                      product_id: str, changes: dict | None = None, **options) -> Job:
        payload = SingleUpdatePayload(
            connection_id=str(connection_id),
            marketplace=marketplace,
            product_id=str(product_id),
            changes=changes or {},
        )
        return self.submit(JobType.SINGLE_UPDATE, tenant_id, user_id, payload, **options)

    def create_child(self, parent: Job, job_type: str, payload, items_total: int = 0) -> Job:
        """Insert a batch child. Must run inside the caller's transaction."""
        job_type = JobType(job_type)
        queue_name = JOB_TYPE_QUEUES[job_type]
        child = Job.objects.create(
            job_type=job_type,
            tenant_id=parent.tenant_id,
            user_id=parent.user_id,
            queue_name=queue_name,
            routing_key=routing_key_for(queue_name, parent.priority),
            payload=encode_payload(job_type, payload),
            status=JobStatus.QUEUED,
            parent=parent,
            priority=parent.priority,
            items_total=items_total,
            max_attempts=_max_attempts_for(job_type),
            created_at=self.clock(),
        )
        child.add_event(
            AuditEventKind.CREATED,
            new_status=JobStatus.QUEUED,
            metadata={"queueName": queue_name, "jobType": job_type, "parentJobId": str(parent.id)},
        )
        transaction.on_commit(lambda: self.publish(child))
        return child

    def publish(self, job: Job, countdown: float | None = None) -> None:
        message = {
            "jobId": str(job.id),
            "jobType": job.job_type,
            "tenantId": job.tenant_id,
            "parentJobId": str(job.parent_id) if job.parent_id else None,
            "attempt": job.attempts,
        }
        try:
            self.broker.publish(
                job.queue_name,
                message,
                routing_key=job.routing_key,
                priority=job.priority,
                countdown=countdown,
            )
        except BrokerOperationalError:
            # The job stays queued; reconcile re-publishes it.
            logger.exception("Failed to publish job %s to %s", job.id, job.queue_name)

    # Transitions

    def _transition(self, job: Job, from_statuses, **changes) -> bool:
        qs = Job.objects.filter(id=job.id, status__in=list(from_statuses))
        updated = _update_with_retry(qs, {**changes, "updated_at": self.clock()})
        if updated:
            for field, value in changes.items():
                setattr(job, field, value)
        return bool(updated)

    def _inconsistent(self, job_id, action: str, job: Job | None) -> None:
        state = job.status if job else "missing"
        logger.warning("Ignoring %s for job %s: job is %s", action, job_id, state)

    def mark_started(self, job_id) -> Job | None:
        job = self.get_job(job_id)
        if job is None or job.status != JobStatus.QUEUED:
            self._inconsistent(job_id, "start", job)
            return None
        now = self.clock()
        with transaction.atomic():
            started = self._transition(
                job,
                [JobStatus.QUEUED],
                status=JobStatus.PROCESSING,
                started_at=now,
                queue_wait_ms=_elapsed_ms(job.created_at, now),
            )
            if not started:
                self._inconsistent(job_id, "start", self.get_job(job_id))
                return None
            job.add_event(
                AuditEventKind.STARTED,
                attempt=job.attempts + 1,
                previous_status=JobStatus.QUEUED,
                new_status=JobStatus.PROCESSING,
                queue_wait_ms=job.queue_wait_ms,
            )
        logger.info("Job %s started (attempt %d)", job.id, job.attempts + 1)
        return job

    def update_progress(self, job_id, progress: int, reset: bool = False) -> Job | None:
        value = min(100, max(0, int(progress)))
        job = self.get_job(job_id)
        if job is None or job.is_terminal:
            self._inconsistent(job_id, "progress update", job)
            return None
        if value < job.progress and not reset:
            logger.warning(
                "ProgressRegression on job %s: %d -> %d ignored", job.id, job.progress, value
            )
            return job

        with transaction.atomic():
            qs = Job.objects.filter(id=job.id, status__in=list(ACTIVE_STATUSES))
            if not reset:
                qs = qs.filter(progress__lte=value)
            changes = {"progress": value, "updated_at": self.clock()}
            if reset:
                changes["progress_reported"] = value
            if not _update_with_retry(qs, changes):
                return self.get_job(job_id)
            job.progress = value
            if reset:
                job.progress_reported = value
                return job
            if abs(value - job.progress_reported) > _progress_event_min_delta() or (
                value == 100 and job.progress_reported != 100
            ):
                reported = _update_with_retry(
                    Job.objects.filter(id=job.id, progress_reported__lt=value),
                    {"progress_reported": value},
                )
                if reported:
                    job.progress_reported = value
                    job.add_event(AuditEventKind.PROGRESS, progress=value)
        return job

    def mark_completed(self, job_id, result=None) -> Job | None:
        job = self.get_job(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            self._inconsistent(job_id, "completion", job)
            return None
        now = self.clock()
        with transaction.atomic():
            done = self._transition(
                job,
                [JobStatus.PROCESSING],
                status=JobStatus.COMPLETED,
                progress=100,
                progress_reported=100,
                completed_at=now,
                processing_ms=_elapsed_ms(job.started_at, now),
                result=result if result is not None else job.result,
            )
            if not done:
                self._inconsistent(job_id, "completion", self.get_job(job_id))
                return None
            job.add_event(
                AuditEventKind.COMPLETED,
                progress=100,
                previous_status=JobStatus.PROCESSING,
                new_status=JobStatus.COMPLETED,
                processing_ms=job.processing_ms,
                queue_wait_ms=job.queue_wait_ms,
                attempt=job.attempts + 1,
            )
        logger.info("Job %s completed in %sms", job.id, job.processing_ms)
        return job

    def mark_failed(self, job_id, error: str, retryable: bool = True, result=None) -> Job | None:
        """
        Record a failed attempt. Retryable failures re-queue the job until the
        attempt budget is spent; non-retryable ones fail it immediately.
        """
        job = self.get_job(job_id)
        if job is None or job.is_terminal:
            self._inconsistent(job_id, "failure", job)
            return None
        now = self.clock()
        previous = job.status
        attempts = job.attempts + 1
        error = str(error) or "Unknown error"

        with transaction.atomic():
            if retryable and attempts < job.max_attempts:
                requeued = self._transition(
                    job,
                    [previous],
                    status=JobStatus.QUEUED,
                    attempts=attempts,
                    last_error=error,
                )
                if not requeued:
                    self._inconsistent(job_id, "retry", self.get_job(job_id))
                    return None
                job.add_event(
                    AuditEventKind.RETRY,
                    error_message=error,
                    attempt=attempts,
                    previous_status=previous,
                    new_status=JobStatus.QUEUED,
                    metadata={"maxAttempts": job.max_attempts},
                )
                delay = _retry_delay_seconds() * attempts
                transaction.on_commit(lambda: self.publish(job, countdown=delay))
                logger.warning(
                    "Job %s attempt %d/%d failed, retrying in %ss: %s",
                    job.id,
                    attempts,
                    job.max_attempts,
                    delay,
                    error,
                )
                return job

            failed = self._transition(
                job,
                [previous],
                status=JobStatus.FAILED,
                attempts=min(attempts, job.max_attempts) if retryable else attempts,
                last_error=error,
                completed_at=now,
                processing_ms=_elapsed_ms(job.started_at, now),
                result=result if result is not None else job.result,
            )
            if not failed:
                self._inconsistent(job_id, "failure", self.get_job(job_id))
                return None
            job.add_event(
                AuditEventKind.FAILED,
                error_message=error,
                attempt=attempts,
                previous_status=previous,
                new_status=JobStatus.FAILED,
                processing_ms=job.processing_ms,
                metadata={"retryable": retryable},
            )
        logger.error("Job %s failed permanently after %d attempt(s): %s", job.id, attempts, error)
        return job

    def cancel(self, job_id, tenant_id: str) -> Job:
        job = self.get_status(job_id, tenant_id)
        if job.is_terminal:
            return job
        now = self.clock()
        with transaction.atomic():
            previous = job.status
            if not self._transition(
                job, ACTIVE_STATUSES, status=JobStatus.CANCELLED, completed_at=now
            ):
                return self.get_job(job.id)
            job.add_event(
                AuditEventKind.CANCELLED,
                previous_status=previous,
                new_status=JobStatus.CANCELLED,
            )
            for child in job.children.filter(status__in=list(ACTIVE_STATUSES)):
                child_previous = child.status
                if self._transition(
                    child, ACTIVE_STATUSES, status=JobStatus.CANCELLED, completed_at=now
                ):
                    child.add_event(
                        AuditEventKind.CANCELLED,
                        previous_status=child_previous,
                        new_status=JobStatus.CANCELLED,
                        metadata={"cancelledWith": str(job.id)},
                    )
        logger.info("Job %s cancelled by tenant %s", job.id, tenant_id)
        if job.parent_id:
            from .batching import BatchCoordinator

            BatchCoordinator(self).settle_parent(job.parent_id)
        return job

    def is_cancelled(self, job_id) -> bool:
        return Job.objects.filter(id=job_id, status=JobStatus.CANCELLED).exists()

