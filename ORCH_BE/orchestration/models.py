import uuid

from django.db import models
from django.utils import timezone


class JobStatus(models.TextChoices):
    QUEUED = "queued", "Queued"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"


ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobType(models.TextChoices):
    SYNC_PARENT = "SYNC_PARENT", "Marketplace sync"
    SYNC_BATCH = "SYNC_BATCH", "Product sync batch"
    SCAN_PARENT = "SCAN_PARENT", "AI optimization scan"
    SCAN_BATCH = "SCAN_BATCH", "AI description batch"
    SINGLE_UPDATE = "SINGLE_UPDATE", "Marketplace update"


class JobPriority(models.IntegerChoices):
    LOW = 10, "low"
    NORMAL = 0, "normal"
    HIGH = -10, "high"
    CRITICAL = -20, "critical"


class AuditEventKind(models.TextChoices):
    CREATED = "created", "Created"
    STARTED = "started", "Started"
    PROGRESS = "progress", "Progress"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    RETRY = "retry", "Retry"
    CANCELLED = "cancelled", "Cancelled"
    BATCH_INITIATED = "batch_initiated", "Batch initiated"


JOB_TYPE_QUEUES = {
    JobType.SYNC_PARENT: "sync.marketplace",
    JobType.SYNC_BATCH: "products.batch",
    JobType.SCAN_PARENT: "ai.scan",
    JobType.SCAN_BATCH: "ai.batch",
    JobType.SINGLE_UPDATE: "updates.individual",
}

JOB_TYPE_FAMILY = {
    JobType.SYNC_PARENT: "sync",
    JobType.SYNC_BATCH: "sync",
    JobType.SCAN_PARENT: "scan",
    JobType.SCAN_BATCH: "scan",
    JobType.SINGLE_UPDATE: "update",
}

CHILD_JOB_TYPE = {
    JobType.SYNC_PARENT: JobType.SYNC_BATCH,
    JobType.SCAN_PARENT: JobType.SCAN_BATCH,
}

PARENT_JOB_TYPES = tuple(CHILD_JOB_TYPE.keys())
BATCH_JOB_TYPES = tuple(CHILD_JOB_TYPE.values())


def routing_key_for(queue_name: str, priority: int) -> str:
    try:
        label = JobPriority(priority).label
    except ValueError:
        label = JobPriority.NORMAL.label
    return f"{queue_name}.{label}"


class Job(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    job_type = models.CharField(max_length=20, choices=JobType.choices)
    tenant_id = models.CharField(max_length=64)
    user_id = models.CharField(max_length=64)
    queue_name = models.CharField(max_length=64)
    routing_key = models.CharField(max_length=128)
    payload = models.JSONField(default=dict, blank=True)
    status = models.CharField(
        max_length=20, choices=JobStatus.choices, default=JobStatus.QUEUED
    )
    progress = models.PositiveSmallIntegerField(default=0)
    # Last progress value a progress event was written for.
    progress_reported = models.PositiveSmallIntegerField(default=0)
    parent = models.ForeignKey(
        "self",
        on_delete=models.CASCADE,
        related_name="children",
        null=True,
        blank=True,
    )
    child_job_ids = models.JSONField(default=list, blank=True)
    scope_key = models.CharField(max_length=255, null=True, blank=True)
    items_total = models.PositiveIntegerField(default=0)
    items_done = models.PositiveIntegerField(default=0)
    items_failed = models.PositiveIntegerField(default=0)
    estimated_items = models.PositiveIntegerField(null=True, blank=True)
    priority = models.SmallIntegerField(
        choices=JobPriority.choices, default=JobPriority.NORMAL
    )
    attempts = models.PositiveSmallIntegerField(default=0)
    max_attempts = models.PositiveSmallIntegerField(default=3)
    last_error = models.TextField(null=True, blank=True)
    result = models.JSONField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    queue_wait_ms = models.PositiveBigIntegerField(null=True, blank=True)
    processing_ms = models.PositiveBigIntegerField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["tenant_id", "status"], name="orch_job_tenant_status_idx"),
            models.Index(fields=["tenant_id", "created_at"], name="orch_job_tenant_created_idx"),
            models.Index(fields=["queue_name", "status"], name="orch_job_queue_status_idx"),
            models.Index(fields=["job_type", "status"], name="orch_job_type_status_idx"),
            models.Index(fields=["created_at"], name="orch_job_created_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant_id", "scope_key"],
                condition=models.Q(scope_key__isnull=False)
                & models.Q(status__in=["queued", "processing"]),
                name="unique_active_job_per_scope",
            )
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_parent(self) -> bool:
        return self.job_type in PARENT_JOB_TYPES

    def ordered_children(self) -> list["Job"]:
        """Children in batch order."""
        position = {job_id: index for index, job_id in enumerate(self.child_job_ids or [])}
        children = list(self.children.all())
        children.sort(key=lambda child: (position.get(str(child.id), len(position)), child.created_at))
        return children

    def add_event(self, kind: str, **details) -> "AuditEvent":
        now = details.pop("timestamp", None) or timezone.now()
        latest = (
            AuditEvent.objects.filter(job_id=self.id)
            .order_by("-timestamp")
            .values_list("timestamp", flat=True)
            .first()
        )
        # Worker clocks can drift; a job's history must never go backwards.
        if latest and latest > now:
            now = latest
        return AuditEvent.objects.create(
            job_id=self.id, tenant_id=self.tenant_id, kind=kind, timestamp=now, **details
        )

    def __str__(self) -> str:
        return f"{self.job_type} ({self.id})"


class AuditEvent(models.Model):
    """One immutable fact about a job's history. Never updated after insert."""

    job_id = models.UUIDField()
    tenant_id = models.CharField(max_length=64)
    kind = models.CharField(max_length=20, choices=AuditEventKind.choices)
    timestamp = models.DateTimeField(default=timezone.now)
    progress = models.PositiveSmallIntegerField(null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    metadata = models.JSONField(null=True, blank=True)
    attempt = models.PositiveSmallIntegerField(null=True, blank=True)
    previous_status = models.CharField(max_length=20, null=True, blank=True)
    new_status = models.CharField(max_length=20, null=True, blank=True)
    processing_ms = models.PositiveBigIntegerField(null=True, blank=True)
    queue_wait_ms = models.PositiveBigIntegerField(null=True, blank=True)
    # Set on item-level facts (e.g. one product scanned), null for job transitions.
    entity_id = models.CharField(max_length=128, null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["job_id", "timestamp"], name="orch_evt_job_ts_idx"),
            models.Index(fields=["tenant_id", "timestamp"], name="orch_evt_tenant_ts_idx"),
            models.Index(fields=["kind", "timestamp"], name="orch_evt_kind_ts_idx"),
            models.Index(
                fields=["tenant_id", "entity_id", "kind"], name="orch_evt_entity_idx"
            ),
        ]

    def __str__(self) -> str:
        return f"{self.kind} {self.job_id} @ {self.timestamp.isoformat()}"


class QueueHealthSnapshot(models.Model):
    queue_name = models.CharField(max_length=64)
    timestamp = models.DateTimeField(default=timezone.now)
    waiting = models.PositiveIntegerField(default=0)
    processing = models.PositiveIntegerField(default=0)
    completed = models.PositiveIntegerField(default=0)
    failed = models.PositiveIntegerField(default=0)
    consumers = models.PositiveIntegerField(null=True, blank=True)
    average_processing_ms = models.FloatField(default=0)
    average_wait_ms = models.FloatField(default=0)
    throughput = models.FloatField(default=0)
    is_healthy = models.BooleanField(default=True)
    issues = models.JSONField(default=list, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["queue_name", "timestamp"], name="orch_qh_queue_ts_idx"),
            models.Index(fields=["is_healthy", "timestamp"], name="orch_qh_healthy_ts_idx"),
            models.Index(fields=["timestamp"], name="orch_qh_ts_idx"),
        ]

    def __str__(self) -> str:
        state = "healthy" if self.is_healthy else "unhealthy"
        return f"{self.queue_name} {state} @ {self.timestamp.isoformat()}"
