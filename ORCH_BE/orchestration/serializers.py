import math

from django.utils import timezone
from rest_framework import serializers

from .models import AuditEvent, Job, JobPriority, JobStatus, QueueHealthSnapshot


class PriorityField(serializers.Field):
    """Accepts a priority name ("high") or its numeric value (-10)."""

    default_error_messages = {"invalid": "Unknown priority {value!r}."}

    def to_internal_value(self, data):
        if isinstance(data, str) and not data.lstrip("-").isdigit():
            for value, label in JobPriority.choices:
                if label == data.lower():
                    return value
            self.fail("invalid", value=data)
        try:
            return JobPriority(int(data)).value
        except (TypeError, ValueError):
            self.fail("invalid", value=data)

    def to_representation(self, value):
        return JobPriority(value).label


class SubmitOptionsSerializer(serializers.Serializer):
    priority = PriorityField(required=False, default=JobPriority.NORMAL)
    maxAttempts = serializers.IntegerField(
        source="max_attempts", required=False, min_value=1, max_value=10
    )


class SyncSubmitSerializer(SubmitOptionsSerializer):
    connectionId = serializers.CharField(source="connection_id", max_length=64)
    marketplace = serializers.CharField(max_length=64)
    filters = serializers.JSONField(required=False, allow_null=True)
    batchSize = serializers.IntegerField(
        source="batch_size", required=False, min_value=1, max_value=200
    )
    estimatedItems = serializers.IntegerField(
        source="estimated_items", required=False, min_value=0
    )


class ProductIdsSerializer(serializers.Serializer):
    productIds = serializers.ListField(
        source="product_ids",
        child=serializers.CharField(max_length=128),
        allow_empty=False,
    )


class ScanSubmitSerializer(SubmitOptionsSerializer, ProductIdsSerializer):
    marketplace = serializers.CharField(max_length=64, required=False, allow_null=True)
    filters = serializers.JSONField(required=False, allow_null=True)
    batchSize = serializers.IntegerField(
        source="batch_size", required=False, min_value=1, max_value=200
    )


class UpdateSubmitSerializer(SubmitOptionsSerializer):
    connectionId = serializers.CharField(source="connection_id", max_length=64)
    marketplace = serializers.CharField(max_length=64)
    productId = serializers.CharField(source="product_id", max_length=128)
    changes = serializers.DictField(required=False, default=dict)


class JobSerializer(serializers.ModelSerializer):
    jobId = serializers.UUIDField(source="id")
    jobType = serializers.CharField(source="job_type")
    priority = PriorityField(read_only=True)
    queueName = serializers.CharField(source="queue_name")
    parentJobId = serializers.UUIDField(source="parent_id")
    itemsTotal = serializers.IntegerField(source="items_total")
    itemsDone = serializers.IntegerField(source="items_done")
    itemsFailed = serializers.IntegerField(source="items_failed")
    maxAttempts = serializers.IntegerField(source="max_attempts")
    error = serializers.CharField(source="last_error")
    createdAt = serializers.DateTimeField(source="created_at")
    startedAt = serializers.DateTimeField(source="started_at")
    completedAt = serializers.DateTimeField(source="completed_at")

    class Meta:
        model = Job
        fields = [
            "jobId",
            "jobType",
            "status",
            "progress",
            "priority",
            "queueName",
            "parentJobId",
            "itemsTotal",
            "itemsDone",
            "itemsFailed",
            "attempts",
            "maxAttempts",
            "error",
            "createdAt",
            "startedAt",
            "completedAt",
        ]
        read_only_fields = fields


class AuditEventSerializer(serializers.ModelSerializer):
    jobId = serializers.UUIDField(source="job_id")
    event = serializers.CharField(source="kind")
    errorMessage = serializers.CharField(source="error_message")
    previousStatus = serializers.CharField(source="previous_status")
    newStatus = serializers.CharField(source="new_status")
    processingTime = serializers.IntegerField(source="processing_ms")
    queueWaitTime = serializers.IntegerField(source="queue_wait_ms")
    entityId = serializers.CharField(source="entity_id")

    class Meta:
        model = AuditEvent
        fields = [
            "jobId",
            "event",
            "timestamp",
            "progress",
            "errorMessage",
            "metadata",
            "attempt",
            "previousStatus",
            "newStatus",
            "processingTime",
            "queueWaitTime",
            "entityId",
        ]
        read_only_fields = fields

    def to_representation(self, instance):
        data = super().to_representation(instance)
        return {key: value for key, value in data.items() if value is not None}


class QueueHealthSnapshotSerializer(serializers.ModelSerializer):
    queueName = serializers.CharField(source="queue_name")
    averageProcessingTime = serializers.FloatField(source="average_processing_ms")
    averageWaitTime = serializers.FloatField(source="average_wait_ms")
    isHealthy = serializers.BooleanField(source="is_healthy")

    class Meta:
        model = QueueHealthSnapshot
        fields = [
            "queueName",
            "timestamp",
            "waiting",
            "processing",
            "completed",
            "failed",
            "consumers",
            "averageProcessingTime",
            "averageWaitTime",
            "throughput",
            "isHealthy",
            "issues",
        ]
        read_only_fields = fields


def format_eta(job: Job, now=None) -> str:
    """Extrapolate remaining time linearly from elapsed time and progress."""
    if job.is_terminal:
        return JobStatus(job.status).label
    if job.progress <= 0 or not job.started_at:
        return "Calculating..."
    end = now or timezone.now()
    elapsed = (end - job.started_at).total_seconds()
    if elapsed <= 0:
        return "Calculating..."
    remaining = (100 - job.progress) * (elapsed / job.progress)
    if remaining > 3600:
        return f"{math.ceil(remaining / 3600)} hours remaining"
    if remaining > 60:
        return f"{math.ceil(remaining / 60)} minutes remaining"
    return f"{math.ceil(remaining)} seconds remaining"


class JobStatusSerializer(serializers.BaseSerializer):
    """The polling view of one job, children included."""

    def to_representation(self, job: Job):
        progress = {"current": job.progress, "total": 100, "percentage": job.progress}
        if job.items_total or job.estimated_items:
            progress.update(
                {
                    "estimatedTotal": job.estimated_items,
                    "totalItems": job.items_total,
                    "syncedItems": job.items_done,
                }
            )
        data = {
            "jobId": str(job.id),
            "jobType": job.job_type,
            "status": job.status,
            "progress": progress,
            "eta": format_eta(job, now=self.context.get("now")),
            "result": job.result,
            "error": job.last_error,
            "attempts": job.attempts,
            "maxAttempts": job.max_attempts,
            "createdAt": job.created_at.isoformat(),
            "startedAt": job.started_at.isoformat() if job.started_at else None,
            "completedAt": job.completed_at.isoformat() if job.completed_at else None,
        }
        if job.is_parent:
            data["childJobs"] = [
                {
                    "jobId": str(child.id),
                    "status": child.status,
                    "progress": child.progress,
                    "jobType": child.job_type,
                }
                for child in job.ordered_children()
            ]
        return data
