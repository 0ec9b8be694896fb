"""
Queue health sampling and system health summary.

Broker-side numbers (waiting messages, consumers) come from the broker; the
rest is derived from the Job table so it survives broker restarts.
"""
import logging
from datetime import timedelta

from django.conf import settings
from django.db import DatabaseError, connection
from django.db.models import Avg, Count, Max, Min, Q
from django.db.models.functions import TruncHour
from django.utils import timezone

from .brokers import get_broker
from .models import JOB_TYPE_QUEUES, Job, JobStatus, QueueHealthSnapshot

logger = logging.getLogger(__name__)

HIGH_FAILURE_RATE = "High failure rate"
HIGH_BACKLOG = "High message backlog"
NO_CONSUMERS = "No active consumers"


def _setting(name: str, default):
    return getattr(settings, name, default)


def monitored_queues() -> list[str]:
    return list(_setting("ORCHESTRATION_MONITORED_QUEUES", list(JOB_TYPE_QUEUES.values())))


def classify(snapshot: QueueHealthSnapshot) -> list[str]:
    issues = []
    if snapshot.failed > snapshot.completed * _setting("HEALTH_FAILURE_RATE_THRESHOLD", 0.1):
        issues.append(HIGH_FAILURE_RATE)
    if snapshot.waiting > _setting("HEALTH_BACKLOG_THRESHOLD", 1000):
        issues.append(HIGH_BACKLOG)
    if snapshot.consumers == 0 and snapshot.waiting > 0:
        issues.append(NO_CONSUMERS)
    return issues


class QueueHealthMonitor:
    def __init__(self, broker=None, clock=timezone.now):
        self.broker = broker if broker is not None else get_broker()
        self.clock = clock

    def collect(self, queue_name: str) -> QueueHealthSnapshot:
        """Build an unsaved snapshot for one queue."""
        now = self.clock()
        stats = self.broker.queue_stats(queue_name)
        jobs = Job.objects.filter(queue_name=queue_name)
        finished = jobs.filter(completed_at__gte=now - timedelta(hours=1))
        window_minutes = _setting("HEALTH_THROUGHPUT_WINDOW_MINUTES", 5)

        averages = finished.filter(status=JobStatus.COMPLETED).aggregate(
            processing=Avg("processing_ms"), wait=Avg("queue_wait_ms")
        )
        recent = jobs.filter(
            status=JobStatus.COMPLETED,
            completed_at__gte=now - timedelta(minutes=window_minutes),
        ).count()

        snapshot = QueueHealthSnapshot(
            queue_name=queue_name,
            timestamp=now,
            waiting=stats.waiting,
            processing=jobs.filter(status=JobStatus.PROCESSING).count(),
            completed=finished.filter(status=JobStatus.COMPLETED).count(),
            failed=finished.filter(status=JobStatus.FAILED).count(),
            consumers=stats.consumers if stats.reachable else None,
            average_processing_ms=averages["processing"] or 0,
            average_wait_ms=averages["wait"] or 0,
            throughput=recent / window_minutes,
        )
        snapshot.issues = classify(snapshot)
        snapshot.is_healthy = not snapshot.issues
        return snapshot

    def record_snapshots(self, queues=None) -> list[QueueHealthSnapshot]:
        snapshots = []
        for queue_name in queues or monitored_queues():
            snapshot = self.collect(queue_name)
            snapshot.save()
            if not snapshot.is_healthy:
                logger.warning(
                    "Queue %s unhealthy: %s", queue_name, ", ".join(snapshot.issues)
                )
            snapshots.append(snapshot)
        return snapshots

    def latest_health(self, queue_name: str) -> QueueHealthSnapshot | None:
        return (
            QueueHealthSnapshot.objects.filter(queue_name=queue_name)
            .order_by("-timestamp", "-id")
            .first()
        )

    def all_queues_health(self) -> dict:
        return {name: self.latest_health(name) for name in monitored_queues()}

    def unhealthy_queues(self) -> list[QueueHealthSnapshot]:
        return [
            snapshot
            for snapshot in self.all_queues_health().values()
            if snapshot is not None and not snapshot.is_healthy
        ]

    def trend(self, queue_name: str, hours: int = 24) -> list[QueueHealthSnapshot]:
        since = self.clock() - timedelta(hours=hours)
        return list(
            QueueHealthSnapshot.objects.filter(queue_name=queue_name, timestamp__gte=since)
            .order_by("timestamp", "id")
        )

    def performance_trend(self, queue_name: str, hours: int = 24) -> list[dict]:
        since = self.clock() - timedelta(hours=hours)
        buckets = (
            QueueHealthSnapshot.objects.filter(queue_name=queue_name, timestamp__gte=since)
            .annotate(hour=TruncHour("timestamp"))
            .values("hour")
            .annotate(
                samples=Count("id"),
                healthy=Count("id", filter=Q(is_healthy=True)),
                avg_waiting=Avg("waiting"),
                avg_processing_ms=Avg("average_processing_ms"),
                avg_throughput=Avg("throughput"),
                max_waiting=Max("waiting"),
            )
            .order_by("hour")
        )
        return [
            {
                "hour": bucket["hour"].isoformat(),
                "samples": bucket["samples"],
                "healthyPercentage": round(100 * bucket["healthy"] / bucket["samples"], 1),
                "avgWaiting": bucket["avg_waiting"] or 0,
                "maxWaiting": bucket["max_waiting"] or 0,
                "avgProcessingTime": bucket["avg_processing_ms"] or 0,
                "avgThroughput": bucket["avg_throughput"] or 0,
            }
            for bucket in buckets
        ]

    def job_type_stats(self, hours: int = 24) -> list[dict]:
        since = self.clock() - timedelta(hours=hours)
        rows = (
            Job.objects.filter(created_at__gte=since)
            .values("job_type")
            .annotate(
                total=Count("id"),
                completed=Count("id", filter=Q(status=JobStatus.COMPLETED)),
                failed=Count("id", filter=Q(status=JobStatus.FAILED)),
                processing=Count("id", filter=Q(status=JobStatus.PROCESSING)),
                queued=Count("id", filter=Q(status=JobStatus.QUEUED)),
                avg_ms=Avg("processing_ms", filter=Q(status=JobStatus.COMPLETED)),
                min_ms=Min("processing_ms", filter=Q(status=JobStatus.COMPLETED)),
                max_ms=Max("processing_ms", filter=Q(status=JobStatus.COMPLETED)),
            )
            .order_by("job_type")
        )
        stats = []
        for row in rows:
            total = row["total"]
            stats.append(
                {
                    "jobType": row["job_type"],
                    "total": total,
                    "completed": row["completed"],
                    "failed": row["failed"],
                    "processing": row["processing"],
                    "queued": row["queued"],
                    "avgProcessingTime": row["avg_ms"] or 0,
                    "minProcessingTime": row["min_ms"] or 0,
                    "maxProcessingTime": row["max_ms"] or 0,
                    "successRate": round(100 * row["completed"] / total, 1) if total else 0,
                    "failureRate": round(100 * row["failed"] / total, 1) if total else 0,
                }
            )
        return stats

    def _alerts(self, snapshots, stats) -> list[dict]:
        alerts = []
        for snapshot in snapshots:
            if HIGH_BACKLOG in snapshot.issues:
                alerts.append(
                    {
                        "level": "warning",
                        "queue": snapshot.queue_name,
                        "message": f"Queue {snapshot.queue_name} has {snapshot.waiting} waiting messages",
                    }
                )
            if NO_CONSUMERS in snapshot.issues:
                alerts.append(
                    {
                        "level": "error",
                        "queue": snapshot.queue_name,
                        "message": f"Queue {snapshot.queue_name} has no active consumers",
                    }
                )
        failure_alert = _setting("HEALTH_JOB_FAILURE_RATE_ALERT", 10)
        slow_ms = _setting("HEALTH_SLOW_JOB_MS", 60000)
        for row in stats:
            if row["failureRate"] > failure_alert:
                alerts.append(
                    {
                        "level": "warning",
                        "jobType": row["jobType"],
                        "message": f"{row['jobType']} failure rate is {row['failureRate']}%",
                    }
                )
            if row["avgProcessingTime"] > slow_ms:
                alerts.append(
                    {
                        "level": "warning",
                        "jobType": row["jobType"],
                        "message": (
                            f"{row['jobType']} averages "
                            f"{round(row['avgProcessingTime'] / 1000, 1)}s per job"
                        ),
                    }
                )
        return alerts

    def _database_ok(self) -> bool:
        try:
            connection.ensure_connection()
        except DatabaseError as exc:
            logger.error("Database health probe failed: %s", exc)
            return False
        return True

    def system_health(self) -> dict:
        database_ok = self._database_ok()
        broker_ok = self.broker.is_reachable()
        queues = self.all_queues_health()
        snapshots = [snapshot for snapshot in queues.values() if snapshot is not None]
        stats = self.job_type_stats() if database_ok else []
        alerts = self._alerts(snapshots, stats)

        if not (database_ok and broker_ok) or any(a["level"] == "error" for a in alerts):
            overall = "unhealthy"
        elif alerts:
            overall = "degraded"
        else:
            overall = "healthy"
        return {
            "overall": overall,
            "timestamp": self.clock(),
            "services": {"database": database_ok, "broker": broker_ok},
            "queues": queues,
            "performance": {"stats": stats, "alerts": alerts},
        }
