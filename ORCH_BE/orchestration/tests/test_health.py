from datetime import timedelta

from django.test import override_settings
from django.utils import timezone

from orchestration.health import (
    HIGH_BACKLOG,
    HIGH_FAILURE_RATE,
    NO_CONSUMERS,
    QueueHealthMonitor,
    classify,
)
from orchestration.models import Job, JobStatus, JobType, QueueHealthSnapshot

from .fakes import OrchestrationTestCase, RecordingBroker

QUEUE = "products.batch"


@override_settings(ORCHESTRATION_MONITORED_QUEUES=[QUEUE, "ai.batch"])
class QueueHealthTests(OrchestrationTestCase):
    def setUp(self):
        super().setUp()
        self.now = timezone.now()
        self.monitor = QueueHealthMonitor(clock=lambda: self.now)

    def job(self, status, minutes_ago=10, processing_ms=1000, job_type=JobType.SYNC_BATCH):
        return Job.objects.create(
            job_type=job_type,
            tenant_id="t1",
            user_id="u1",
            queue_name=QUEUE,
            routing_key=f"{QUEUE}.normal",
            status=status,
            processing_ms=processing_ms,
            queue_wait_ms=200,
            created_at=self.now - timedelta(minutes=minutes_ago + 1),
            completed_at=(
                self.now - timedelta(minutes=minutes_ago)
                if status in (JobStatus.COMPLETED, JobStatus.FAILED)
                else None
            ),
        )

    def test_backlog_makes_queue_unhealthy(self):
        RecordingBroker.stats = {QUEUE: (1500, 2)}
        snapshot = self.monitor.collect(QUEUE)
        self.assertFalse(snapshot.is_healthy)
        self.assertIn(HIGH_BACKLOG, snapshot.issues)
        self.assertNotIn(NO_CONSUMERS, snapshot.issues)

    def test_waiting_messages_without_consumers(self):
        RecordingBroker.stats = {QUEUE: (3, 0)}
        self.assertEqual(self.monitor.collect(QUEUE).issues, [NO_CONSUMERS])

    def test_idle_queue_without_consumers_is_healthy(self):
        RecordingBroker.stats = {QUEUE: (0, 0)}
        self.assertTrue(self.monitor.collect(QUEUE).is_healthy)

    def test_counts_come_from_recent_jobs(self):
        for _ in range(9):
            self.job(JobStatus.COMPLETED, minutes_ago=2, processing_ms=2000)
        self.job(JobStatus.COMPLETED, minutes_ago=30, processing_ms=4000)
        self.job(JobStatus.FAILED, minutes_ago=3)
        self.job(JobStatus.COMPLETED, minutes_ago=120)
        self.job(JobStatus.PROCESSING)

        snapshot = self.monitor.collect(QUEUE)
        self.assertEqual(snapshot.completed, 10)
        self.assertEqual(snapshot.failed, 1)
        self.assertEqual(snapshot.processing, 1)
        self.assertEqual(snapshot.average_processing_ms, 2200)
        self.assertEqual(snapshot.throughput, 9 / 5)
        self.assertTrue(snapshot.is_healthy)

    def test_failure_rate_issue(self):
        self.job(JobStatus.COMPLETED, minutes_ago=2)
        self.job(JobStatus.FAILED, minutes_ago=2)
        self.assertIn(HIGH_FAILURE_RATE, self.monitor.collect(QUEUE).issues)

    def test_unreachable_broker_reports_unknown_consumers(self):
        RecordingBroker.reachable = False
        snapshot = self.monitor.collect(QUEUE)
        self.assertIsNone(snapshot.consumers)
        self.assertEqual(classify(snapshot), [])

    def test_record_snapshots_persists_every_queue(self):
        RecordingBroker.stats = {QUEUE: (2000, 1)}
        with self.assertLogs("orchestration.health", level="WARNING"):
            snapshots = self.monitor.record_snapshots()
        self.assertEqual([s.queue_name for s in snapshots], [QUEUE, "ai.batch"])
        self.assertEqual(QueueHealthSnapshot.objects.count(), 2)
        self.assertEqual([s.queue_name for s in self.monitor.unhealthy_queues()], [QUEUE])
        self.assertEqual(self.monitor.latest_health(QUEUE).waiting, 2000)

    def test_trend_and_hourly_performance(self):
        for hours_ago, healthy in ((3, True), (3, False), (1, True), (30, True)):
            QueueHealthSnapshot.objects.create(
                queue_name=QUEUE,
                timestamp=self.now - timedelta(hours=hours_ago),
                waiting=10,
                is_healthy=healthy,
            )
        self.assertEqual(len(self.monitor.trend(QUEUE, hours=24)), 3)
        buckets = self.monitor.performance_trend(QUEUE, hours=24)
        self.assertEqual(len(buckets), 2)
        self.assertEqual(buckets[0]["samples"], 2)
        self.assertEqual(buckets[0]["healthyPercentage"], 50.0)
        self.assertEqual(buckets[1]["healthyPercentage"], 100.0)


@override_settings(ORCHESTRATION_MONITORED_QUEUES=[QUEUE])
class SystemHealthTests(OrchestrationTestCase):
    def setUp(self):
        super().setUp()
        self.monitor = QueueHealthMonitor()

    def test_healthy_system(self):
        self.monitor.record_snapshots()
        report = self.monitor.system_health()
        self.assertEqual(report["overall"], "healthy")
        self.assertEqual(report["services"], {"database": True, "broker": True})
        self.assertEqual(report["performance"]["alerts"], [])

    def test_backlog_degrades(self):
        RecordingBroker.stats = {QUEUE: (5000, 3)}
        with self.assertLogs("orchestration.health", level="WARNING"):
            self.monitor.record_snapshots()
        report = self.monitor.system_health()
        self.assertEqual(report["overall"], "degraded")
        self.assertEqual(report["performance"]["alerts"][0]["level"], "warning")

    def test_missing_consumers_is_unhealthy(self):
        RecordingBroker.stats = {QUEUE: (5, 0)}
        with self.assertLogs("orchestration.health", level="WARNING"):
            self.monitor.record_snapshots()
        self.assertEqual(self.monitor.system_health()["overall"], "unhealthy")

    def test_unreachable_broker_is_unhealthy(self):
        RecordingBroker.reachable = False
        self.assertEqual(self.monitor.system_health()["overall"], "unhealthy")

    def test_job_type_failure_rate_alert(self):
        now = timezone.now()
        for status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.FAILED):
            Job.objects.create(
                job_type=JobType.SINGLE_UPDATE,
                tenant_id="t1",
                user_id="u1",
                queue_name="updates.individual",
                routing_key="updates.individual.normal",
                status=status,
                processing_ms=500,
                completed_at=now,
            )
        report = self.monitor.system_health()
        stats = report["performance"]["stats"][0]
        self.assertEqual(stats["jobType"], JobType.SINGLE_UPDATE)
        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["failureRate"], 66.7)
        self.assertEqual(stats["successRate"], 33.3)
        self.assertEqual(report["overall"], "degraded")
        self.assertIn("failure rate", report["performance"]["alerts"][0]["message"])
