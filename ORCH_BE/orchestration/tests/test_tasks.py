from datetime import timedelta

from django.test import override_settings
from django.utils import timezone

from orchestration.batching import BatchCoordinator
from orchestration.lifecycle import JobLifecycleManager
from orchestration.models import AuditEvent, AuditEventKind, Job, JobStatus, QueueHealthSnapshot
from orchestration.tasks import health_tick, process_job, purge_expired, reconcile

from .fakes import FakeConnector, OrchestrationTestCase, RecordingBroker


class ProcessJobTaskTests(OrchestrationTestCase):
    def test_runs_the_job_once(self):
        manager = JobLifecycleManager()
        job = manager.submit_update("t1", "u1", "c1", "amazon", "p1", {"price": 9})
        self.assertEqual(process_job(str(job.id)), {"status": JobStatus.COMPLETED, "progress": 100})
        self.assertEqual(FakeConnector.updates, [("p1", {"price": 9})])
        with self.assertLogs("orchestration.lifecycle", level="WARNING"):
            self.assertEqual(process_job(str(job.id)), {"status": "skipped"})


@override_settings(JOB_PENDING_REPUBLISH_SECONDS=300, JOB_TIME_BUDGET_SECONDS=60,
                   JOB_LEASE_GRACE_SECONDS=60)
class ReconcileTests(OrchestrationTestCase):
    def setUp(self):
        super().setUp()
        self.manager = JobLifecycleManager()
        self.long_ago = timezone.now() - timedelta(hours=1)

    def test_lost_queued_job_is_republished(self):
        stale = self.manager.submit_sync("t1", "u1", "c1", "amazon")
        fresh = self.manager.submit_sync("t1", "u1", "c2", "amazon")
        Job.objects.filter(id=stale.id).update(updated_at=self.long_ago)

        self.assertEqual(reconcile()["republished"], 1)
        self.assertEqual(
            [p["message"]["jobId"] for p in RecordingBroker.published], [str(stale.id)]
        )
        self.assertNotEqual(str(fresh.id), RecordingBroker.published[0]["message"]["jobId"])
        # touched, so the next pass leaves it alone
        self.assertEqual(reconcile()["republished"], 0)

    def test_stuck_job_is_failed_back_into_the_queue(self):
        job = self.manager.submit_update("t1", "u1", "c1", "amazon", "p1", {"price": 9})
        self.manager.mark_started(job.id)
        Job.objects.filter(id=job.id).update(started_at=self.long_ago)

        with self.assertLogs("orchestration.lifecycle", level="WARNING"):
            self.assertEqual(reconcile()["expired"], 1)
        job.refresh_from_db()
        self.assertEqual(job.status, JobStatus.QUEUED)
        self.assertEqual(job.last_error, "Worker lease expired")
        self.assertEqual(job.attempts, 1)

    def test_parent_with_finished_children_is_settled(self):
        coordinator = BatchCoordinator(self.manager)
        parent = self.manager.mark_started(
            self.manager.submit_sync("t1", "u1", "c1", "amazon", batch_size=2).id
        )
        children = coordinator.decompose(parent, ["a", "b", "c"])
        for child in children:
            child = self.manager.mark_started(child.id)
            for item_id in child.payload["itemIds"]:
                coordinator.record_item(child, item_id)
            self.manager.mark_completed(child.id)

        parent.refresh_from_db()
        self.assertEqual(parent.status, JobStatus.PROCESSING)
        self.assertEqual(reconcile()["settled"], 1)
        parent.refresh_from_db()
        self.assertEqual(parent.status, JobStatus.COMPLETED)

    def test_quiet_pass(self):
        self.assertEqual(reconcile(), {"republished": 0, "expired": 0, "settled": 0})


class PurgeTests(OrchestrationTestCase):
    def test_old_rows_are_removed_but_active_jobs_kept(self):
        manager = JobLifecycleManager()
        old = timezone.now() - timedelta(days=40)
        done = manager.submit_sync("t1", "u1", "c1", "amazon")
        manager.mark_started(done.id)
        manager.mark_completed(done.id)
        waiting = manager.submit_sync("t1", "u1", "c2", "amazon")
        Job.objects.update(created_at=old)
        AuditEvent.objects.update(timestamp=old)
        QueueHealthSnapshot.objects.create(queue_name="sync.marketplace", timestamp=old)
        QueueHealthSnapshot.objects.create(queue_name="sync.marketplace")
        AuditEvent.objects.create(job_id=waiting.id, tenant_id="t1", kind=AuditEventKind.PROGRESS)

        result = purge_expired()

        self.assertEqual(result["jobs"], 1)
        self.assertEqual(list(Job.objects.values_list("id", flat=True)), [waiting.id])
        self.assertEqual(AuditEvent.objects.count(), 1)
        self.assertEqual(QueueHealthSnapshot.objects.count(), 1)


@override_settings(ORCHESTRATION_MONITORED_QUEUES=["products.batch", "ai.batch"])
class HealthTickTests(OrchestrationTestCase):
    def test_samples_every_queue(self):
        RecordingBroker.stats = {"ai.batch": (12, 0)}
        with self.assertLogs("orchestration.health", level="WARNING"):
            result = health_tick()
        self.assertEqual(result, {"sampled": 2, "unhealthy": ["ai.batch"]})
