from datetime import timedelta

from django.db import transaction
from django.utils import timezone

from orchestration import history
from orchestration.exceptions import FilterValidationError, JobConflict, JobNotFound
from orchestration.lifecycle import JobLifecycleManager
from orchestration.models import AuditEvent, AuditEventKind, Job, JobPriority, JobStatus, JobType
from orchestration.payloads import SyncBatchPayload

from .fakes import OrchestrationTestCase, RecordingBroker


class LifecycleTestCase(OrchestrationTestCase):
    def setUp(self):
        super().setUp()
        self.manager = JobLifecycleManager()

    def submit_sync(self, tenant_id="t1", connection_id="c1", marketplace="amazon", **kwargs):
        return self.manager.submit_sync(tenant_id, "u1", connection_id, marketplace, **kwargs)

    def kinds(self, job):
        return [event.kind for event in history.timeline(job.id)]


class SubmitTests(LifecycleTestCase):
    def test_submit_creates_queued_job_and_publishes_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True):
            job = self.submit_sync(priority=JobPriority.HIGH)

        job.refresh_from_db()
        self.assertEqual(job.status, JobStatus.QUEUED)
        self.assertEqual(job.job_type, JobType.SYNC_PARENT)
        self.assertEqual(job.queue_name, "sync.marketplace")
        self.assertEqual(job.routing_key, "sync.marketplace.high")
        self.assertEqual(job.scope_key, "sync:c1:amazon")
        self.assertEqual(job.max_attempts, 3)
        self.assertEqual(job.payload["batchSize"], 75)
        self.assertEqual(self.kinds(job), [AuditEventKind.CREATED])

        self.assertEqual(len(RecordingBroker.published), 1)
        published = RecordingBroker.published[0]
        self.assertEqual(published["queue"], "sync.marketplace")
        self.assertEqual(published["message"]["jobId"], str(job.id))
        self.assertEqual(published["priority"], JobPriority.HIGH)

    def test_duplicate_scope_conflicts_with_active_job(self):
        first = self.submit_sync()
        with self.assertRaises(JobConflict) as ctx:
            self.submit_sync()
        self.assertEqual(ctx.exception.existing_job_id, str(first.id))
        self.assertEqual(ctx.exception.existing_status, JobStatus.QUEUED)
        self.assertEqual(Job.objects.filter(scope_key="sync:c1:amazon").count(), 1)

    def test_conflict_is_scoped_to_tenant_and_marketplace(self):
        self.submit_sync()
        self.submit_sync(tenant_id="t2")
        self.submit_sync(marketplace="ebay")
        self.assertEqual(Job.objects.count(), 3)

    def test_scope_is_free_again_once_job_is_terminal(self):
        first = self.submit_sync()
        self.manager.mark_started(first.id)
        self.manager.mark_completed(first.id)
        second = self.submit_sync()
        self.assertNotEqual(first.id, second.id)

    def test_filters_that_exclude_everything_create_nothing(self):
        with self.assertRaises(FilterValidationError):
            self.submit_sync(filters={"includeActive": False, "includeInactive": False})
        self.assertFalse(Job.objects.exists())

    def test_scan_defaults_to_two_attempts_and_records_blocked(self):
        job, partition = self.manager.submit_scan("t1", "u1", ["p1", "p2"])
        self.assertEqual(job.max_attempts, 2)
        self.assertEqual(job.queue_name, "ai.scan")
        self.assertEqual(partition.eligible, ["p1", "p2"])
        self.assertEqual(job.payload["productIds"], ["p1", "p2"])

    def test_single_update_scope_includes_product(self):
        job = self.manager.submit_update("t1", "u1", "c1", "amazon", "p1", {"price": 10})
        self.assertEqual(job.scope_key, "update:c1:amazon:p1")
        self.manager.submit_update("t1", "u1", "c1", "amazon", "p2", {"price": 10})
        with self.assertRaises(JobConflict):
            self.manager.submit_update("t1", "u1", "c1", "amazon", "p1", {"title": "x"})


class TransitionTests(LifecycleTestCase):
    def test_start_is_applied_once(self):
        job = self.submit_sync()
        started = self.manager.mark_started(job.id)
        self.assertEqual(started.status, JobStatus.PROCESSING)
        self.assertIsNotNone(started.started_at)
        self.assertIsNotNone(started.queue_wait_ms)
        with self.assertLogs("orchestration.lifecycle", level="WARNING"):
            self.assertIsNone(self.manager.mark_started(job.id))
        self.assertEqual(self.kinds(job).count(AuditEventKind.STARTED), 1)

    def test_transitions_on_missing_jobs_are_ignored(self):
        with self.assertLogs("orchestration.lifecycle", level="WARNING"):
            self.assertIsNone(self.manager.mark_started("00000000-0000-0000-0000-000000000000"))
        with self.assertLogs("orchestration.lifecycle", level="WARNING"):
            self.assertIsNone(self.manager.mark_failed("not-a-uuid", "boom"))

    def test_completion_sets_full_progress(self):
        job = self.submit_sync()
        self.manager.mark_started(job.id)
        self.manager.update_progress(job.id, 40)
        done = self.manager.mark_completed(job.id, result={"ok": True})
        job.refresh_from_db()
        self.assertEqual(done.status, JobStatus.COMPLETED)
        self.assertEqual(job.progress, 100)
        self.assertEqual(job.result, {"ok": True})
        self.assertIsNotNone(job.processing_ms)
        completed = AuditEvent.objects.get(job_id=job.id, kind=AuditEventKind.COMPLETED)
        self.assertEqual(completed.previous_status, JobStatus.PROCESSING)
        self.assertEqual(completed.new_status, JobStatus.COMPLETED)

    def test_terminal_jobs_ignore_further_transitions(self):
        job = self.submit_sync()
        self.manager.mark_started(job.id)
        self.manager.mark_completed(job.id)
        with self.assertLogs("orchestration.lifecycle", level="WARNING"):
            self.assertIsNone(self.manager.mark_failed(job.id, "late failure"))
        with self.assertLogs("orchestration.lifecycle", level="WARNING"):
            self.assertIsNone(self.manager.mark_completed(job.id))
        job.refresh_from_db()
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertIsNone(job.last_error)

    def test_retry_budget(self):
        job = self.submit_sync(max_attempts=3)
        with self.captureOnCommitCallbacks(execute=True):
            for _ in range(3):
                self.manager.mark_started(job.id)
                self.manager.mark_failed(job.id, "Marketplace timeout")

        job.refresh_from_db()
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.attempts, 3)
        self.assertEqual(job.last_error, "Marketplace timeout")

        transitions = [
            event.new_status
            for event in history.timeline(job.id)
            if event.kind != AuditEventKind.PROGRESS
        ]
        self.assertEqual(
            transitions,
            [
                JobStatus.QUEUED,
                JobStatus.PROCESSING,
                JobStatus.QUEUED,
                JobStatus.PROCESSING,
                JobStatus.QUEUED,
                JobStatus.PROCESSING,
                JobStatus.FAILED,
            ],
        )
        kinds = self.kinds(job)
        self.assertEqual(kinds.count(AuditEventKind.RETRY), 2)
        self.assertEqual(kinds.count(AuditEventKind.FAILED), 1)
        retries = AuditEvent.objects.filter(job_id=job.id, kind=AuditEventKind.RETRY)
        self.assertTrue(all(e.error_message == "Marketplace timeout" for e in retries))

        countdowns = [p["countdown"] for p in RecordingBroker.published]
        self.assertEqual(countdowns, [5, 10])

    def test_fatal_failure_skips_remaining_attempts(self):
        job = self.submit_sync(max_attempts=3)
        self.manager.mark_started(job.id)
        self.manager.mark_failed(job.id, "Invalid credentials", retryable=False)
        job.refresh_from_db()
        self.assertEqual(job.status, JobStatus.FAILED)
        failed = AuditEvent.objects.get(job_id=job.id, kind=AuditEventKind.FAILED)
        self.assertEqual(failed.metadata, {"retryable": False})
        self.assertFalse(AuditEvent.objects.filter(job_id=job.id, kind=AuditEventKind.RETRY).exists())


class ProgressTests(LifecycleTestCase):
    def setUp(self):
        super().setUp()
        self.job = self.submit_sync()
        self.manager.mark_started(self.job.id)

    def progress_events(self):
        return list(
            AuditEvent.objects.filter(job_id=self.job.id, kind=AuditEventKind.PROGRESS)
            .order_by("timestamp", "id")
            .values_list("progress", flat=True)
        )

    def test_progress_is_clamped(self):
        self.manager.update_progress(self.job.id, 140)
        self.job.refresh_from_db()
        self.assertEqual(self.job.progress, 100)

    def test_regression_is_ignored(self):
        self.manager.update_progress(self.job.id, 30)
        with self.assertLogs("orchestration.lifecycle", level="WARNING") as logs:
            self.manager.update_progress(self.job.id, 20)
        self.assertIn("ProgressRegression", logs.output[0])
        self.job.refresh_from_db()
        self.assertEqual(self.job.progress, 30)

    def test_small_steps_do_not_emit_events(self):
        for value in (3, 6, 8, 12, 40, 42):
            self.manager.update_progress(self.job.id, value)
        self.assertEqual(self.progress_events(), [6, 12, 40])
        self.job.refresh_from_db()
        self.assertEqual(self.job.progress, 42)

    def test_reset_allows_going_back(self):
        self.manager.update_progress(self.job.id, 50)
        self.manager.update_progress(self.job.id, 0, reset=True)
        self.job.refresh_from_db()
        self.assertEqual(self.job.progress, 0)
        self.assertEqual(self.job.progress_reported, 0)


class CancelAndStatusTests(LifecycleTestCase):
    def test_cancel_parent_cancels_active_children(self):
        parent = self.submit_sync()
        self.manager.mark_started(parent.id)
        with transaction.atomic():
            first = self.manager.create_child(
                parent, JobType.SYNC_BATCH, SyncBatchPayload("c1", "amazon", ["1"], 1, 2), 1
            )
            second = self.manager.create_child(
                parent, JobType.SYNC_BATCH, SyncBatchPayload("c1", "amazon", ["2"], 2, 2), 1
            )
        self.manager.mark_started(first.id)
        self.manager.mark_completed(first.id)

        self.manager.cancel(parent.id, "t1")

        statuses = dict(Job.objects.values_list("id", "status"))
        self.assertEqual(statuses[parent.id], JobStatus.CANCELLED)
        self.assertEqual(statuses[first.id], JobStatus.COMPLETED)
        self.assertEqual(statuses[second.id], JobStatus.CANCELLED)
        self.assertTrue(self.manager.is_cancelled(second.id))

    def test_cancel_of_terminal_job_is_a_no_op(self):
        job = self.submit_sync()
        self.manager.mark_started(job.id)
        self.manager.mark_completed(job.id)
        self.assertEqual(self.manager.cancel(job.id, "t1").status, JobStatus.COMPLETED)
        self.assertNotIn(AuditEventKind.CANCELLED, self.kinds(job))

    def test_status_is_tenant_isolated(self):
        job = self.submit_sync()
        self.assertEqual(self.manager.get_status(job.id, "t1").id, job.id)
        with self.assertRaises(JobNotFound):
            self.manager.get_status(job.id, "t2")
        with self.assertRaises(JobNotFound):
            self.manager.cancel(job.id, "t2")
        with self.assertRaises(JobNotFound):
            self.manager.get_status("garbage", "t1")


class TimelineOrderTests(LifecycleTestCase):
    def test_event_timestamps_never_go_backwards(self):
        job = self.submit_sync()
        future = timezone.now() + timedelta(minutes=5)
        job.add_event(AuditEventKind.STARTED, timestamp=future)
        later = job.add_event(AuditEventKind.PROGRESS, progress=10)
        self.assertGreaterEqual(later.timestamp, future)
        self.assertEqual(
            self.kinds(job),
            [AuditEventKind.CREATED, AuditEventKind.STARTED, AuditEventKind.PROGRESS],
        )
