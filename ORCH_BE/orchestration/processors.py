"""
Worker-side job handlers.

``JobProcessor.run`` is the batch-processing boundary: every collaborator
error is turned into a lifecycle transition here and never escapes to the
Celery worker.
"""
import logging
import time

from django.conf import settings

from .batching import BatchCoordinator
from .collaborators import describe_prompt, get_connector, get_text_generator
from .exceptions import (
    CollaboratorError,
    FatalCollaboratorError,
    ItemRejected,
    JobTimeout,
)
from .lifecycle import JobLifecycleManager
from .models import AuditEventKind, Job, JobStatus, JobType
from .payloads import decode_payload
from .ratelimit import partition_by_eligibility

logger = logging.getLogger(__name__)


class JobCancelled(Exception):
    pass


def _time_budget() -> int:
    return int(getattr(settings, "JOB_TIME_BUDGET_SECONDS", 900))


def _min_confidence() -> float:
    return float(getattr(settings, "SCAN_MIN_CONFIDENCE", 0.5))


def _max_fetch_pages() -> int:
    return int(getattr(settings, "SYNC_MAX_FETCH_PAGES", 1000))


class Deadline:
    def __init__(self, seconds: float, clock=time.monotonic):
        self.seconds = seconds
        self.clock = clock
        self.expires_at = clock() + seconds

    def check(self) -> None:
        if self.clock() >= self.expires_at:
            raise JobTimeout(f"Job exceeded its time budget of {self.seconds}s")


def _item_id(item) -> str:
    if isinstance(item, dict):
        return str(item.get("id") or item.get("itemId"))
    return str(item)


class JobProcessor:
    def __init__(self, manager: JobLifecycleManager | None = None, connector=None,
                 text_generator=None, clock=time.monotonic):
        self.manager = manager or JobLifecycleManager()
        self.coordinator = BatchCoordinator(self.manager)
        self._connector = connector
        self._text_generator = text_generator
        self.clock = clock
        self.handlers = {
            JobType.SYNC_PARENT: self.process_sync_parent,
            JobType.SCAN_PARENT: self.process_scan_parent,
            JobType.SYNC_BATCH: self.process_sync_batch,
            JobType.SCAN_BATCH: self.process_scan_batch,
            JobType.SINGLE_UPDATE: self.process_single_update,
        }

    @property
    def connector(self):
        if self._connector is None:
            self._connector = get_connector()
        return self._connector

    @property
    def text_generator(self):
        if self._text_generator is None:
            self._text_generator = get_text_generator()
        return self._text_generator

    def run(self, job_id) -> Job | None:
        job = self.manager.mark_started(job_id)
        if job is None:
            return None
        deadline = Deadline(_time_budget(), clock=self.clock)
        try:
            self.handlers[JobType(job.job_type)](job, deadline)
        except JobCancelled:
            logger.info("Job %s stopped after cancellation", job.id)
            return self.manager.get_job(job.id)
        except FatalCollaboratorError as exc:
            logger.error("Job %s hit a fatal collaborator error: %s", job.id, exc)
            self._fail(job, str(exc), retryable=False)
        except CollaboratorError as exc:
            logger.warning("Job %s hit a transient collaborator error: %s", job.id, exc)
            self._fail(job, str(exc), retryable=True)
        except Exception as exc:
            logger.exception("Job %s raised an unexpected error", job.id)
            self._fail(job, f"{type(exc).__name__}: {exc}", retryable=True)
        return self.manager.get_job(job.id)

    def _fail(self, job: Job, error: str, retryable: bool) -> None:
        failed = self.manager.mark_failed(job.id, error, retryable=retryable)
        if failed is not None and failed.status == JobStatus.FAILED and failed.parent_id:
            self.coordinator.settle_parent(failed.parent_id)

    def _complete(self, job: Job, result=None) -> None:
        completed = self.manager.mark_completed(job.id, result=result)
        if completed is not None and completed.parent_id:
            self.coordinator.settle_parent(completed.parent_id)

    def _checkpoint(self, job: Job, deadline: Deadline) -> None:
        if self.manager.is_cancelled(job.id):
            raise JobCancelled()
        deadline.check()

    # Parents

    def process_sync_parent(self, job: Job, deadline: Deadline) -> None:
        payload = decode_payload(job.job_type, job.payload)
        item_ids = []
        page = 1
        while True:
            self._checkpoint(job, deadline)
            fetched = self.connector.fetch_items(payload.connection_id, payload.filters, page)
            item_ids.extend(_item_id(item) for item in fetched.items)
            if not fetched.has_more:
                break
            page += 1
            if page > _max_fetch_pages():
                raise FatalCollaboratorError(
                    f"Connector returned more than {_max_fetch_pages()} pages"
                )
        logger.info("Job %s resolved %d items over %d page(s)", job.id, len(item_ids), page)
        self._checkpoint(job, deadline)
        self.coordinator.decompose(job, item_ids, summary={"pagesFetched": page})

    def process_scan_parent(self, job: Job, deadline: Deadline) -> None:
        payload = decode_payload(job.job_type, job.payload)
        self._checkpoint(job, deadline)
        # Another scan may have finished since submission.
        partition = partition_by_eligibility(payload.product_ids, job.tenant_id)
        blocked = list(payload.blocked) + [b.to_dict() for b in partition.blocked]
        if partition.blocked:
            logger.info(
                "Job %s dropped %d products that went on cooldown after submission",
                job.id,
                len(partition.blocked),
            )
        self.coordinator.decompose(job, partition.eligible, summary={"blocked": blocked})

    # Batches

    def process_sync_batch(self, job: Job, deadline: Deadline) -> None:
        payload = decode_payload(job.job_type, job.payload)
        for item_id in payload.item_ids[job.items_done:]:
            self._checkpoint(job, deadline)
            try:
                self.connector.sync_item(payload.connection_id, payload.marketplace, item_id)
            except ItemRejected as exc:
                logger.warning("Job %s skipped item %s: %s", job.id, item_id, exc)
                recorded = self.coordinator.record_item(job, item_id, ok=False, error=str(exc))
            else:
                recorded = self.coordinator.record_item(job, item_id)
            if not recorded:
                raise JobCancelled()
        self._complete(job, result=self._batch_summary(job, payload.batch_number))

    def process_scan_batch(self, job: Job, deadline: Deadline) -> None:
        payload = decode_payload(job.job_type, job.payload)
        threshold = _min_confidence()
        for product_id in payload.product_ids[job.items_done:]:
            self._checkpoint(job, deadline)
            generation = self.text_generator.generate(
                describe_prompt(product_id, payload.marketplace)
            )
            if generation.confidence < threshold:
                logger.warning(
                    "Job %s rejected output for %s (confidence %.2f)",
                    job.id,
                    product_id,
                    generation.confidence,
                )
                recorded = self.coordinator.record_item(
                    job,
                    product_id,
                    ok=False,
                    error=f"Low confidence ({generation.confidence:.2f})",
                )
            else:
                job.add_event(
                    AuditEventKind.COMPLETED,
                    entity_id=str(product_id),
                    metadata={"confidence": generation.confidence},
                )
                recorded = self.coordinator.record_item(
                    job,
                    product_id,
                    detail={"description": generation.text, "confidence": generation.confidence},
                )
            if not recorded:
                raise JobCancelled()
        self._complete(job, result=self._batch_summary(job, payload.batch_number))

    def _batch_summary(self, job: Job, batch_number: int) -> dict:
        result = dict(job.result or {})
        result.update(
            {
                "batchNumber": batch_number,
                "succeededCount": job.items_done - job.items_failed,
                "failedCount": job.items_failed,
            }
        )
        result.setdefault("succeeded", [])
        result.setdefault("failed", [])
        return result

    # Single items

    def process_single_update(self, job: Job, deadline: Deadline) -> None:
        payload = decode_payload(job.job_type, job.payload)
        self._checkpoint(job, deadline)
        try:
            response = self.connector.apply_update(
                payload.connection_id, payload.marketplace, payload.product_id, payload.changes
            )
        except ItemRejected as exc:
            raise FatalCollaboratorError(str(exc)) from exc
        self._complete(job, result={"productId": payload.product_id, "response": response})
