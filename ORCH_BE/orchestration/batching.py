"""
Parent/child decomposition and aggregation.

A parent job splits its candidate items into fixed-size batch children. Each
child reports every finished item back through ``record_item``, which bumps
the parent's counters with F() expressions so concurrent children never lose
an increment. Parent progress is ``floor(100 * items_done / items_total)``.
"""
import logging
import math

from django.db import transaction
from django.db.models import F

from .lifecycle import JobLifecycleManager
from .models import (
    ACTIVE_STATUSES,
    CHILD_JOB_TYPE,
    AuditEventKind,
    Job,
    JobStatus,
    JobType,
)
from .payloads import ScanBatchPayload, SyncBatchPayload, decode_payload

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 200


def split_batches(items: list, batch_size: int) -> list[list]:
    batch_size = max(1, min(int(batch_size), MAX_BATCH_SIZE))
    return [items[start:start + batch_size] for start in range(0, len(items), batch_size)]


def progress_for(done: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, math.floor(100 * done / total))


def _child_payload(parent: Job, parent_payload, items: list, number: int, total: int):
    if parent.job_type == JobType.SYNC_PARENT:
        return SyncBatchPayload(
            connection_id=parent_payload.connection_id,
            marketplace=parent_payload.marketplace,
            item_ids=items,
            batch_number=number,
            total_batches=total,
        )
    return ScanBatchPayload(
        product_ids=items,
        batch_number=number,
        total_batches=total,
        marketplace=parent_payload.marketplace,
    )


class BatchCoordinator:
    def __init__(self, manager: JobLifecycleManager):
        self.manager = manager

    def decompose(self, parent: Job, item_ids, summary: dict | None = None) -> list[Job]:
        """
        Create one child per batch and record a ``batch_initiated`` event on the
        parent. An empty scope completes the parent straight away.

        Returns the children created by this call; a parent that was already
        decomposed (a redelivered message) returns its existing children.
        """
        items = [str(item_id) for item_id in dict.fromkeys(item_ids)]
        payload = decode_payload(parent.job_type, parent.payload)
        batches = split_batches(items, payload.batch_size)
        summary = dict(summary or {})

        with transaction.atomic():
            locked = Job.objects.select_for_update().filter(id=parent.id).first()
            if locked is None or locked.status != JobStatus.PROCESSING:
                logger.warning("Not decomposing job %s: not processing", parent.id)
                return []
            existing = locked.ordered_children()
            if existing:
                logger.info("Job %s already has %d children", parent.id, len(existing))
                return existing

            locked.items_total = len(items)
            locked.estimated_items = locked.estimated_items or len(items)
            if not batches:
                locked.save(update_fields=["items_total", "estimated_items", "updated_at"])
                summary.update({"totalItems": 0, "totalBatches": 0})
                self.manager.mark_completed(locked.id, result=summary)
                logger.info("Job %s has an empty scope; completed with no batches", parent.id)
                return []

            child_type = CHILD_JOB_TYPE[JobType(locked.job_type)]
            children = []
            for number, batch in enumerate(batches, start=1):
                child_payload = _child_payload(locked, payload, batch, number, len(batches))
                children.append(
                    self.manager.create_child(locked, child_type, child_payload, items_total=len(batch))
                )

            locked.child_job_ids = [str(child.id) for child in children]
            locked.result = {**summary, "totalItems": len(items), "totalBatches": len(batches)}
            locked.save(
                update_fields=["items_total", "estimated_items", "child_job_ids", "result", "updated_at"]
            )
            locked.add_event(
                AuditEventKind.BATCH_INITIATED,
                metadata={
                    "childJobIds": locked.child_job_ids,
                    "totalBatches": len(batches),
                    "totalItems": len(items),
                    "batchSize": len(batches[0]),
                },
            )
        parent.refresh_from_db()
        logger.info(
            "Job %s split %d items into %d %s batches",
            parent.id,
            len(items),
            len(children),
            child_type,
        )
        return children

    def record_item(self, child: Job, item_id: str, ok: bool = True, error: str | None = None,
                    detail: dict | None = None) -> bool:
        """
        Count one finished item on ``child`` and on its parent.

        ``child.items_done`` doubles as the resume cursor: the update only applies
        if nobody else has moved it, so a redelivered batch cannot count twice.
        """
        result = dict(child.result or {})
        if ok:
            result["succeeded"] = [*result.get("succeeded", []), {"id": item_id, **(detail or {})}]
        else:
            result["failed"] = [*result.get("failed", []), {"id": item_id, "error": error}]
        failed_delta = 0 if ok else 1

        with transaction.atomic():
            moved = Job.objects.filter(
                id=child.id, status=JobStatus.PROCESSING, items_done=child.items_done
            ).update(
                items_done=F("items_done") + 1,
                items_failed=F("items_failed") + failed_delta,
                result=result,
            )
            if not moved:
                logger.warning("Item %s of job %s was not recorded", item_id, child.id)
                return False
            child.items_done += 1
            child.items_failed += failed_delta
            child.result = result

            if child.parent_id:
                Job.objects.filter(id=child.parent_id).update(
                    items_done=F("items_done") + 1,
                    items_failed=F("items_failed") + failed_delta,
                )

        # 100 is set by mark_completed only.
        self.manager.update_progress(
            child.id, min(99, progress_for(child.items_done, child.items_total))
        )
        if child.parent_id:
            done, total, status = Job.objects.filter(id=child.parent_id).values_list(
                "items_done", "items_total", "status"
            ).get()
            if status in ACTIVE_STATUSES:
                self.manager.update_progress(child.parent_id, min(99, progress_for(done, total)))
        return True

    def settle_parent(self, parent_id) -> Job | None:
        """
        Move a parent to its terminal state once every child is terminal.

        Any failed child fails the parent with a summary of the failed batches;
        work done by the other batches is kept and reported alongside.
        """
        parent = self.manager.get_job(parent_id)
        if parent is None or parent.is_terminal or not parent.child_job_ids:
            return None
        children = parent.ordered_children()
        if any(child.status in ACTIVE_STATUSES for child in children):
            return None

        failed = [
            child for child in children
            if child.status in (JobStatus.FAILED, JobStatus.CANCELLED)
        ]
        summary = {
            **(parent.result or {}),
            "totalBatches": len(children),
            "completedBatches": sum(1 for c in children if c.status == JobStatus.COMPLETED),
            "failedBatches": [
                {
                    "jobId": str(child.id),
                    "batchNumber": (child.payload or {}).get("batchNumber"),
                    "error": child.last_error or child.status,
                }
                for child in failed
            ],
            "totalItems": parent.items_total,
            "processedItems": parent.items_done,
            "failedItems": parent.items_failed,
        }
        if failed:
            numbers = ", ".join(str(b["batchNumber"]) for b in summary["failedBatches"])
            error = f"{len(failed)} of {len(children)} batches failed (batches {numbers})"
            return self.manager.mark_failed(parent.id, error, retryable=False, result=summary)
        return self.manager.mark_completed(parent.id, result=summary)
