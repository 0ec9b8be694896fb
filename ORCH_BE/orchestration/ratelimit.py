"""
Per-entity scan cooldown.

An entity (a product) may be scanned at most ``max_scans`` times in any rolling
``window_hours`` period. Scans are counted from entity-scoped ``completed``
audit events written by scan batches.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from django.conf import settings
from django.db.models import Count, Min
from django.utils import timezone
from rest_framework import exceptions

from .exceptions import AllBlocked
from .models import AuditEventKind, AuditEvent

logger = logging.getLogger(__name__)


def _window_hours() -> int:
    return int(getattr(settings, "SCAN_WINDOW_HOURS", 24))


def _max_scans() -> int:
    return int(getattr(settings, "SCAN_MAX_PER_WINDOW", 2))


@dataclass
class Eligibility:
    entity_id: str
    eligible: bool
    count_in_window: int
    next_available_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "entityId": self.entity_id,
            "eligible": self.eligible,
            "countInWindow": self.count_in_window,
            "nextAvailableAt": (
                self.next_available_at.isoformat() if self.next_available_at else None
            ),
        }


@dataclass
class Partition:
    eligible: list[str] = field(default_factory=list)
    blocked: list[Eligibility] = field(default_factory=list)

    @property
    def next_available_at(self) -> datetime | None:
        times = [b.next_available_at for b in self.blocked if b.next_available_at]
        return min(times) if times else None

    def to_dict(self) -> dict:
        return {
            "eligible": list(self.eligible),
            "blocked": [b.to_dict() for b in self.blocked],
        }


def _scans_in_window(tenant_id: str, window_start: datetime, now: datetime):
    return AuditEvent.objects.filter(
        tenant_id=tenant_id,
        kind=AuditEventKind.COMPLETED,
        entity_id__isnull=False,
        timestamp__gte=window_start,
        timestamp__lte=now,
    )


def _eligibility(entity_id: str, count: int, oldest, window: timedelta,
                 max_scans: int) -> Eligibility:
    if count < max_scans:
        return Eligibility(entity_id=entity_id, eligible=True, count_in_window=count)
    return Eligibility(
        entity_id=entity_id,
        eligible=False,
        count_in_window=count,
        next_available_at=oldest + window if oldest else None,
    )


def check_eligibility(entity_id: str, tenant_id: str, window_hours: int | None = None,
                      max_scans: int | None = None, now: datetime | None = None) -> Eligibility:
    window = timedelta(hours=window_hours or _window_hours())
    max_scans = max_scans or _max_scans()
    now = now or timezone.now()
    stats = _scans_in_window(tenant_id, now - window, now).filter(
        entity_id=str(entity_id)
    ).aggregate(count=Count("id"), oldest=Min("timestamp"))
    return _eligibility(str(entity_id), stats["count"] or 0, stats["oldest"], window, max_scans)


def partition_by_eligibility(entity_ids, tenant_id: str, window_hours: int | None = None,
                             max_scans: int | None = None,
                             now: datetime | None = None) -> Partition:
    window = timedelta(hours=window_hours or _window_hours())
    max_scans = max_scans or _max_scans()
    now = now or timezone.now()
    ids = list(dict.fromkeys(str(entity_id) for entity_id in entity_ids))
    rows = (
        _scans_in_window(tenant_id, now - window, now)
        .filter(entity_id__in=ids)
        .values("entity_id")
        .annotate(count=Count("id"), oldest=Min("timestamp"))
    )
    by_entity = {row["entity_id"]: row for row in rows}

    partition = Partition()
    for entity_id in ids:
        row = by_entity.get(entity_id, {})
        result = _eligibility(
            entity_id, row.get("count", 0), row.get("oldest"), window, max_scans
        )
        if result.eligible:
            partition.eligible.append(entity_id)
        else:
            partition.blocked.append(result)
    return partition


def gate_scan_scope(entity_ids, tenant_id: str, **kwargs) -> Partition:
    """Partition a scan scope and reject it outright when nothing is eligible."""
    ids = list(entity_ids or [])
    if not ids:
        raise exceptions.ValidationError({"productIds": "at least one product id is required."})
    partition = partition_by_eligibility(ids, tenant_id, **kwargs)
    if not partition.eligible:
        logger.info(
            "Scan rejected for tenant %s: all %d products on cooldown",
            tenant_id,
            len(partition.blocked),
        )
        raise AllBlocked(
            blocked=[b.to_dict() for b in partition.blocked],
            next_available_at=partition.next_available_at,
        )
    return partition
