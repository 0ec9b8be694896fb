"""
Typed job payloads.

Each job type stores its data as JSON; these dataclasses are the only shape the
rest of the app reads. ``decode_payload`` is the single decoding boundary.
"""
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from rest_framework import exceptions

from .models import JobType


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass(frozen=True)
class _Payload:
    def to_dict(self) -> dict:
        return {_camel(key): value for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Any):
        if not isinstance(data, dict):
            raise exceptions.ValidationError({"payload": "must be an object."})
        known = {_camel(f.name): f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise exceptions.ValidationError(
                {"payload": f"unexpected keys for {cls.__name__}: {', '.join(unknown)}"}
            )
        kwargs = {}
        for key, model_field in known.items():
            if key in data:
                kwargs[model_field.name] = data[key]
        try:
            return cls(**kwargs)
        except TypeError as exc:
            raise exceptions.ValidationError({"payload": str(exc)}) from exc


@dataclass(frozen=True)
class SyncParentPayload(_Payload):
    connection_id: str
    marketplace: str
    filters: dict = field(default_factory=dict)
    batch_size: int = 75
    estimated_items: int | None = None


@dataclass(frozen=True)
class SyncBatchPayload(_Payload):
    connection_id: str
    marketplace: str
    item_ids: list
    batch_number: int
    total_batches: int


@dataclass(frozen=True)
class ScanParentPayload(_Payload):
    product_ids: list
    marketplace: str | None = None
    filters: dict = field(default_factory=dict)
    batch_size: int = 20
    blocked: list = field(default_factory=list)


@dataclass(frozen=True)
class ScanBatchPayload(_Payload):
    product_ids: list
    batch_number: int
    total_batches: int
    marketplace: str | None = None


@dataclass(frozen=True)
class SingleUpdatePayload(_Payload):
    connection_id: str
    marketplace: str
    product_id: str
    changes: dict = field(default_factory=dict)


PAYLOAD_TYPES = {
    JobType.SYNC_PARENT: SyncParentPayload,
    JobType.SYNC_BATCH: SyncBatchPayload,
    JobType.SCAN_PARENT: ScanParentPayload,
    JobType.SCAN_BATCH: ScanBatchPayload,
    JobType.SINGLE_UPDATE: SingleUpdatePayload,
}


def decode_payload(job_type: str, data: Any):
    try:
        payload_cls = PAYLOAD_TYPES[JobType(job_type)]
    except (KeyError, ValueError) as exc:
        raise exceptions.ValidationError({"jobType": f"unknown job type {job_type!r}"}) from exc
    return payload_cls.from_dict(data)


def encode_payload(job_type: str, payload) -> dict:
    expected = PAYLOAD_TYPES[JobType(job_type)]
    if not isinstance(payload, expected):
        raise TypeError(f"{job_type} expects {expected.__name__}, got {type(payload).__name__}")
    return payload.to_dict()


def scope_key_for(job_type: str, payload) -> str | None:
    """Natural key guarding against two concurrent jobs for the same scope."""
    if isinstance(payload, SyncParentPayload):
        return f"sync:{payload.connection_id}:{payload.marketplace}"
    if isinstance(payload, ScanParentPayload):
        return f"scan:-:{payload.marketplace or '-'}"
    if isinstance(payload, SingleUpdatePayload):
        return f"update:{payload.connection_id}:{payload.marketplace}:{payload.product_id}"
    return None
