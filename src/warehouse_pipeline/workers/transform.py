"""
Envelope to warehouse row transform.

The raw subject id comes from the payload ``userId`` or, when absent, from
the ``users/{id}/...`` collection path. Only its keyed hash reaches the row,
also inside the stored collection path.
"""

from datetime import datetime

from core.errors.exceptions import ValidationError
from core.utils import utc_now
from warehouse_pipeline.schemas.envelope import EventEnvelope
from warehouse_pipeline.schemas.payloads import SessionPayload
from warehouse_pipeline.schemas.rows import WarehouseRow
from warehouse_pipeline.workers.pseudonymize import Pseudonymizer

_SUBJECT_COLLECTION = "users"


def subject_from_collection(source_collection: str) -> str | None:
    """``users/u-1/sessions`` -> ``u-1``."""
    segments = [s for s in source_collection.split("/") if s]
    for index, segment in enumerate(segments[:-1]):
        if segment == _SUBJECT_COLLECTION:
            return segments[index + 1]
    return None


def pseudonymize_collection(source_collection: str, pseudonymizer: Pseudonymizer) -> str:
    """``users/u-1/sessions`` -> ``users/<hash of u-1>/sessions``."""
    segments = source_collection.strip("/").split("/")
    for index, segment in enumerate(segments[:-1]):
        if segment == _SUBJECT_COLLECTION:
            segments[index + 1] = pseudonymizer.hash(segments[index + 1])
    return "/".join(segments)


def resolve_subject_id(envelope: EventEnvelope, payload: SessionPayload | None = None) -> str:
    if payload is not None and payload.user_id:
        return payload.user_id
    subject = subject_from_collection(envelope.source_collection)
    if subject:
        return subject
    raise ValidationError(
        "Envelope has no subject identifier",
        context={"event_id": envelope.event_id, "source_collection": envelope.source_collection},
    )


def build_row(
    envelope: EventEnvelope,
    payload: SessionPayload,
    pseudonymizer: Pseudonymizer,
    region: str | None = None,
    ingested_at: datetime | None = None,
) -> WarehouseRow:
    device = payload.device_info
    return WarehouseRow(
        event_id=envelope.event_id,
        subject_hash=pseudonymizer.hash(resolve_subject_id(envelope, payload)),
        source_collection=pseudonymize_collection(envelope.source_collection, pseudonymizer),
        source_document_id=envelope.source_document_id,
        exercise_type=payload.exercise_type,
        status=payload.status,
        start_time=payload.start_time,
        end_time=payload.end_time,
        duration_seconds=payload.resolved_duration_seconds(),
        rep_count=payload.rep_count,
        score=payload.score,
        device_platform=device.platform if device else None,
        device_os_version=device.os_version if device else None,
        device_model_hash=pseudonymizer.hash_optional(device.model if device else None),
        app_version=payload.app_version,
        region=region,
        occurred_at=envelope.occurred_at,
        partition_date=envelope.occurred_at.date(),
        ingested_at=ingested_at or utc_now(),
    )
