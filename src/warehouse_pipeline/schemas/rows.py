"""Warehouse row model."""

from datetime import date, datetime

from pydantic import BaseModel, Field

WAREHOUSE_SCHEMA_VERSION = 1


class WarehouseRow(BaseModel):
    """One pseudonymized session row, keyed by event_id.

    Raw subject identifiers never reach this model: subject_hash and
    device_model_hash are HMAC digests.
    """

    event_id: str
    subject_hash: str
    source_collection: str
    source_document_id: str
    exercise_type: str | None = None
    status: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_seconds: float | None = None
    rep_count: int | None = None
    score: float | None = None
    device_platform: str | None = None
    device_os_version: str | None = None
    device_model_hash: str | None = None
    app_version: str | None = None
    region: str | None = None
    occurred_at: datetime
    partition_date: date
    is_deleted: bool = False
    deleted_at: datetime | None = None
    ingested_at: datetime
    schema_version: int = Field(default=WAREHOUSE_SCHEMA_VERSION)
