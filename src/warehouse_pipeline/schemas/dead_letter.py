"""
Dead-letter message schema.

The original envelope fields plus failure metadata. Input that never parsed
as an envelope keeps its raw text in ``raw_value`` and gets an event id
derived from the raw bytes, so it can still be looked up, recovered or
discarded by event id.
"""

import hashlib
import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from core.types import ErrorCategory
from warehouse_pipeline.schemas.envelope import ENVELOPE_SCHEMA_VERSION, EventEnvelope

RAW_EVENT_ID_PREFIX = "raw-"


class DeadLetterMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(..., alias="eventId", min_length=1)
    source_collection: str | None = Field(default=None, alias="sourceCollection")
    source_document_id: str | None = Field(default=None, alias="sourceDocumentId")
    change_type: str | None = Field(default=None, alias="changeType")
    payload: dict[str, Any] | None = None
    occurred_at: datetime | None = Field(default=None, alias="occurredAt")
    attempt_count: int = Field(default=0, alias="attemptCount", ge=0)
    schema_version: int = Field(default=ENVELOPE_SCHEMA_VERSION, alias="schemaVersion")

    failure_reason: str = Field(..., alias="failureReason")
    failed_at: datetime = Field(..., alias="failedAt")
    retry_count: int = Field(default=0, alias="retryCount", ge=0)
    error_category: ErrorCategory = Field(default=ErrorCategory.UNKNOWN, alias="errorCategory")
    raw_value: str | None = Field(default=None, alias="rawValue")

    @classmethod
    def from_envelope(
        cls,
        envelope: EventEnvelope,
        failure_reason: str,
        failed_at: datetime,
        retry_count: int,
        error_category: ErrorCategory,
    ) -> "DeadLetterMessage":
        return cls(
            event_id=envelope.event_id,
            source_collection=envelope.source_collection,
            source_document_id=envelope.source_document_id,
            change_type=envelope.change_type.value,
            payload=envelope.payload,
            occurred_at=envelope.occurred_at,
            attempt_count=envelope.attempt_count,
            schema_version=envelope.schema_version,
            failure_reason=failure_reason,
            failed_at=failed_at,
            retry_count=retry_count,
            error_category=error_category,
        )

    @classmethod
    def from_raw(
        cls,
        raw: bytes,
        failure_reason: str,
        failed_at: datetime,
        error_category: ErrorCategory = ErrorCategory.PERMANENT,
    ) -> "DeadLetterMessage":
        """Dead-letter a value that could not be parsed as an envelope."""
        text = raw.decode("utf-8", errors="replace")
        event_id = None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("eventId"), str) and data["eventId"].strip():
            event_id = data["eventId"].strip()
        if event_id is None:
            event_id = RAW_EVENT_ID_PREFIX + hashlib.sha256(raw).hexdigest()[:32]
        return cls(
            event_id=event_id,
            failure_reason=failure_reason,
            failed_at=failed_at,
            error_category=error_category,
            raw_value=text,
        )

    def republish_value(self) -> bytes:
        """Message value to put back on the events topic, with attemptCount reset to 0."""
        if self.raw_value is None:
            return self.to_envelope().to_json_bytes()
        try:
            data = json.loads(self.raw_value)
        except json.JSONDecodeError:
            return self.raw_value.encode("utf-8")
        if isinstance(data, dict):
            data["attemptCount"] = 0
            return json.dumps(data).encode("utf-8")
        return self.raw_value.encode("utf-8")

    def to_envelope(self, attempt_count: int = 0) -> EventEnvelope:
        return EventEnvelope(
            event_id=self.event_id,
            source_collection=self.source_collection,
            source_document_id=self.source_document_id,
            change_type=self.change_type,
            payload=self.payload or {},
            occurred_at=self.occurred_at,
            attempt_count=attempt_count,
            schema_version=self.schema_version,
        )

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")
