"""
Event envelope: the message contract between the emitter and the sync worker.

Wire format is JSON with camelCase keys:

    {"eventId": "...", "sourceCollection": "users/u-1/sessions",
     "sourceDocumentId": "s-1", "changeType": "create",
     "payload": {...}, "occurredAt": "2026-10-18T10:00:00Z",
     "attemptCount": 0, "schemaVersion": 1}
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.errors.exceptions import ValidationError, describe_validation_error
from core.utils import ensure_utc

ENVELOPE_SCHEMA_VERSION = 1
SUPPORTED_SCHEMA_VERSIONS = frozenset({1})


class ChangeType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EventEnvelope(BaseModel):
    """One change on a watched primary-store document.

    Attributes:
        event_id: Deterministic id derived from the source change id
        source_collection: Collection path, e.g. ``users/u-1/sessions``
        source_document_id: Id of the changed document
        change_type: create, update or delete
        payload: Document fields, validated per collection kind by the worker
        occurred_at: When the change happened in the primary store (UTC)
        attempt_count: Processing attempts already spent on this envelope
        schema_version: Envelope contract version
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    event_id: str = Field(..., alias="eventId", min_length=1)
    source_collection: str = Field(..., alias="sourceCollection", min_length=1)
    source_document_id: str = Field(..., alias="sourceDocumentId", min_length=1)
    change_type: ChangeType = Field(..., alias="changeType")
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(..., alias="occurredAt")
    attempt_count: int = Field(default=0, alias="attemptCount", ge=0)
    schema_version: int = Field(default=ENVELOPE_SCHEMA_VERSION, alias="schemaVersion")

    @field_validator("event_id", "source_collection", "source_document_id")
    @classmethod
    def validate_non_empty_strings(cls, v: str, info) -> str:
        if not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty or whitespace")
        return v.strip()

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("schema_version")
    @classmethod
    def validate_schema_version(cls, v: int) -> int:
        if v not in SUPPORTED_SCHEMA_VERSIONS:
            raise ValueError(f"unsupported envelope schema version {v}")
        return v

    @property
    def collection_kind(self) -> str:
        """Last path segment of the collection: ``users/u-1/sessions`` -> ``sessions``."""
        return self.source_collection.rstrip("/").rsplit("/", 1)[-1]

    def with_attempt_count(self, attempt_count: int) -> "EventEnvelope":
        return self.model_copy(update={"attempt_count": attempt_count})

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


def parse_envelope(value: bytes | str | dict[str, Any]) -> EventEnvelope:
    """Parse raw message value into an envelope.

    Raises:
        ValidationError: Value is not JSON or does not match the contract
    """
    try:
        if isinstance(value, dict):
            return EventEnvelope.model_validate(value)
        return EventEnvelope.model_validate_json(value)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Malformed event envelope: {describe_validation_error(e)}"
        ) from e
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError("Event envelope is not valid JSON", cause=e) from e
