"""
Typed payload schemas per collection kind.

A collection kind without a registered schema, or a payload with fields the
schema does not know, is a schema violation: the envelope is dead-lettered
instead of being written with silently dropped or drifting columns.
"""

from datetime import datetime

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.errors.exceptions import ValidationError, describe_validation_error
from core.utils import ensure_utc
from warehouse_pipeline.schemas.envelope import ChangeType, EventEnvelope

_PAYLOAD_CONFIG = ConfigDict(populate_by_name=True, extra="forbid")


class DeviceInfo(BaseModel):
    model_config = _PAYLOAD_CONFIG

    platform: str | None = None
    os_version: str | None = Field(default=None, alias="osVersion")
    model: str | None = None


class SessionPayload(BaseModel):
    """A training session document."""

    model_config = _PAYLOAD_CONFIG

    user_id: str | None = Field(default=None, alias="userId")
    exercise_type: str | None = Field(default=None, alias="exerciseType")
    status: str | None = None
    start_time: datetime | None = Field(default=None, alias="startTime")
    end_time: datetime | None = Field(default=None, alias="endTime")
    duration_seconds: float | None = Field(default=None, alias="durationSeconds", ge=0)
    rep_count: int | None = Field(default=None, alias="repCount", ge=0)
    score: float | None = Field(default=None, ge=0)
    device_info: DeviceInfo | None = Field(default=None, alias="deviceInfo")
    app_version: str | None = Field(default=None, alias="appVersion")

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    def resolved_duration_seconds(self) -> float | None:
        """Explicit duration, else end - start when both are known."""
        if self.duration_seconds is not None:
            return self.duration_seconds
        if self.start_time and self.end_time and self.end_time >= self.start_time:
            return (self.end_time - self.start_time).total_seconds()
        return None


PAYLOAD_SCHEMAS: dict[str, type[BaseModel]] = {
    "sessions": SessionPayload,
}


def validate_payload(envelope: EventEnvelope) -> BaseModel | None:
    """Validate the envelope payload against its collection schema.

    Delete envelopes are not payload-validated and return None.

    Raises:
        ValidationError: Unknown collection kind or payload schema violation
    """
    if envelope.change_type == ChangeType.DELETE:
        return None

    schema = PAYLOAD_SCHEMAS.get(envelope.collection_kind)
    if schema is None:
        raise ValidationError(
            f"No payload schema registered for collection '{envelope.collection_kind}'",
            context={"event_id": envelope.event_id},
        )
    try:
        return schema.model_validate(envelope.payload)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Payload schema violation for '{envelope.collection_kind}': {describe_validation_error(e)}",
            context={"event_id": envelope.event_id},
        ) from e
