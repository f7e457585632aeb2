"""
Audit entries: the immutable record of every pipeline decision.

Pipeline log entries are the audit entries written by the sync worker with
action ``process``. Other components record their own actions (recover,
discard, purge, expire, aggregate) through the same model.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.utils import ensure_utc

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "token",
        "accesstoken",
        "refreshtoken",
        "secret",
        "apikey",
        "salt",
        "signature",
        "userid",
        "rawsubjectid",
    }
)


class AuditStatus(str, Enum):
    SUCCESS = "success"
    RETRYING = "retrying"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({AuditStatus.SUCCESS, AuditStatus.FAILED})


def _is_sensitive(key: str) -> bool:
    normalized = key.replace("_", "").replace("-", "").lower()
    return normalized in SENSITIVE_KEYS


def sanitize_details(details: Any) -> Any:
    """Recursively replace values under sensitive keys with ``[REDACTED]``."""
    if isinstance(details, dict):
        return {
            key: REDACTED if _is_sensitive(str(key)) else sanitize_details(value)
            for key, value in details.items()
        }
    if isinstance(details, list):
        return [sanitize_details(item) for item in details]
    return details


class AuditEntry(BaseModel):
    """Immutable audit/pipeline log entry."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    log_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    component: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    status: AuditStatus
    event_id: str | None = None
    partition: str | None = None
    retry_count: int = Field(default=0, ge=0)
    error_message: str | None = None
    started_at: datetime
    completed_at: datetime
    details: dict[str, Any] = Field(default_factory=dict)

    @field_validator("started_at", "completed_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("details")
    @classmethod
    def redact_details(cls, v: dict[str, Any]) -> dict[str, Any]:
        return sanitize_details(v)

    @model_validator(mode="after")
    def check_time_order(self) -> "AuditEntry":
        if self.completed_at < self.started_at:
            raise ValueError("completed_at must not precede started_at")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
