"""Pydantic models for envelopes, payloads, warehouse rows and audit entries."""

from warehouse_pipeline.schemas.audit import AuditEntry, AuditStatus, sanitize_details
from warehouse_pipeline.schemas.dead_letter import DeadLetterMessage
from warehouse_pipeline.schemas.envelope import (
    ChangeType,
    EventEnvelope,
    parse_envelope,
)
from warehouse_pipeline.schemas.payloads import PAYLOAD_SCHEMAS, SessionPayload, validate_payload
from warehouse_pipeline.schemas.rows import WAREHOUSE_SCHEMA_VERSION, WarehouseRow

__all__ = [
    "AuditEntry",
    "AuditStatus",
    "ChangeType",
    "DeadLetterMessage",
    "EventEnvelope",
    "PAYLOAD_SCHEMAS",
    "SessionPayload",
    "WAREHOUSE_SCHEMA_VERSION",
    "WarehouseRow",
    "parse_envelope",
    "sanitize_details",
    "validate_payload",
]
