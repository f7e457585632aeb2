"""Append-only audit and pipeline log recording."""

from warehouse_pipeline.audit.recorder import AuditRecorder

__all__ = ["AuditRecorder"]
