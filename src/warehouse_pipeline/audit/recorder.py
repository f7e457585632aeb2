"""
Audit recorder.

``append`` is the only write path. Entries are frozen pydantic models, so a
recorded entry cannot be changed; the sink only ever appends and never
updates. Callers decide what a failed append means: the sync worker logs it
and keeps the message disposition unchanged.
"""

import json
import logging
from datetime import date

import polars as pl

from core.utils import json_serializer
from warehouse_pipeline.common.storage.warehouse import AUDIT_SCHEMA, AuditSink
from warehouse_pipeline.schemas.audit import AuditEntry, AuditStatus

logger = logging.getLogger(__name__)


def entries_to_frame(entries: list[AuditEntry]) -> pl.DataFrame:
    return pl.DataFrame(
        [
            {
                "log_id": e.log_id,
                "component": e.component,
                "action": e.action,
                "status": e.status.value,
                "event_id": e.event_id,
                "partition": e.partition,
                "retry_count": e.retry_count,
                "error_message": e.error_message,
                "started_at": e.started_at,
                "completed_at": e.completed_at,
                "details": json.dumps(e.details, sort_keys=True, default=json_serializer),
                "log_date": e.completed_at.date(),
            }
            for e in entries
        ],
        schema=AUDIT_SCHEMA,
    )


def frame_to_entries(df: pl.DataFrame) -> list[AuditEntry]:
    return [
        AuditEntry(
            log_id=row["log_id"],
            component=row["component"],
            action=row["action"],
            status=AuditStatus(row["status"]),
            event_id=row["event_id"],
            partition=row["partition"],
            retry_count=row["retry_count"],
            error_message=row["error_message"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            details=json.loads(row["details"]) if row["details"] else {},
        )
        for row in df.iter_rows(named=True)
    ]


class AuditRecorder:
    def __init__(self, sink: AuditSink):
        self._sink = sink

    async def append(self, entry: AuditEntry) -> None:
        await self._sink.append(entries_to_frame([entry]))
        logger.debug(
            "Audit entry recorded",
            extra={
                "component": entry.component,
                "action": entry.action,
                "status": entry.status.value,
                "event_id": entry.event_id,
            },
        )

    async def read(
        self,
        event_id: str | None = None,
        component: str | None = None,
        action: str | None = None,
    ) -> list[AuditEntry]:
        """Entries in completion order, optionally filtered."""
        df = await self._sink.read()
        if event_id is not None:
            df = df.filter(pl.col("event_id") == event_id)
        if component is not None:
            df = df.filter(pl.col("component") == component)
        if action is not None:
            df = df.filter(pl.col("action") == action)
        return frame_to_entries(df.sort("completed_at", maintain_order=True))

    async def expire_before(self, cutoff: date) -> int:
        return await self._sink.expire_before(cutoff)
