"""
In-memory warehouse for testing without external dependencies.

Drop-in replacement for DeltaWarehouse that stores each table as a polars
DataFrame. Applies the same merge rule, soft-delete and purge semantics, so
components can be exercised end to end in tests and local runs.

Usage:
    warehouse = InMemoryWarehouse()
    await warehouse.upsert_rows([row])
    df = await warehouse.read_rows()
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

import polars as pl

from core.errors.exceptions import ValidationError
from warehouse_pipeline.common.storage.warehouse import (
    AUDIT_PARTITION_COLUMN,
    AUDIT_SCHEMA,
    PARTITION_COLUMN,
    PRESERVE_COLUMNS,
    ROW_SCHEMA,
    deduplicate_latest,
    describe_match,
    empty_frame,
    match_rows,
    rows_to_frame,
)
from warehouse_pipeline.schemas.rows import WarehouseRow

logger = logging.getLogger(__name__)


@dataclass
class WriteRecord:
    """Record of a single write operation for debugging/verification."""

    operation: str
    rows_affected: int
    timestamp: datetime
    detail: str = ""


class InMemoryWarehouse:
    """Polars-backed warehouse. Safe for concurrent use from one event loop."""

    def __init__(self) -> None:
        self._rows = empty_frame(ROW_SCHEMA)
        self._aggregates: dict[str, pl.DataFrame] = {}
        self._lock = asyncio.Lock()
        self.write_history: list[WriteRecord] = []

    def _record(self, operation: str, rows_affected: int, detail: str = "") -> None:
        self.write_history.append(
            WriteRecord(operation, rows_affected, datetime.now(timezone.utc), detail)
        )

    async def upsert_rows(self, rows: list[WarehouseRow]) -> int:
        if not rows:
            return 0
        incoming = deduplicate_latest(rows_to_frame(rows))

        async with self._lock:
            stored = self._rows.select(
                "event_id",
                pl.col("occurred_at").alias("_stored_occurred_at"),
                pl.col("is_deleted").alias("_stored_is_deleted"),
                pl.col("deleted_at").alias("_stored_deleted_at"),
                pl.col("ingested_at").alias("_stored_ingested_at"),
            )
            joined = incoming.join(stored, on="event_id", how="left")
            matched = pl.col("_stored_occurred_at").is_not_null()
            applied = (
                joined.filter(~matched | (pl.col("occurred_at") >= pl.col("_stored_occurred_at")))
                .with_columns(
                    [
                        pl.when(matched)
                        .then(pl.col(f"_stored_{c}"))
                        .otherwise(pl.col(c))
                        .alias(c)
                        for c in PRESERVE_COLUMNS
                    ]
                )
                .select(list(ROW_SCHEMA))
            )
            if applied.is_empty():
                return 0

            keep = self._rows.filter(~pl.col("event_id").is_in(applied["event_id"].to_list()))
            self._rows = pl.concat([keep, applied], how="vertical")
            self._record("merge", len(applied))
            logger.debug(
                "Merged rows into in-memory warehouse",
                extra={"rows_affected": len(applied), "records_processed": len(rows)},
            )
            return len(applied)

    async def soft_delete(self, match: dict[str, str], deleted_at: datetime) -> int:
        async with self._lock:
            target = match_rows(match) & ~pl.col("is_deleted")
            affected = self._rows.filter(target).height
            if affected:
                self._rows = self._rows.with_columns(
                    pl.when(target).then(True).otherwise(pl.col("is_deleted")).alias("is_deleted"),
                    pl.when(target)
                    .then(pl.lit(deleted_at, dtype=ROW_SCHEMA["deleted_at"]))
                    .otherwise(pl.col("deleted_at"))
                    .alias("deleted_at"),
                )
                self._record("soft_delete", affected, describe_match(match))
            return affected

    async def restore(self, match: dict[str, str], deleted_since: datetime) -> int:
        async with self._lock:
            target = (
                match_rows(match)
                & pl.col("is_deleted")
                & (pl.col("deleted_at") >= pl.lit(deleted_since, dtype=ROW_SCHEMA["deleted_at"]))
            )
            affected = self._rows.filter(target).height
            if affected:
                self._rows = self._rows.with_columns(
                    pl.when(target).then(False).otherwise(pl.col("is_deleted")).alias("is_deleted"),
                    pl.when(target)
                    .then(pl.lit(None, dtype=ROW_SCHEMA["deleted_at"]))
                    .otherwise(pl.col("deleted_at"))
                    .alias("deleted_at"),
                )
                self._record("restore", affected, describe_match(match))
            return affected

    async def list_partitions(self) -> list[date]:
        return sorted(self._rows[PARTITION_COLUMN].unique().to_list())

    async def purge_partition(self, partition: date, deleted_before: datetime | None) -> int:
        async with self._lock:
            target = pl.col(PARTITION_COLUMN) == partition
            if deleted_before is not None:
                target = (
                    target
                    & pl.col("is_deleted")
                    & (pl.col("deleted_at") < pl.lit(deleted_before, dtype=ROW_SCHEMA["deleted_at"]))
                )
            before = self._rows.height
            self._rows = self._rows.filter(~target.fill_null(False))
            purged = before - self._rows.height
            if purged:
                self._record("delete", purged, f"{PARTITION_COLUMN}={partition}")
            return purged

    async def read_rows(
        self,
        start: date | None = None,
        end: date | None = None,
        include_deleted: bool = True,
    ) -> pl.DataFrame:
        df = self._rows
        if start is not None:
            df = df.filter(pl.col(PARTITION_COLUMN) >= start)
        if end is not None:
            df = df.filter(pl.col(PARTITION_COLUMN) <= end)
        if not include_deleted:
            df = df.filter(~pl.col("is_deleted"))
        return df.clone()

    async def replace_aggregates(self, table_name: str, period_key: str, df: pl.DataFrame) -> int:
        if df.height and set(df["period_key"].unique().to_list()) != {period_key}:
            raise ValidationError(
                f"Aggregate frame for {table_name} contains rows outside period {period_key}"
            )
        async with self._lock:
            current = self._aggregates.get(table_name)
            if current is None:
                current = df.clear()
            self._aggregates[table_name] = pl.concat(
                [current.filter(pl.col("period_key") != period_key), df], how="vertical"
            )
            self._record("replace", df.height, f"{table_name}:{period_key}")
            return df.height

    async def read_aggregates(self, table_name: str, period_key: str | None = None) -> pl.DataFrame:
        df = self._aggregates.get(table_name)
        if df is None:
            return pl.DataFrame()
        if period_key is not None:
            df = df.filter(pl.col("period_key") == period_key)
        return df.clone()


class InMemoryAuditSink:
    """Append-only polars audit table."""

    def __init__(self) -> None:
        self._frame = empty_frame(AUDIT_SCHEMA)
        self._lock = asyncio.Lock()

    async def append(self, frame: pl.DataFrame) -> None:
        async with self._lock:
            self._frame = pl.concat([self._frame, frame.select(list(AUDIT_SCHEMA))], how="vertical")

    async def read(self) -> pl.DataFrame:
        return self._frame.clone()

    async def expire_before(self, cutoff: date) -> int:
        async with self._lock:
            before = self._frame.height
            self._frame = self._frame.filter(pl.col(AUDIT_PARTITION_COLUMN) >= cutoff)
            return before - self._frame.height
