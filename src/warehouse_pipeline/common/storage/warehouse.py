"""Warehouse client interface and table schemas.

Architecture:
- Protocol-based design so components take the warehouse as a dependency
- Two implementations: DeltaWarehouse (Delta Lake tables) and
  InMemoryWarehouse (polars DataFrames, for tests and local runs)
- Row schema is versioned and additive-only

Merge rule for session rows (keyed by event_id):
- No stored row: insert
- Stored row with an older or equal occurred_at: replace business fields
- Stored row with a newer occurred_at: keep the stored row
- Lifecycle columns (is_deleted, deleted_at) and ingested_at are never
  overwritten by an upsert
"""

from datetime import date, datetime
from typing import Protocol

import polars as pl

from core.errors.exceptions import ValidationError
from warehouse_pipeline.schemas.rows import WarehouseRow

UTC_DATETIME = pl.Datetime("us", "UTC")

# =============================================================================
# Table schemas
# =============================================================================

ROW_SCHEMA: dict[str, pl.DataType] = {
    "event_id": pl.String,
    "subject_hash": pl.String,
    "source_collection": pl.String,
    "source_document_id": pl.String,
    "exercise_type": pl.String,
    "status": pl.String,
    "start_time": UTC_DATETIME,
    "end_time": UTC_DATETIME,
    "duration_seconds": pl.Float64,
    "rep_count": pl.Int64,
    "score": pl.Float64,
    "device_platform": pl.String,
    "device_os_version": pl.String,
    "device_model_hash": pl.String,
    "app_version": pl.String,
    "region": pl.String,
    "occurred_at": UTC_DATETIME,
    "partition_date": pl.Date,
    "is_deleted": pl.Boolean,
    "deleted_at": UTC_DATETIME,
    "ingested_at": UTC_DATETIME,
    "schema_version": pl.Int64,
}

MERGE_KEYS = ["event_id"]
PRESERVE_COLUMNS = ["is_deleted", "deleted_at", "ingested_at"]
PARTITION_COLUMN = "partition_date"

AUDIT_SCHEMA: dict[str, pl.DataType] = {
    "log_id": pl.String,
    "component": pl.String,
    "action": pl.String,
    "status": pl.String,
    "event_id": pl.String,
    "partition": pl.String,
    "retry_count": pl.Int64,
    "error_message": pl.String,
    "started_at": UTC_DATETIME,
    "completed_at": UTC_DATETIME,
    "details": pl.String,
    "log_date": pl.Date,
}

AUDIT_PARTITION_COLUMN = "log_date"


def rows_to_frame(rows: list[WarehouseRow]) -> pl.DataFrame:
    return pl.DataFrame([row.model_dump() for row in rows], schema=ROW_SCHEMA)


def empty_frame(schema: dict[str, pl.DataType]) -> pl.DataFrame:
    return pl.DataFrame(schema=schema)


def deduplicate_latest(df: pl.DataFrame) -> pl.DataFrame:
    """Keep one row per event_id: the latest occurred_at, last in batch on ties."""
    return (
        df.with_row_index("_batch_order")
        .sort(["occurred_at", "_batch_order"])
        .unique(subset=MERGE_KEYS, keep="last", maintain_order=True)
        .drop("_batch_order")
    )


def check_additive_schema(
    existing: dict[str, pl.DataType],
    expected: dict[str, pl.DataType],
    table_name: str,
) -> list[str]:
    """Compare a stored table schema with the code's schema.

    Returns the columns that must be added. Dropped or retyped columns are a
    destructive change and raise ValidationError.
    """
    dropped = [c for c in existing if c not in expected]
    if dropped:
        raise ValidationError(
            f"Table {table_name} has columns unknown to schema: {dropped}; "
            "columns can only be added",
            context={"table": table_name},
        )
    retyped = [
        c for c, dtype in expected.items() if c in existing and existing[c] != dtype
    ]
    if retyped:
        raise ValidationError(
            f"Table {table_name} column types changed: {retyped}",
            context={"table": table_name},
        )
    return [c for c in expected if c not in existing]


def match_rows(match: dict[str, str]) -> pl.Expr:
    """``column == value`` for every item of ``match``, combined with AND."""
    if not match:
        raise ValueError("Row match must name at least one column")
    expr = pl.lit(True)
    for column, value in match.items():
        expr = expr & (pl.col(column) == value)
    return expr


def describe_match(match: dict[str, str]) -> str:
    return ",".join(f"{column}={value}" for column, value in sorted(match.items()))


# =============================================================================
# Protocols
# =============================================================================


class Warehouse(Protocol):
    """Warehouse tables for session rows and aggregates."""

    async def upsert_rows(self, rows: list[WarehouseRow]) -> int:
        """Upsert rows keyed by event_id. Returns rows inserted or updated."""
        ...

    async def soft_delete(self, match: dict[str, str], deleted_at: datetime) -> int:
        """Flag active rows matching every ``column: value`` of ``match`` as deleted."""
        ...

    async def restore(self, match: dict[str, str], deleted_since: datetime) -> int:
        """Un-delete rows matching ``match`` soft-deleted at or after ``deleted_since``."""
        ...

    async def list_partitions(self) -> list[date]:
        ...

    async def purge_partition(self, partition: date, deleted_before: datetime | None) -> int:
        """Atomically delete rows of one partition.

        ``deleted_before=None`` expires the whole partition; otherwise only
        soft-deleted rows with ``deleted_at < deleted_before`` are removed.
        """
        ...

    async def read_rows(
        self,
        start: date | None = None,
        end: date | None = None,
        include_deleted: bool = True,
    ) -> pl.DataFrame:
        """Rows with ``start <= partition_date <= end``."""
        ...

    async def replace_aggregates(self, table_name: str, period_key: str, df: pl.DataFrame) -> int:
        """Atomically replace all rows of ``period_key`` in an aggregate table."""
        ...

    async def read_aggregates(self, table_name: str, period_key: str | None = None) -> pl.DataFrame:
        ...


class AuditSink(Protocol):
    """Append-only persistence for audit entries."""

    async def append(self, frame: pl.DataFrame) -> None:
        ...

    async def read(self) -> pl.DataFrame:
        ...

    async def expire_before(self, cutoff: date) -> int:
        """Drop entries whose log_date is before ``cutoff`` (retention)."""
        ...
