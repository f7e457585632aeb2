"""
Delta Lake warehouse.

All deltalake/polars I/O is synchronous and runs in the default executor so
the event loop keeps serving other messages. Every mutation is a single
Delta commit:

- upsert_rows: one MERGE keyed on event_id (later occurred_at wins)
- soft_delete / restore: one MERGE over the affected event ids
- purge_partition: one DELETE (whole partition) or MERGE ... DELETE
  (soft-deleted rows past grace), scoped to one partition
- replace_aggregates: one overwrite with a period_key predicate

Commit conflicts are raised as TransientIOError so callers retry them.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import date, datetime
from typing import Any, TypeVar

import polars as pl
from deltalake import DeltaTable, write_deltalake
from deltalake.exceptions import CommitFailedError

from config.config import WarehouseConfig
from core.errors.exceptions import PipelineError, TransientIOError, wrap_exception
from warehouse_pipeline.common.storage.warehouse import (
    AUDIT_PARTITION_COLUMN,
    AUDIT_SCHEMA,
    MERGE_KEYS,
    PARTITION_COLUMN,
    PRESERVE_COLUMNS,
    ROW_SCHEMA,
    UTC_DATETIME,
    check_additive_schema,
    deduplicate_latest,
    empty_frame,
    match_rows,
    rows_to_frame,
)
from warehouse_pipeline.schemas.rows import WarehouseRow

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ROW_KEY_PREDICATE = (
    "target.event_id = source.event_id AND target.partition_date = source.partition_date"
)


def _sql_literal(value: Any) -> str:
    """Quote a value for a Delta predicate string."""
    if isinstance(value, (date, datetime)):
        value = value.isoformat()
    return "'" + str(value).replace("'", "''") + "'"


class _DeltaStore:
    """Shared executor/error handling for Delta-backed stores."""

    def __init__(self, config: WarehouseConfig):
        self._config = config
        self._storage_options = config.storage_options or None

    async def _run(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except PipelineError:
            raise
        except CommitFailedError as e:
            raise TransientIOError(
                f"Delta commit conflict during {operation}",
                cause=e,
                context={"operation": operation},
            ) from e
        except Exception as e:
            raise wrap_exception(e, context={"operation": operation}) from e

    def _exists(self, uri: str) -> bool:
        return DeltaTable.is_deltatable(uri, storage_options=self._storage_options)

    def _load(self, uri: str) -> DeltaTable | None:
        if not self._exists(uri):
            return None
        return DeltaTable(uri, storage_options=self._storage_options)

    def _scan(self, uri: str) -> pl.LazyFrame:
        return pl.scan_delta(uri, storage_options=self._storage_options)


class DeltaWarehouse(_DeltaStore):
    """Session rows and aggregate tables stored as Delta tables."""

    def __init__(self, config: WarehouseConfig):
        super().__init__(config)
        self.rows_uri = config.table_uri(config.rows_table)

    # ------------------------------------------------------------------
    # Session rows
    # ------------------------------------------------------------------

    async def upsert_rows(self, rows: list[WarehouseRow]) -> int:
        if not rows:
            return 0
        df = deduplicate_latest(rows_to_frame(rows))
        return await self._run("upsert_rows", self._upsert_sync, df)

    def _ensure_row_schema(self) -> None:
        existing = dict(self._scan(self.rows_uri).collect_schema())
        missing = check_additive_schema(existing, ROW_SCHEMA, self._config.rows_table)
        if missing:
            logger.info(
                "Adding columns to warehouse table",
                extra={"table": self._config.rows_table, "columns": missing},
            )
            write_deltalake(
                self.rows_uri,
                empty_frame(ROW_SCHEMA).to_arrow(),
                mode="append",
                schema_mode="merge",
                storage_options=self._storage_options,
            )

    def _upsert_sync(self, df: pl.DataFrame) -> int:
        dt = self._load(self.rows_uri)
        if dt is None:
            write_deltalake(
                self.rows_uri,
                df.to_arrow(),
                mode="append",
                partition_by=[PARTITION_COLUMN],
                storage_options=self._storage_options,
            )
            logger.info("Created table", extra={"table": self._config.rows_table, "rows_written": df.height})
            return df.height

        self._ensure_row_schema()
        dt = DeltaTable(self.rows_uri, storage_options=self._storage_options)

        predicate = " AND ".join(f"target.{k} = source.{k}" for k in MERGE_KEYS)
        update_dict = {
            c: f"source.{c}" for c in df.columns if c not in MERGE_KEYS and c not in PRESERVE_COLUMNS
        }
        insert_dict = {c: f"source.{c}" for c in df.columns}

        result = (
            dt.merge(
                source=df.to_arrow(),
                predicate=predicate,
                source_alias="source",
                target_alias="target",
            )
            .when_matched_update(update_dict, predicate="source.occurred_at >= target.occurred_at")
            .when_not_matched_insert(insert_dict)
            .execute()
        )

        rows_updated = result.get("num_target_rows_updated", 0) or 0
        rows_inserted = result.get("num_target_rows_inserted", 0) or 0
        logger.debug(
            "Merge complete",
            extra={"rows_inserted": rows_inserted, "rows_updated": rows_updated},
        )
        return rows_inserted + rows_updated

    async def soft_delete(self, match: dict[str, str], deleted_at: datetime) -> int:
        return await self._run("soft_delete", self._set_deleted_sync, match, deleted_at, True)

    async def restore(self, match: dict[str, str], deleted_since: datetime) -> int:
        return await self._run("restore", self._set_deleted_sync, match, deleted_since, False)

    def _set_deleted_sync(self, match: dict[str, str], at: datetime, deleting: bool) -> int:
        dt = self._load(self.rows_uri)
        if dt is None:
            return 0

        lf = self._scan(self.rows_uri).filter(match_rows(match))
        if deleting:
            lf = lf.filter(~pl.col("is_deleted"))
            new_deleted_at = pl.lit(at, dtype=UTC_DATETIME)
        else:
            lf = lf.filter(pl.col("is_deleted") & (pl.col("deleted_at") >= pl.lit(at, dtype=UTC_DATETIME)))
            new_deleted_at = pl.lit(None, dtype=UTC_DATETIME)

        source = (
            lf.select("event_id", PARTITION_COLUMN)
            .collect()
            .with_columns(
                pl.lit(deleting).alias("is_deleted"),
                new_deleted_at.alias("deleted_at"),
            )
        )
        if source.is_empty():
            return 0

        result = (
            dt.merge(
                source=source.to_arrow(),
                predicate=_ROW_KEY_PREDICATE,
                source_alias="source",
                target_alias="target",
            )
            .when_matched_update(
                {"is_deleted": "source.is_deleted", "deleted_at": "source.deleted_at"},
                predicate=f"target.is_deleted = {'false' if deleting else 'true'}",
            )
            .execute()
        )
        return result.get("num_target_rows_updated", 0) or 0

    async def list_partitions(self) -> list[date]:
        return await self._run("list_partitions", self._list_partitions_sync)

    def _list_partitions_sync(self) -> list[date]:
        if not self._exists(self.rows_uri):
            return []
        df = self._scan(self.rows_uri).select(PARTITION_COLUMN).unique().collect()
        return sorted(df[PARTITION_COLUMN].to_list())

    async def purge_partition(self, partition: date, deleted_before: datetime | None) -> int:
        return await self._run("purge_partition", self._purge_sync, partition, deleted_before)

    def _purge_sync(self, partition: date, deleted_before: datetime | None) -> int:
        dt = self._load(self.rows_uri)
        if dt is None:
            return 0

        if deleted_before is None:
            metrics = dt.delete(f"{PARTITION_COLUMN} = {_sql_literal(partition)}")
            return metrics.get("num_deleted_rows", 0) or 0

        source = (
            self._scan(self.rows_uri)
            .filter(
                (pl.col(PARTITION_COLUMN) == partition)
                & pl.col("is_deleted")
                & (pl.col("deleted_at") < pl.lit(deleted_before, dtype=UTC_DATETIME))
            )
            .select("event_id", PARTITION_COLUMN, "deleted_at")
            .collect()
        )
        if source.is_empty():
            return 0

        # Rows restored or re-deleted since the scan no longer match and survive
        result = (
            dt.merge(
                source=source.to_arrow(),
                predicate=_ROW_KEY_PREDICATE,
                source_alias="source",
                target_alias="target",
            )
            .when_matched_delete(
                predicate="target.is_deleted = true AND target.deleted_at = source.deleted_at"
            )
            .execute()
        )
        return result.get("num_target_rows_deleted", 0) or 0

    async def read_rows(
        self,
        start: date | None = None,
        end: date | None = None,
        include_deleted: bool = True,
    ) -> pl.DataFrame:
        return await self._run("read_rows", self._read_rows_sync, start, end, include_deleted)

    def _read_rows_sync(self, start: date | None, end: date | None, include_deleted: bool) -> pl.DataFrame:
        if not self._exists(self.rows_uri):
            return empty_frame(ROW_SCHEMA)
        lf = self._scan(self.rows_uri)
        if start is not None:
            lf = lf.filter(pl.col(PARTITION_COLUMN) >= start)
        if end is not None:
            lf = lf.filter(pl.col(PARTITION_COLUMN) <= end)
        if not include_deleted:
            lf = lf.filter(~pl.col("is_deleted"))
        return lf.collect()

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def replace_aggregates(self, table_name: str, period_key: str, df: pl.DataFrame) -> int:
        return await self._run("replace_aggregates", self._replace_sync, table_name, period_key, df)

    def _replace_sync(self, table_name: str, period_key: str, df: pl.DataFrame) -> int:
        uri = self._config.table_uri(table_name)
        if not self._exists(uri):
            if df.is_empty():
                return 0
            write_deltalake(uri, df.to_arrow(), mode="append", storage_options=self._storage_options)
            return df.height

        write_deltalake(
            uri,
            df.to_arrow(),
            mode="overwrite",
            predicate=f"period_key = {_sql_literal(period_key)}",
            storage_options=self._storage_options,
        )
        logger.info(
            "Replaced aggregate period",
            extra={"table": table_name, "period_key": period_key, "rows_written": df.height},
        )
        return df.height

    async def read_aggregates(self, table_name: str, period_key: str | None = None) -> pl.DataFrame:
        return await self._run("read_aggregates", self._read_aggregates_sync, table_name, period_key)

    def _read_aggregates_sync(self, table_name: str, period_key: str | None) -> pl.DataFrame:
        uri = self._config.table_uri(table_name)
        if not self._exists(uri):
            return pl.DataFrame()
        lf = self._scan(uri)
        if period_key is not None:
            lf = lf.filter(pl.col("period_key") == period_key)
        return lf.collect()


class DeltaAuditSink(_DeltaStore):
    """Append-only pipeline log table, partitioned by log_date."""

    def __init__(self, config: WarehouseConfig):
        super().__init__(config)
        self.uri = config.table_uri(config.pipeline_log_table)

    async def append(self, frame: pl.DataFrame) -> None:
        await self._run("audit_append", self._append_sync, frame.select(list(AUDIT_SCHEMA)))

    def _append_sync(self, frame: pl.DataFrame) -> None:
        write_deltalake(
            self.uri,
            frame.to_arrow(),
            mode="append",
            schema_mode="merge",
            partition_by=[AUDIT_PARTITION_COLUMN],
            storage_options=self._storage_options,
        )

    async def read(self) -> pl.DataFrame:
        return await self._run("audit_read", self._read_sync)

    def _read_sync(self) -> pl.DataFrame:
        if not self._exists(self.uri):
            return empty_frame(AUDIT_SCHEMA)
        return self._scan(self.uri).collect()

    async def expire_before(self, cutoff: date) -> int:
        return await self._run("audit_expire", self._expire_sync, cutoff)

    def _expire_sync(self, cutoff: date) -> int:
        dt = self._load(self.uri)
        if dt is None:
            return 0
        metrics = dt.delete(f"{AUDIT_PARTITION_COLUMN} < {_sql_literal(cutoff)}")
        return metrics.get("num_deleted_rows", 0) or 0
