"""
Aggregation Scheduler - daily and weekly rollups of warehouse rows.

Each run covers the period that just ended (yesterday; last ISO week) and
replaces that period's aggregate rows in one atomic write. Input is the
active rows of the period's partitions, reduced to the latest version per
source document.

Reruns are byte-identical: rows are sorted by their dimensions and
generated_at is the logical end of the period, not the wall clock.

A failed period keeps its previous aggregates (the replace never happened),
is remembered, and is retried on the next run. After
``alert_after_failures`` consecutive failed runs an alert fires. Nothing
here is raised into the caller's loop.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

import polars as pl

from config.config import PipelineConfig
from core.logging import log_exception, log_with_context
from core.utils import utc_now
from warehouse_pipeline.audit.recorder import AuditRecorder
from warehouse_pipeline.common.alerts import Alert, AlertNotifier
from warehouse_pipeline.common.storage.warehouse import UTC_DATETIME, Warehouse
from warehouse_pipeline.schemas.audit import AuditEntry, AuditStatus

logger = logging.getLogger(__name__)

COMPONENT = "aggregation_scheduler"
DAILY = "daily"
WEEKLY = "weekly"

DAILY_SCHEMA: dict[str, pl.DataType] = {
    "period_key": pl.String,
    "exercise_type": pl.String,
    "device_platform": pl.String,
    "region": pl.String,
    "total_sessions": pl.Int64,
    "total_users": pl.Int64,
    "total_duration_seconds": pl.Float64,
    "average_score": pl.Float64,
    "average_rep_count": pl.Float64,
    "generated_at": UTC_DATETIME,
}

WEEKLY_SCHEMA: dict[str, pl.DataType] = {
    "period_key": pl.String,
    "exercise_type": pl.String,
    "total_sessions": pl.Int64,
    "unique_users": pl.Int64,
    "average_score": pl.Float64,
    "total_duration_seconds": pl.Float64,
    "generated_at": UTC_DATETIME,
}

# Metric precision; keeps float output stable across runs
_DECIMALS = 6


@dataclass(frozen=True, order=True)
class Period:
    kind: str
    start: date

    @property
    def days(self) -> int:
        return 7 if self.kind == WEEKLY else 1

    @property
    def last_day(self) -> date:
        return self.start + timedelta(days=self.days - 1)

    @property
    def key(self) -> str:
        if self.kind == WEEKLY:
            year, week, _ = self.start.isocalendar()
            return f"{year}-W{week:02d}"
        return self.start.isoformat()

    @property
    def generated_at(self) -> datetime:
        return datetime.combine(self.start + timedelta(days=self.days), time.min, tzinfo=timezone.utc)

    @classmethod
    def daily(cls, day: date) -> "Period":
        return cls(DAILY, day)

    @classmethod
    def weekly(cls, day: date) -> "Period":
        """ISO week (Monday start) containing ``day``."""
        return cls(WEEKLY, day - timedelta(days=day.weekday()))


def latest_per_document(df: pl.DataFrame) -> pl.DataFrame:
    """One row per source document: the latest occurred_at, event_id as tie-break.

    Document ids are unique only within their collection.
    """
    return df.sort(["occurred_at", "event_id"]).unique(
        subset=["source_collection", "source_document_id"], keep="last", maintain_order=True
    )


def _finish(df: pl.DataFrame, period: Period, schema: dict[str, pl.DataType], dims: list[str]) -> pl.DataFrame:
    return (
        df.with_columns(
            pl.lit(period.key).alias("period_key"),
            pl.lit(period.generated_at, dtype=UTC_DATETIME).alias("generated_at"),
            pl.col(pl.Float64).round(_DECIMALS),
        )
        .select([pl.col(name).cast(dtype) for name, dtype in schema.items()])
        .sort(dims, nulls_last=True)
    )


def compute_daily(rows: pl.DataFrame, period: Period) -> pl.DataFrame:
    if rows.is_empty():
        return pl.DataFrame(schema=DAILY_SCHEMA)
    dims = ["exercise_type", "device_platform", "region"]
    grouped = (
        latest_per_document(rows)
        .sort("event_id")
        .group_by(dims, maintain_order=True)
        .agg(
            pl.len().alias("total_sessions"),
            pl.col("subject_hash").n_unique().alias("total_users"),
            pl.col("duration_seconds").sum().alias("total_duration_seconds"),
            pl.col("score").mean().alias("average_score"),
            pl.col("rep_count").mean().alias("average_rep_count"),
        )
    )
    return _finish(grouped, period, DAILY_SCHEMA, dims)


def compute_weekly(rows: pl.DataFrame, period: Period) -> pl.DataFrame:
    if rows.is_empty():
        return pl.DataFrame(schema=WEEKLY_SCHEMA)
    dims = ["exercise_type"]
    grouped = (
        latest_per_document(rows)
        .sort("event_id")
        .group_by(dims, maintain_order=True)
        .agg(
            pl.len().alias("total_sessions"),
            pl.col("subject_hash").n_unique().alias("unique_users"),
            pl.col("score").mean().alias("average_score"),
            pl.col("duration_seconds").sum().alias("total_duration_seconds"),
        )
    )
    return _finish(grouped, period, WEEKLY_SCHEMA, dims)


@dataclass
class AggregationResult:
    period_key: str
    kind: str
    succeeded: bool
    rows_written: int = 0
    error: str | None = None


class AggregationScheduler:
    """
    Usage:
        >>> scheduler = AggregationScheduler(config, warehouse, audit, alerts)
        >>> await scheduler.run_daily()   # aggregates yesterday (UTC)
        >>> await scheduler.run_weekly()  # aggregates last ISO week
    """

    def __init__(
        self,
        config: PipelineConfig,
        warehouse: Warehouse,
        audit: AuditRecorder,
        alerts: AlertNotifier,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.warehouse = warehouse
        self.audit = audit
        self.alerts = alerts
        self._clock = clock
        self._tables = {
            DAILY: config.warehouse.daily_aggregates_table,
            WEEKLY: config.warehouse.weekly_aggregates_table,
        }
        self._pending: set[Period] = set()
        self._consecutive_failures = {DAILY: 0, WEEKLY: 0}

    @property
    def pending_periods(self) -> list[Period]:
        return sorted(self._pending)

    async def run_daily(self, now: datetime | None = None) -> list[AggregationResult]:
        now = now or self._clock()
        return await self._run(DAILY, Period.daily(now.date() - timedelta(days=1)))

    async def run_weekly(self, now: datetime | None = None) -> list[AggregationResult]:
        now = now or self._clock()
        return await self._run(WEEKLY, Period.weekly(now.date() - timedelta(days=7)))

    async def aggregate(self, kind: str, start: date) -> int:
        """Recompute and replace one period. Raises on failure."""
        if kind not in self._tables:
            raise ValueError(f"Unknown aggregation kind: {kind}")
        period = Period.weekly(start) if kind == WEEKLY else Period.daily(start)
        rows = await self.warehouse.read_rows(period.start, period.last_day, include_deleted=False)
        compute = compute_weekly if kind == WEEKLY else compute_daily
        df = compute(rows, period)
        written = await self.warehouse.replace_aggregates(self._tables[kind], period.key, df)
        log_with_context(
            logger,
            logging.INFO,
            "Aggregates replaced",
            kind=kind,
            period_key=period.key,
            source_rows=rows.height,
            rows_written=written,
        )
        return written

    async def _run(self, kind: str, target: Period) -> list[AggregationResult]:
        periods = sorted({p for p in self._pending if p.kind == kind} | {target})
        results = [await self._run_period(period) for period in periods]

        if all(r.succeeded for r in results):
            self._consecutive_failures[kind] = 0
            return results

        self._consecutive_failures[kind] += 1
        failures = self._consecutive_failures[kind]
        if failures >= self.config.aggregation.alert_after_failures:
            failed = [r for r in results if not r.succeeded]
            await self.alerts.notify(
                Alert(
                    component=COMPONENT,
                    summary=(
                        f"{kind} aggregation failed {failures} runs in a row: "
                        f"{failed[-1].error}"
                    ),
                    partition=",".join(r.period_key for r in failed),
                )
            )
        return results

    async def _run_period(self, period: Period) -> AggregationResult:
        started_at = self._clock()
        try:
            written = await self.aggregate(period.kind, period.start)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._pending.add(period)
            error = f"{type(e).__name__}: {e}"[:1000]
            log_exception(
                logger,
                e,
                "Aggregation failed, period will be retried on next run",
                kind=period.kind,
                period_key=period.key,
            )
            await self._record(period, AuditStatus.FAILED, started_at, error_message=error)
            return AggregationResult(period.key, period.kind, succeeded=False, error=error)

        self._pending.discard(period)
        await self._record(
            period, AuditStatus.SUCCESS, started_at, details={"rows_written": written}
        )
        return AggregationResult(period.key, period.kind, succeeded=True, rows_written=written)

    async def _record(
        self,
        period: Period,
        status: AuditStatus,
        started_at: datetime,
        error_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        try:
            await self.audit.append(
                AuditEntry(
                    component=COMPONENT,
                    action=f"aggregate_{period.kind}",
                    status=status,
                    partition=period.key,
                    error_message=error_message,
                    started_at=started_at,
                    completed_at=max(self._clock(), started_at),
                    details=details or {},
                )
            )
        except Exception as e:
            log_exception(logger, e, "Failed to record aggregation audit entry")
