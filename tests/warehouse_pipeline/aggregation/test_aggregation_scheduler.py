"""
Tests for daily/weekly aggregation.

Aggregates are recomputed from active rows (latest version per document)
and replace the period atomically; reruns must produce identical bytes.
"""

from datetime import date, datetime, timedelta, timezone

import polars as pl
import pytest

from core.errors.exceptions import TransientIOError
from warehouse_pipeline.aggregation.scheduler import (
    COMPONENT,
    AggregationScheduler,
    Period,
    latest_per_document,
)
from warehouse_pipeline.common.storage.inmemory import InMemoryWarehouse
from warehouse_pipeline.schemas.audit import AuditStatus
from warehouse_pipeline.schemas.rows import WarehouseRow

UTC = timezone.utc
DAY = date(2026, 10, 17)
DAILY_RUN = datetime(2026, 10, 18, 2, 0, tzinfo=UTC)
WEEKLY_RUN = datetime(2026, 10, 19, 3, 0, tzinfo=UTC)


class FailingAggregatesWarehouse(InMemoryWarehouse):
    def __init__(self):
        super().__init__()
        self.fail = False

    async def replace_aggregates(self, table_name, period_key, df):
        if self.fail:
            raise TransientIOError("commit conflict")
        return await super().replace_aggregates(table_name, period_key, df)


def row(event_id, document_id, subject, day=DAY, minute=0, collection="sessions", **fields):
    occurred_at = datetime(day.year, day.month, day.day, 9, minute, tzinfo=UTC)
    defaults = {
        "exercise_type": "squat",
        "device_platform": "ios",
        "status": "completed",
        "duration_seconds": 600.0,
        "rep_count": 20,
        "score": 80.0,
    }
    defaults.update(fields)
    return WarehouseRow(
        event_id=event_id,
        subject_hash=subject,
        source_collection=collection,
        source_document_id=document_id,
        occurred_at=occurred_at,
        partition_date=day,
        ingested_at=occurred_at,
        **defaults,
    )


@pytest.fixture
def warehouse():
    return FailingAggregatesWarehouse()


@pytest.fixture
def scheduler(pipeline_config, warehouse, audit, alerts, clock):
    return AggregationScheduler(pipeline_config, warehouse, audit, alerts, clock=clock)


@pytest.fixture
def daily_table(pipeline_config):
    return pipeline_config.warehouse.daily_aggregates_table


@pytest.fixture
def weekly_table(pipeline_config):
    return pipeline_config.warehouse.weekly_aggregates_table


class TestPeriod:
    def test_daily_key_and_generated_at(self):
        period = Period.daily(DAY)
        assert period.key == "2026-10-17"
        assert period.last_day == DAY
        assert period.generated_at == datetime(2026, 10, 18, tzinfo=UTC)

    def test_weekly_starts_monday(self):
        period = Period.weekly(date(2026, 10, 15))
        assert period.start == date(2026, 10, 12)
        assert period.last_day == date(2026, 10, 18)
        assert period.key == "2026-W42"
        assert period.generated_at == datetime(2026, 10, 19, tzinfo=UTC)


def test_latest_per_document():
    df = pl.DataFrame(
        {
            "source_collection": ["sessions", "sessions", "sessions", "workouts"],
            "source_document_id": ["s-1", "s-1", "s-2", "s-1"],
            "event_id": ["a", "b", "c", "d"],
            "occurred_at": [2, 1, 1, 1],
        }
    )
    assert sorted(latest_per_document(df)["event_id"].to_list()) == ["a", "c", "d"]


class TestDaily:
    @pytest.mark.asyncio
    async def test_aggregates_yesterday(self, scheduler, warehouse, daily_table):
        await warehouse.upsert_rows(
            [
                row("evt-1", "s-1", "hash-a", score=70.0),
                row("evt-2", "s-2", "hash-a", score=90.0),
                row("evt-3", "s-3", "hash-b", device_platform="android"),
                row("evt-4", "s-4", "hash-c", day=DAY + timedelta(days=1)),
            ]
        )

        (result,) = await scheduler.run_daily(DAILY_RUN)

        assert result.succeeded
        assert result.period_key == "2026-10-17"
        df = await warehouse.read_aggregates(daily_table, "2026-10-17")
        assert df["device_platform"].to_list() == ["android", "ios"]
        ios = df.row(1, named=True)
        assert ios["total_sessions"] == 2
        assert ios["total_users"] == 1
        assert ios["average_score"] == 80.0
        assert ios["total_duration_seconds"] == 1200.0
        assert ios["generated_at"] == datetime(2026, 10, 18, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_region_is_a_dimension(self, scheduler, warehouse, daily_table):
        await warehouse.upsert_rows(
            [
                row("evt-1", "s-1", "hash-a", region="JP"),
                row("evt-2", "s-2", "hash-b", region="US"),
                row("evt-3", "s-3", "hash-c", region="US"),
            ]
        )

        await scheduler.run_daily(DAILY_RUN)

        df = await warehouse.read_aggregates(daily_table, "2026-10-17")
        assert df["region"].to_list() == ["JP", "US"]
        assert df["total_sessions"].to_list() == [1, 2]

    @pytest.mark.asyncio
    async def test_same_document_id_in_other_collection_counts_separately(
        self, scheduler, warehouse, daily_table
    ):
        await warehouse.upsert_rows(
            [
                row("evt-1", "s-1", "hash-a"),
                row("evt-2", "s-1", "hash-b", collection="users/other/sessions"),
            ]
        )

        await scheduler.run_daily(DAILY_RUN)

        (agg,) = (await warehouse.read_aggregates(daily_table, "2026-10-17")).iter_rows(named=True)
        assert agg["total_sessions"] == 2
        assert agg["total_users"] == 2

    @pytest.mark.asyncio
    async def test_latest_version_and_active_rows_only(self, scheduler, warehouse, daily_table):
        await warehouse.upsert_rows(
            [
                row("evt-1", "s-1", "hash-a", score=50.0),
                row("evt-2", "s-1", "hash-a", minute=5, score=95.0),
                row("evt-3", "s-3", "hash-b", score=10.0),
            ]
        )
        await warehouse.soft_delete({"source_document_id": "s-3"}, DAILY_RUN)

        await scheduler.run_daily(DAILY_RUN)

        (agg,) = (await warehouse.read_aggregates(daily_table, "2026-10-17")).iter_rows(named=True)
        assert agg["total_sessions"] == 1
        assert agg["average_score"] == 95.0

    @pytest.mark.asyncio
    async def test_rerun_is_byte_identical(self, scheduler, warehouse, daily_table, clock):
        await warehouse.upsert_rows(
            [row(f"evt-{i}", f"s-{i}", f"hash-{i % 3}", score=60.0 + i / 3) for i in range(10)]
        )

        await scheduler.aggregate("daily", DAY)
        first = await warehouse.read_aggregates(daily_table, "2026-10-17")
        clock.advance(hours=5)
        await scheduler.aggregate("daily", DAY)
        second = await warehouse.read_aggregates(daily_table, "2026-10-17")

        assert first.write_csv() == second.write_csv()
        assert first.equals(second)
        assert (await warehouse.read_aggregates(daily_table)).height == first.height

    @pytest.mark.asyncio
    async def test_empty_period_replaces_with_nothing(self, scheduler, warehouse, daily_table):
        (result,) = await scheduler.run_daily(DAILY_RUN)
        assert result.succeeded
        assert result.rows_written == 0


class TestWeekly:
    @pytest.mark.asyncio
    async def test_aggregates_last_iso_week(self, scheduler, warehouse, weekly_table):
        await warehouse.upsert_rows(
            [
                row("evt-1", "s-1", "hash-a", day=date(2026, 10, 12)),
                row("evt-2", "s-2", "hash-a", day=date(2026, 10, 18)),
                row("evt-3", "s-3", "hash-b", day=date(2026, 10, 14), exercise_type="plank"),
                row("evt-4", "s-4", "hash-b", day=date(2026, 10, 19)),
            ]
        )

        (result,) = await scheduler.run_weekly(WEEKLY_RUN)

        assert result.period_key == "2026-W42"
        df = await warehouse.read_aggregates(weekly_table, "2026-W42")
        assert df["exercise_type"].to_list() == ["plank", "squat"]
        assert df["total_sessions"].to_list() == [1, 2]
        assert df["unique_users"].to_list() == [1, 1]


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_period_is_retried_next_run(self, scheduler, warehouse, audit, daily_table):
        await warehouse.upsert_rows([row("evt-1", "s-1", "hash-a")])
        warehouse.fail = True

        (failed,) = await scheduler.run_daily(DAILY_RUN)
        assert not failed.succeeded
        assert "commit conflict" in failed.error
        assert [p.key for p in scheduler.pending_periods] == ["2026-10-17"]

        warehouse.fail = False
        results = await scheduler.run_daily(DAILY_RUN + timedelta(days=1))

        assert [r.period_key for r in results] == ["2026-10-17", "2026-10-18"]
        assert all(r.succeeded for r in results)
        assert scheduler.pending_periods == []
        assert (await warehouse.read_aggregates(daily_table, "2026-10-17")).height == 1

        entries = await audit.read(component=COMPONENT)
        assert [e.status for e in entries] == [
            AuditStatus.FAILED,
            AuditStatus.SUCCESS,
            AuditStatus.SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_previous_aggregates_survive_failure(self, scheduler, warehouse, daily_table):
        await warehouse.upsert_rows([row("evt-1", "s-1", "hash-a")])
        await scheduler.run_daily(DAILY_RUN)
        before = await warehouse.read_aggregates(daily_table, "2026-10-17")

        await warehouse.upsert_rows([row("evt-2", "s-2", "hash-b")])
        warehouse.fail = True
        await scheduler.run_daily(DAILY_RUN)

        assert (await warehouse.read_aggregates(daily_table, "2026-10-17")).equals(before)

    @pytest.mark.asyncio
    async def test_alert_after_consecutive_failures(self, scheduler, warehouse, alerts):
        warehouse.fail = True

        await scheduler.run_daily(DAILY_RUN)
        await scheduler.run_daily(DAILY_RUN)
        assert alerts.sent == []

        await scheduler.run_daily(DAILY_RUN)
        (alert,) = alerts.sent
        assert alert.component == COMPONENT
        assert alert.partition == "2026-10-17"

    @pytest.mark.asyncio
    async def test_unknown_kind(self, scheduler):
        with pytest.raises(ValueError):
            await scheduler.aggregate("monthly", DAY)
