"""
Tests for InMemoryWarehouse and InMemoryAuditSink.

The in-memory warehouse must apply the same merge, soft-delete and purge
rules as DeltaWarehouse, since component tests run against it.
"""

from datetime import date, datetime, timedelta, timezone

import polars as pl
import pytest

from core.errors.exceptions import ValidationError
from warehouse_pipeline.audit.recorder import entries_to_frame
from warehouse_pipeline.common.storage.inmemory import InMemoryAuditSink, InMemoryWarehouse
from warehouse_pipeline.schemas.audit import AuditEntry, AuditStatus
from warehouse_pipeline.schemas.rows import WarehouseRow

T0 = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)


def make_row(
    event_id="evt-1", document_id="s-1", subject="hash-a", occurred_at=T0, collection="sessions", **fields
):
    return WarehouseRow(
        event_id=event_id,
        subject_hash=subject,
        source_collection=collection,
        source_document_id=document_id,
        occurred_at=occurred_at,
        partition_date=occurred_at.date(),
        ingested_at=occurred_at,
        **fields,
    )


@pytest.fixture
def store():
    return InMemoryWarehouse()


class TestUpsert:
    """Tests for the event_id merge rule."""

    @pytest.mark.asyncio
    async def test_insert_then_replace_with_later_write(self, store):
        assert await store.upsert_rows([make_row(score=80)]) == 1
        assert await store.upsert_rows([make_row(score=90, occurred_at=T0 + timedelta(seconds=1))]) == 1

        df = await store.read_rows()
        assert df.height == 1
        assert df["score"].to_list() == [90]

    @pytest.mark.asyncio
    async def test_equal_occurred_at_replaces(self, store):
        await store.upsert_rows([make_row(score=80)])
        await store.upsert_rows([make_row(score=81)])

        assert (await store.read_rows())["score"].to_list() == [81]

    @pytest.mark.asyncio
    async def test_older_write_is_ignored(self, store):
        await store.upsert_rows([make_row(score=90)])
        applied = await store.upsert_rows([make_row(score=10, occurred_at=T0 - timedelta(hours=1))])

        assert applied == 0
        assert (await store.read_rows())["score"].to_list() == [90]

    @pytest.mark.asyncio
    async def test_duplicates_within_batch_keep_latest(self, store):
        rows = [
            make_row(score=2, occurred_at=T0 + timedelta(minutes=2)),
            make_row(score=1, occurred_at=T0),
        ]
        assert await store.upsert_rows(rows) == 1
        assert (await store.read_rows())["score"].to_list() == [2]

    @pytest.mark.asyncio
    async def test_upsert_preserves_lifecycle_and_ingest_columns(self, store):
        await store.upsert_rows([make_row()])
        await store.soft_delete({"source_document_id": "s-1"}, T0)

        later = make_row(occurred_at=T0 + timedelta(minutes=1))
        later = later.model_copy(update={"ingested_at": T0 + timedelta(days=1)})
        await store.upsert_rows([later])

        row = (await store.read_rows()).row(0, named=True)
        assert row["is_deleted"] is True
        assert row["deleted_at"] == T0
        assert row["ingested_at"] == T0
        assert row["occurred_at"] == T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_empty_batch(self, store):
        assert await store.upsert_rows([]) == 0
        assert store.write_history == []


class TestSoftDeleteAndRestore:
    @pytest.mark.asyncio
    async def test_soft_delete_affects_active_rows_only(self, store):
        await store.upsert_rows([make_row("evt-1"), make_row("evt-2"), make_row("evt-3", subject="hash-b")])

        assert await store.soft_delete({"subject_hash": "hash-a"}, T0) == 2
        assert await store.soft_delete({"subject_hash": "hash-a"}, T0 + timedelta(days=1)) == 0

        deleted = (await store.read_rows()).filter(pl.col("is_deleted"))
        assert sorted(deleted["event_id"].to_list()) == ["evt-1", "evt-2"]
        assert deleted["deleted_at"].unique().to_list() == [T0]

    @pytest.mark.asyncio
    async def test_restore_only_recent_deletes(self, store):
        await store.upsert_rows([make_row("evt-1", document_id="s-1"), make_row("evt-2", document_id="s-2")])
        await store.soft_delete({"source_document_id": "s-1"}, T0)
        await store.soft_delete({"source_document_id": "s-2"}, T0 + timedelta(days=10))

        restored = await store.restore({"subject_hash": "hash-a"}, T0 + timedelta(days=5))

        assert restored == 1
        active = await store.read_rows(include_deleted=False)
        assert active["event_id"].to_list() == ["evt-2"]
        assert active["deleted_at"].to_list() == [None]

    @pytest.mark.asyncio
    async def test_match_requires_every_column(self, store):
        await store.upsert_rows(
            [
                make_row("evt-1", collection="users/a/sessions"),
                make_row("evt-2", collection="users/b/sessions", subject="hash-b"),
            ]
        )

        affected = await store.soft_delete(
            {"source_collection": "users/a/sessions", "source_document_id": "s-1"}, T0
        )

        assert affected == 1
        active = await store.read_rows(include_deleted=False)
        assert active["event_id"].to_list() == ["evt-2"]

    @pytest.mark.asyncio
    async def test_empty_match_is_rejected(self, store):
        await store.upsert_rows([make_row("evt-1")])

        with pytest.raises(ValueError):
            await store.soft_delete({}, T0)
        assert (await store.read_rows(include_deleted=False)).height == 1


class TestPartitions:
    @pytest.mark.asyncio
    async def test_list_and_filter_by_partition(self, store):
        await store.upsert_rows(
            [make_row("evt-1"), make_row("evt-2", occurred_at=T0 + timedelta(days=2))]
        )

        assert await store.list_partitions() == [date(2026, 10, 18), date(2026, 10, 20)]
        df = await store.read_rows(start=date(2026, 10, 19), end=date(2026, 10, 20))
        assert df["event_id"].to_list() == ["evt-2"]

    @pytest.mark.asyncio
    async def test_purge_soft_deleted_before_cutoff(self, store):
        await store.upsert_rows(
            [make_row("evt-1", document_id="s-1"), make_row("evt-2", document_id="s-2"), make_row("evt-3", document_id="s-3")]
        )
        await store.soft_delete({"source_document_id": "s-1"}, T0)
        await store.soft_delete({"source_document_id": "s-2"}, T0 + timedelta(days=1))

        purged = await store.purge_partition(date(2026, 10, 18), T0 + timedelta(hours=1))

        assert purged == 1
        assert sorted((await store.read_rows())["event_id"].to_list()) == ["evt-2", "evt-3"]

    @pytest.mark.asyncio
    async def test_expire_whole_partition(self, store):
        await store.upsert_rows(
            [make_row("evt-1"), make_row("evt-2", occurred_at=T0 + timedelta(days=1))]
        )

        assert await store.purge_partition(date(2026, 10, 18), None) == 1
        assert await store.list_partitions() == [date(2026, 10, 19)]


class TestAggregates:
    @pytest.mark.asyncio
    async def test_replace_is_per_period(self, store):
        first = pl.DataFrame({"period_key": ["2026-10-17", "2026-10-17"], "sessions": [1, 2]})
        second = pl.DataFrame({"period_key": ["2026-10-18"], "sessions": [5]})
        rerun = pl.DataFrame({"period_key": ["2026-10-17"], "sessions": [9]})

        await store.replace_aggregates("daily", "2026-10-17", first)
        await store.replace_aggregates("daily", "2026-10-18", second)
        await store.replace_aggregates("daily", "2026-10-17", rerun)

        assert (await store.read_aggregates("daily", "2026-10-17"))["sessions"].to_list() == [9]
        assert (await store.read_aggregates("daily"))["sessions"].sum() == 14

    @pytest.mark.asyncio
    async def test_rows_outside_period_rejected(self, store):
        df = pl.DataFrame({"period_key": ["2026-10-17", "2026-10-18"], "sessions": [1, 2]})
        with pytest.raises(ValidationError):
            await store.replace_aggregates("daily", "2026-10-17", df)

    @pytest.mark.asyncio
    async def test_unknown_table_reads_empty(self, store):
        assert (await store.read_aggregates("missing")).is_empty()


class TestAuditSink:
    @pytest.mark.asyncio
    async def test_append_read_and_expire(self):
        sink = InMemoryAuditSink()
        old = AuditEntry(
            component="c", action="a", status=AuditStatus.SUCCESS,
            started_at=T0 - timedelta(days=100), completed_at=T0 - timedelta(days=100),
        )
        new = AuditEntry(
            component="c", action="a", status=AuditStatus.SUCCESS,
            started_at=T0, completed_at=T0,
        )
        await sink.append(entries_to_frame([old, new]))

        assert (await sink.read()).height == 2
        assert await sink.expire_before(date(2026, 10, 1)) == 1
        assert (await sink.read())["log_id"].to_list() == [new.log_id]
