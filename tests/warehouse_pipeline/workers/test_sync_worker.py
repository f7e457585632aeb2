"""
Tests for SyncWorker message handling.

Covers pseudonymization, upsert by event id, local retry with backoff,
dead-lettering, recovery and the pipeline log entries each path writes.
"""

import asyncio
import json
from dataclasses import replace
from datetime import timedelta

import pytest

from core.errors.exceptions import TransientIOError
from core.types import ErrorCategory
from warehouse_pipeline.common.auth import Principal
from warehouse_pipeline.common.queue import EnvelopePublisher
from warehouse_pipeline.common.storage.inmemory import InMemoryWarehouse
from warehouse_pipeline.common.types import Disposition
from warehouse_pipeline.dlq.recovery import DeadLetterRecoveryService
from warehouse_pipeline.schemas.audit import AuditStatus
from warehouse_pipeline.workers.sync_worker import ACTION, COMPONENT, SyncWorker

ADMIN = Principal(subject="ops", roles=frozenset({"admin"}))


class FlakyWarehouse(InMemoryWarehouse):
    """In-memory warehouse whose next ``fail_next`` upserts raise."""

    def __init__(self):
        super().__init__()
        self.fail_next = 0
        self.upsert_calls = 0

    async def upsert_rows(self, rows):
        self.upsert_calls += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise TransientIOError("warehouse unavailable")
        return await super().upsert_rows(rows)


class BrokenDeadLetterStore:
    async def publish(self, message):
        raise TransientIOError("dead-letter topic unavailable")


@pytest.fixture
def warehouse():
    return FlakyWarehouse()


async def pipeline_log(audit, event_id):
    return await audit.read(event_id=event_id, component=COMPONENT, action=ACTION)


def statuses(entries):
    return [e.status for e in entries]


class TestPseudonymization:
    """Subject ids are hashed before anything reaches the warehouse."""

    @pytest.mark.asyncio
    async def test_row_carries_hmac_of_user_id(
        self, worker, warehouse, pseudonymizer, make_envelope, to_message
    ):
        disposition = await worker.handle(to_message(make_envelope()))

        assert disposition == Disposition.ACK
        rows = await warehouse.read_rows()
        assert rows.height == 1
        row = rows.row(0, named=True)
        assert row["subject_hash"] == pseudonymizer.hash("user-0001")
        assert len(row["subject_hash"]) == 64
        assert row["device_model_hash"] == pseudonymizer.hash("iPhone16,1")
        assert row["source_collection"] == f"users/{row['subject_hash']}/sessions"
        stored = " ".join(str(v) for v in row.values())
        assert "user-0001" not in stored
        assert "iPhone16,1" not in stored

    @pytest.mark.asyncio
    async def test_same_subject_same_hash_across_events(
        self, worker, warehouse, make_envelope, to_message
    ):
        await worker.handle(to_message(make_envelope(event_id="evt-1", document_id="s-1")))
        await worker.handle(to_message(make_envelope(event_id="evt-2", document_id="s-2")))

        rows = await warehouse.read_rows()
        assert rows["subject_hash"].n_unique() == 1

    @pytest.mark.asyncio
    async def test_subject_falls_back_to_collection_path(
        self, worker, warehouse, pseudonymizer, make_envelope, to_message
    ):
        envelope = make_envelope(collection="users/user-0042/sessions", userId=None)

        assert await worker.handle(to_message(envelope)) == Disposition.ACK
        rows = await warehouse.read_rows()
        assert rows["subject_hash"][0] == pseudonymizer.hash("user-0042")

    @pytest.mark.asyncio
    async def test_region_and_partition_date(self, worker, warehouse, make_envelope, to_message):
        await worker.handle(to_message(make_envelope()))

        row = (await warehouse.read_rows()).row(0, named=True)
        assert row["region"] == "JP"
        assert str(row["partition_date"]) == "2026-10-18"
        assert row["duration_seconds"] == 900.0


class TestUpsertByEventId:
    """Redelivery never duplicates a row; the later change wins."""

    @pytest.mark.asyncio
    async def test_redelivered_envelope_yields_one_row(
        self, worker, warehouse, audit, make_envelope, to_message
    ):
        envelope = make_envelope(score=85)

        assert await worker.handle(to_message(envelope)) == Disposition.ACK
        assert await worker.handle(to_message(envelope)) == Disposition.ACK

        rows = await warehouse.read_rows()
        assert rows.height == 1
        assert rows["score"][0] == 85
        assert statuses(await pipeline_log(audit, "evt-1")) == [
            AuditStatus.SUCCESS,
            AuditStatus.SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_later_occurred_at_wins(self, worker, warehouse, make_envelope, to_message, clock):
        first = make_envelope(score=85, occurred_at=clock.now)
        later = make_envelope(score=92, occurred_at=clock.now + timedelta(minutes=5))

        await worker.handle(to_message(first))
        await worker.handle(to_message(later))

        rows = await warehouse.read_rows()
        assert rows.height == 1
        assert rows["score"][0] == 92

    @pytest.mark.asyncio
    async def test_stale_redelivery_does_not_overwrite(
        self, worker, warehouse, make_envelope, to_message, clock
    ):
        later = make_envelope(score=92, occurred_at=clock.now + timedelta(minutes=5))
        stale = make_envelope(score=70, occurred_at=clock.now)

        await worker.handle(to_message(later))
        assert await worker.handle(to_message(stale)) == Disposition.ACK

        rows = await warehouse.read_rows()
        assert rows["score"].to_list() == [92]


class TestRetry:
    """Retryable failures back off 1s, 2s within the message's task."""

    @pytest.mark.asyncio
    async def test_two_failures_then_success(
        self, worker, warehouse, audit, sleep, make_envelope, to_message
    ):
        warehouse.fail_next = 2

        disposition = await worker.handle(to_message(make_envelope()))

        assert disposition == Disposition.ACK
        assert sleep.delays == [1.0, 2.0]
        assert warehouse.upsert_calls == 3
        entries = await pipeline_log(audit, "evt-1")
        assert statuses(entries) == [
            AuditStatus.RETRYING,
            AuditStatus.RETRYING,
            AuditStatus.SUCCESS,
        ]
        assert [e.retry_count for e in entries] == [1, 2, 2]
        assert entries[0].error_message.startswith("TransientIOError")
        assert (await warehouse.read_rows()).height == 1

    @pytest.mark.asyncio
    async def test_exhausted_budget_dead_letters(
        self, worker, warehouse, audit, alerts, dead_letters, sleep, make_envelope, to_message
    ):
        warehouse.fail_next = 3

        disposition = await worker.handle(to_message(make_envelope()))

        assert disposition == Disposition.DEAD_LETTER
        assert sleep.delays == [1.0, 2.0]
        assert statuses(await pipeline_log(audit, "evt-1")) == [
            AuditStatus.RETRYING,
            AuditStatus.RETRYING,
            AuditStatus.FAILED,
        ]
        dead_letter = await dead_letters.find("evt-1")
        assert dead_letter.retry_count == 3
        assert dead_letter.attempt_count == 3
        assert dead_letter.error_category == ErrorCategory.TRANSIENT
        assert len(alerts.sent) == 1
        assert alerts.sent[0].event_id == "evt-1"
        assert (await warehouse.read_rows()).height == 0

    @pytest.mark.asyncio
    async def test_redelivery_resumes_attempt_budget(
        self, worker, warehouse, dead_letters, sleep, make_envelope, to_message
    ):
        warehouse.fail_next = 1

        disposition = await worker.handle(to_message(make_envelope(attempt_count=2)))

        assert disposition == Disposition.DEAD_LETTER
        assert sleep.delays == []
        assert (await dead_letters.find("evt-1")).retry_count == 3

    @pytest.mark.asyncio
    async def test_recovered_message_is_processed_once(
        self, worker, warehouse, audit, dead_letters, broker, signer, make_envelope, to_message, clock
    ):
        warehouse.fail_next = 3
        await worker.handle(to_message(make_envelope()))
        assert "evt-1" in dead_letters

        publisher = EnvelopePublisher(broker, "warehouse.events", signer)
        service = DeadLetterRecoveryService(dead_letters, publisher, audit, clock=clock)
        await service.recover("evt-1", ADMIN)

        assert "evt-1" not in dead_letters
        (republished,) = broker.messages("warehouse.events")
        assert await worker.handle(republished) == Disposition.ACK

        entries = await pipeline_log(audit, "evt-1")
        assert statuses(entries) == [
            AuditStatus.RETRYING,
            AuditStatus.RETRYING,
            AuditStatus.FAILED,
            AuditStatus.SUCCESS,
        ]
        assert entries[-1].retry_count == 0
        assert (await warehouse.read_rows()).height == 1


class TestRejection:
    """Non-retryable input goes straight to the dead-letter topic."""

    @pytest.mark.asyncio
    async def test_malformed_json(self, worker, dead_letters, audit, sleep, to_message):
        disposition = await worker.handle(to_message(b"{not json"))

        assert disposition == Disposition.DEAD_LETTER
        assert sleep.delays == []
        (entry,) = await dead_letters.list_entries()
        assert entry.event_id.startswith("raw-")
        assert entry.raw_value == "{not json"
        assert entry.error_category == ErrorCategory.PERMANENT
        assert statuses(await pipeline_log(audit, entry.event_id)) == [AuditStatus.FAILED]

    @pytest.mark.asyncio
    async def test_schema_violation(self, worker, warehouse, dead_letters, make_envelope, to_message):
        envelope = make_envelope(unexpectedField="x")

        assert await worker.handle(to_message(envelope)) == Disposition.DEAD_LETTER
        assert (await dead_letters.find("evt-1")).retry_count == 0
        assert (await warehouse.read_rows()).height == 0

    @pytest.mark.asyncio
    async def test_malformed_envelope_reason_holds_no_values(
        self, worker, dead_letters, audit, alerts, to_message
    ):
        raw = json.dumps(
            {
                "eventId": "evt-9",
                "sourceCollection": "users/bob-77/sessions",
                "changeType": "create",
                "payload": {"userId": "bob-77"},
                "occurredAt": "bob-77",
            }
        ).encode()

        assert await worker.handle(to_message(raw)) == Disposition.DEAD_LETTER

        dead_letter = await dead_letters.find("evt-9")
        assert "sourceDocumentId: missing" in dead_letter.failure_reason
        assert "bob-77" not in dead_letter.failure_reason
        (entry,) = await pipeline_log(audit, "evt-9")
        assert entry.status == AuditStatus.FAILED
        assert "bob-77" not in entry.model_dump_json()
        assert "bob-77" not in alerts.sent[0].summary

    @pytest.mark.asyncio
    async def test_payload_violation_reason_holds_no_values(
        self, worker, dead_letters, audit, make_envelope, to_message
    ):
        envelope = make_envelope(userId="bob-77", score="bob-77-score")

        assert await worker.handle(to_message(envelope)) == Disposition.DEAD_LETTER

        dead_letter = await dead_letters.find("evt-1")
        assert "score: float_parsing" in dead_letter.failure_reason
        assert "bob-77" not in dead_letter.failure_reason
        (entry,) = await pipeline_log(audit, "evt-1")
        assert "bob-77" not in entry.error_message

    @pytest.mark.asyncio
    async def test_unknown_collection(self, worker, dead_letters, make_envelope, to_message):
        envelope = make_envelope(collection="users/user-0001/meals")

        assert await worker.handle(to_message(envelope)) == Disposition.DEAD_LETTER
        assert "evt-1" in dead_letters

    @pytest.mark.asyncio
    async def test_missing_signature(self, worker, dead_letters, make_envelope, to_message):
        disposition = await worker.handle(to_message(make_envelope(), sign=False))

        assert disposition == Disposition.DEAD_LETTER
        assert (await dead_letters.find("evt-1")).error_category == ErrorCategory.AUTH

    @pytest.mark.asyncio
    async def test_tampered_value(self, worker, dead_letters, make_envelope, to_message):
        message = to_message(make_envelope(score=85))
        tampered = make_envelope(score=100).to_json_bytes()
        forged = replace(message, value=tampered)

        assert await worker.handle(forged) == Disposition.DEAD_LETTER
        assert "evt-1" in dead_letters

    @pytest.mark.asyncio
    async def test_dead_letter_publish_failure_nacks(
        self, pipeline_config, warehouse, audit, alerts, lifecycle, signer, sleep, clock, to_message
    ):
        worker = SyncWorker(
            config=pipeline_config,
            warehouse=warehouse,
            dead_letters=BrokenDeadLetterStore(),
            audit=audit,
            alerts=alerts,
            lifecycle=lifecycle,
            signer=signer,
            sleep=sleep,
            clock=clock,
        )

        assert await worker.handle(to_message(b"garbage")) == Disposition.NACK
        assert alerts.sent == []
        assert await audit.read(component=COMPONENT) == []


class TestDeletes:
    @pytest.mark.asyncio
    async def test_delete_envelope_soft_deletes_document(
        self, worker, warehouse, make_envelope, to_message, clock
    ):
        await worker.handle(to_message(make_envelope(event_id="evt-1")))
        deleted_at = clock.now + timedelta(hours=1)
        delete = make_envelope(event_id="evt-2", change_type="delete", occurred_at=deleted_at)

        assert await worker.handle(to_message(delete)) == Disposition.ACK

        row = (await warehouse.read_rows()).row(0, named=True)
        assert row["is_deleted"] is True
        assert row["deleted_at"] == deleted_at

    @pytest.mark.asyncio
    async def test_upsert_after_delete_keeps_deleted_flag(
        self, worker, warehouse, make_envelope, to_message, clock
    ):
        await worker.handle(to_message(make_envelope(event_id="evt-1")))
        await worker.handle(
            to_message(make_envelope(event_id="evt-2", change_type="delete", occurred_at=clock.now))
        )
        await worker.handle(
            to_message(make_envelope(event_id="evt-1", occurred_at=clock.now + timedelta(minutes=1)))
        )

        rows = await warehouse.read_rows(include_deleted=False)
        assert rows.height == 0

    @pytest.mark.asyncio
    async def test_delete_is_scoped_to_its_collection(
        self, worker, warehouse, pseudonymizer, make_envelope, to_message, clock
    ):
        await worker.handle(to_message(make_envelope(event_id="evt-a", document_id="s-1")))
        await worker.handle(
            to_message(
                make_envelope(
                    event_id="evt-b",
                    document_id="s-1",
                    collection="users/user-0002/sessions",
                    userId="user-0002",
                )
            )
        )
        delete = make_envelope(
            event_id="evt-c",
            document_id="s-1",
            change_type="delete",
            occurred_at=clock.now + timedelta(hours=1),
        )

        assert await worker.handle(to_message(delete)) == Disposition.ACK

        rows = await warehouse.read_rows()
        deleted = dict(zip(rows["event_id"].to_list(), rows["is_deleted"].to_list()))
        assert deleted == {"evt-a": True, "evt-b": False}
        other = rows.filter(rows["event_id"] == "evt-b").row(0, named=True)
        assert other["subject_hash"] == pseudonymizer.hash("user-0002")


class BlockingSleep:
    """Holds the caller in backoff until ``release`` is set."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.entered.set()
        await self.release.wait()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_duplicate_delivery_yields_one_row(
        self, worker, warehouse, audit, make_envelope, to_message
    ):
        envelope = make_envelope(score=85)

        results = await asyncio.gather(
            worker.handle(to_message(envelope)),
            worker.handle(to_message(envelope)),
        )

        assert results == [Disposition.ACK, Disposition.ACK]
        rows = await warehouse.read_rows()
        assert rows.height == 1
        assert rows["score"][0] == 85
        assert statuses(await pipeline_log(audit, "evt-1")) == [
            AuditStatus.SUCCESS,
            AuditStatus.SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_backoff_does_not_block_other_messages(
        self, pipeline_config, warehouse, dead_letters, audit, alerts, lifecycle, signer, clock,
        make_envelope, to_message,
    ):
        sleep = BlockingSleep()
        worker = SyncWorker(
            config=pipeline_config,
            warehouse=warehouse,
            dead_letters=dead_letters,
            audit=audit,
            alerts=alerts,
            lifecycle=lifecycle,
            signer=signer,
            sleep=sleep,
            clock=clock,
        )
        warehouse.fail_next = 1

        retrying = asyncio.create_task(
            worker.handle(to_message(make_envelope(event_id="evt-1", document_id="s-1")))
        )
        await sleep.entered.wait()

        other = make_envelope(event_id="evt-2", document_id="s-2")
        assert await worker.handle(to_message(other)) == Disposition.ACK
        assert not retrying.done()
        assert (await warehouse.read_rows())["event_id"].to_list() == ["evt-2"]

        sleep.release.set()
        assert await retrying == Disposition.ACK
        assert sorted((await warehouse.read_rows())["event_id"].to_list()) == ["evt-1", "evt-2"]
