"""
Tests for DeadLetterRecoveryService and the in-memory dead-letter store.

Recovery republishes with attemptCount reset and removes the entry only
after the publish succeeded.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from core.errors.exceptions import AuthorizationError, NotFoundError, TransientIOError
from core.types import ErrorCategory
from warehouse_pipeline.common.auth import SIGNATURE_HEADER, Principal
from warehouse_pipeline.common.queue import EnvelopePublisher
from warehouse_pipeline.dlq.recovery import COMPONENT, DeadLetterRecoveryService
from warehouse_pipeline.schemas.audit import AuditStatus
from warehouse_pipeline.schemas.dead_letter import DeadLetterMessage

ADMIN = Principal("ops", frozenset({"admin"}))
VIEWER = Principal("viewer", frozenset({"read"}))
FAILED_AT = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)


class FailingPublisher:
    async def publish_value(self, value, key, headers=None):
        raise TransientIOError("broker unavailable")


def dead_letter(envelope, failed_at=FAILED_AT):
    return DeadLetterMessage.from_envelope(
        envelope.with_attempt_count(3), "TransientIOError: down", failed_at, 3, ErrorCategory.TRANSIENT
    )


@pytest.fixture
def publisher(broker, signer):
    return EnvelopePublisher(broker, "warehouse.events", signer)


@pytest.fixture
def service(dead_letters, publisher, audit, clock):
    return DeadLetterRecoveryService(dead_letters, publisher, audit, clock=clock)


class TestInMemoryDeadLetterStore:
    @pytest.mark.asyncio
    async def test_publish_replaces_by_event_id(self, dead_letters, make_envelope):
        await dead_letters.publish(dead_letter(make_envelope()))
        await dead_letters.publish(dead_letter(make_envelope(), FAILED_AT + timedelta(hours=1)))

        assert len(dead_letters) == 1
        assert (await dead_letters.find("evt-1")).failed_at == FAILED_AT + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_list_oldest_first_with_limit(self, dead_letters, make_envelope):
        await dead_letters.publish(dead_letter(make_envelope(event_id="evt-2"), FAILED_AT + timedelta(minutes=1)))
        await dead_letters.publish(dead_letter(make_envelope(event_id="evt-1")))

        assert [m.event_id for m in await dead_letters.list_entries()] == ["evt-1", "evt-2"]
        assert [m.event_id for m in await dead_letters.list_entries(limit=1)] == ["evt-1"]

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, dead_letters):
        await dead_letters.remove("missing")
        assert len(dead_letters) == 0


class TestRecover:
    @pytest.mark.asyncio
    async def test_republishes_and_removes(self, service, dead_letters, broker, audit, signer, make_envelope):
        await dead_letters.publish(dead_letter(make_envelope()))

        result = await service.recover("evt-1", ADMIN)

        assert result.recovered
        assert "evt-1" not in dead_letters
        (message,) = broker.messages("warehouse.events")
        assert message.key == b"s-1"
        assert json.loads(message.value)["attemptCount"] == 0
        assert message.get_header("manual_recovery") == b"true"
        assert message.get_header("recovered_by") == b"ops"
        signer.verify(message.value, message.get_header(SIGNATURE_HEADER))

        (entry,) = await audit.read(component=COMPONENT)
        assert entry.action == "recover"
        assert entry.status == AuditStatus.SUCCESS
        assert entry.details["operator"] == "ops"

    @pytest.mark.asyncio
    async def test_raw_dead_letter_is_republished_verbatim(self, service, dead_letters, broker):
        raw = DeadLetterMessage.from_raw(b"{not json", "bad", FAILED_AT)
        await dead_letters.publish(raw)

        await service.recover(raw.event_id, ADMIN)

        (message,) = broker.messages("warehouse.events")
        assert message.value == b"{not json"
        assert message.key is None

    @pytest.mark.asyncio
    async def test_requires_admin(self, service, dead_letters, broker, make_envelope):
        await dead_letters.publish(dead_letter(make_envelope()))

        with pytest.raises(AuthorizationError):
            await service.recover("evt-1", VIEWER)
        with pytest.raises(AuthorizationError):
            await service.recover("evt-1", None)

        assert "evt-1" in dead_letters
        assert broker.messages("warehouse.events") == []

    @pytest.mark.asyncio
    async def test_unknown_event_id(self, service):
        with pytest.raises(NotFoundError):
            await service.recover("evt-404", ADMIN)

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_entry(self, dead_letters, audit, clock, make_envelope):
        service = DeadLetterRecoveryService(dead_letters, FailingPublisher(), audit, clock=clock)
        await dead_letters.publish(dead_letter(make_envelope()))

        with pytest.raises(TransientIOError):
            await service.recover("evt-1", ADMIN)

        assert "evt-1" in dead_letters
        (entry,) = await audit.read(component=COMPONENT)
        assert entry.status == AuditStatus.FAILED
        assert "broker unavailable" in entry.error_message


class TestBatchAndDiscard:
    @pytest.mark.asyncio
    async def test_recover_batch(self, service, dead_letters, broker, make_envelope):
        for i in range(3):
            await dead_letters.publish(
                dead_letter(make_envelope(event_id=f"evt-{i}"), FAILED_AT + timedelta(minutes=i))
            )

        report = await service.recover_batch(ADMIN, limit=2)

        assert (report.processed, report.succeeded, report.failed) == (2, 2, 0)
        assert [m.event_id for m in await dead_letters.list_entries()] == ["evt-2"]
        assert len(broker.messages("warehouse.events")) == 2

    @pytest.mark.asyncio
    async def test_recover_batch_requires_admin(self, service):
        with pytest.raises(AuthorizationError):
            await service.recover_batch(VIEWER)

    @pytest.mark.asyncio
    async def test_discard(self, service, dead_letters, broker, audit, make_envelope):
        await dead_letters.publish(dead_letter(make_envelope()))

        await service.discard("evt-1", ADMIN, reason="test data")

        assert len(dead_letters) == 0
        assert broker.messages("warehouse.events") == []
        (entry,) = await audit.read(component=COMPONENT, action="discard")
        assert entry.details["reason"] == "test data"

    @pytest.mark.asyncio
    async def test_list_messages(self, service, dead_letters, make_envelope):
        await dead_letters.publish(dead_letter(make_envelope()))
        assert [m.event_id for m in await service.list_messages()] == ["evt-1"]
