"""Shared fixtures for warehouse pipeline tests: in-memory fakes and envelope factories."""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from config.config import PipelineConfig
from warehouse_pipeline.audit.recorder import AuditRecorder
from warehouse_pipeline.common.alerts import LoggingAlertNotifier
from warehouse_pipeline.common.auth import SIGNATURE_HEADER, EnvelopeSigner
from warehouse_pipeline.common.dlq.store import InMemoryDeadLetterStore
from warehouse_pipeline.common.queue import InMemoryBroker
from warehouse_pipeline.common.storage.inmemory import InMemoryAuditSink, InMemoryWarehouse
from warehouse_pipeline.common.types import PipelineMessage
from warehouse_pipeline.lifecycle.manager import LifecycleManager
from warehouse_pipeline.schemas.envelope import EventEnvelope
from warehouse_pipeline.workers.pseudonymize import Pseudonymizer
from warehouse_pipeline.workers.sync_worker import SyncWorker

SALT = "unit-test-salt"
SIGNING_KEY = "unit-test-signing-key"
T0 = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock; advance() moves time forward."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Replaces asyncio.sleep in the worker; records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    config = PipelineConfig()
    config.queue.bootstrap_servers = "localhost:9092"
    config.worker.subject_hash_salt = SALT
    config.worker.envelope_signing_key = SIGNING_KEY
    config.validate()
    return config


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def warehouse() -> InMemoryWarehouse:
    return InMemoryWarehouse()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def audit(audit_sink) -> AuditRecorder:
    return AuditRecorder(audit_sink)


@pytest.fixture
def dead_letters() -> InMemoryDeadLetterStore:
    return InMemoryDeadLetterStore()


@pytest.fixture
def alerts() -> LoggingAlertNotifier:
    return LoggingAlertNotifier()


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def signer() -> EnvelopeSigner:
    return EnvelopeSigner(SIGNING_KEY)


@pytest.fixture
def pseudonymizer() -> Pseudonymizer:
    return Pseudonymizer(SALT)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def lifecycle(pipeline_config, warehouse, audit, alerts, pseudonymizer, clock) -> LifecycleManager:
    return LifecycleManager(
        pipeline_config.lifecycle, warehouse, audit, alerts, pseudonymizer, clock=clock
    )


@pytest.fixture
def worker(
    pipeline_config, warehouse, dead_letters, audit, alerts, lifecycle, signer, sleep, clock
) -> SyncWorker:
    return SyncWorker(
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


def session_payload(**overrides: Any) -> dict[str, Any]:
    payload = {
        "userId": "user-0001",
        "exerciseType": "squat",
        "status": "completed",
        "startTime": "2026-10-18T09:30:00Z",
        "endTime": "2026-10-18T09:45:00Z",
        "repCount": 30,
        "score": 85,
        "deviceInfo": {"platform": "ios", "osVersion": "18.0", "model": "iPhone16,1"},
        "appVersion": "3.3.0",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_envelope():
    def factory(
        event_id: str = "evt-1",
        document_id: str = "s-1",
        change_type: str = "create",
        occurred_at: datetime = T0,
        attempt_count: int = 0,
        collection: str = "users/user-0001/sessions",
        **payload_overrides: Any,
    ) -> EventEnvelope:
        return EventEnvelope(
            event_id=event_id,
            source_collection=collection,
            source_document_id=document_id,
            change_type=change_type,
            payload={} if change_type == "delete" else session_payload(**payload_overrides),
            occurred_at=occurred_at,
            attempt_count=attempt_count,
        )

    return factory


@pytest.fixture
def to_message(signer):
    """Wrap an envelope (or raw bytes) as a signed queue message."""
    offsets = iter(range(1_000_000))

    def factory(
        envelope: EventEnvelope | bytes,
        sign: bool = True,
        partition: int = 0,
    ) -> PipelineMessage:
        value = envelope if isinstance(envelope, bytes) else envelope.to_json_bytes()
        key = None if isinstance(envelope, bytes) else envelope.source_document_id.encode()
        headers = [(SIGNATURE_HEADER, signer.sign(value).encode())] if sign else None
        return PipelineMessage(
            topic="warehouse.events",
            partition=partition,
            offset=next(offsets),
            timestamp=0,
            key=key,
            value=value,
            headers=headers,
        )

    return factory
