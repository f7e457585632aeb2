"""
Sync Worker - pseudonymizes change envelopes and upserts them into the warehouse.

Consumes signed EventEnvelopes from the events topic and, per message:
1. Parses and validates the envelope and its payload, verifies the signature
2. Hashes the subject id (HMAC-SHA256 under the secret salt)
3. Builds the warehouse row and upserts it keyed by event_id
   (delete envelopes soft-delete the document's rows instead)
4. Records one pipeline log entry

Retry behaviour:
- Retryable failures (transient, unclassified) back off 1s, 2s, ... within
  the message's own task, writing a ``retrying`` entry before each wait
- After max_attempts, or at once for non-retryable failures (malformed
  envelope, schema violation, bad signature), the message goes to the
  dead-letter topic, a ``failed`` entry is written and an alert fires
- A redelivered envelope resumes its budget from attemptCount
- If the dead-letter publish fails the message is NACKed for redelivery

Consumer group: warehouse-sync-worker
Input topic: warehouse.events
DLQ topic: warehouse.events.dlq
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

import pydantic

from config.config import PipelineConfig
from core.errors.exceptions import (
    PipelineError,
    ValidationError,
    classify_exception,
    describe_validation_error,
)
from core.logging import MessageLogContext, log_exception, log_with_context, log_worker_startup
from core.resilience import RetryConfig
from core.utils import utc_now
from warehouse_pipeline.audit.recorder import AuditRecorder
from warehouse_pipeline.common.alerts import Alert, AlertNotifier
from warehouse_pipeline.common.auth import SIGNATURE_HEADER, EnvelopeSigner
from warehouse_pipeline.common.consumer import MessageConsumer
from warehouse_pipeline.common.dlq.store import DeadLetterStore
from warehouse_pipeline.common.metrics import (
    record_event_processed,
    record_retry,
    record_warehouse_write,
)
from warehouse_pipeline.common.storage.warehouse import Warehouse
from warehouse_pipeline.common.types import Disposition, PipelineMessage
from warehouse_pipeline.lifecycle.manager import LifecycleManager
from warehouse_pipeline.schemas.audit import AuditEntry, AuditStatus
from warehouse_pipeline.schemas.dead_letter import DeadLetterMessage
from warehouse_pipeline.schemas.envelope import ChangeType, EventEnvelope, parse_envelope
from warehouse_pipeline.schemas.payloads import SessionPayload, validate_payload
from warehouse_pipeline.workers.pseudonymize import Pseudonymizer
from warehouse_pipeline.workers.transform import build_row

logger = logging.getLogger(__name__)

COMPONENT = "sync_worker"
ACTION = "process"


class SyncWorker:
    """
    Worker turning change envelopes into pseudonymized warehouse rows.

    Usage:
        >>> worker = SyncWorker(
        ...     config=config,
        ...     warehouse=DeltaWarehouse(config.warehouse),
        ...     dead_letters=KafkaDeadLetterStore(config.queue, producer),
        ...     audit=AuditRecorder(DeltaAuditSink(config.warehouse)),
        ...     alerts=create_alert_notifier(config.alerts),
        ...     lifecycle=lifecycle_manager,
        ... )
        >>> await worker.start()  # runs until stop()
    """

    WORKER_NAME = "sync_worker"

    def __init__(
        self,
        config: PipelineConfig,
        warehouse: Warehouse,
        dead_letters: DeadLetterStore,
        audit: AuditRecorder,
        alerts: AlertNotifier,
        lifecycle: LifecycleManager,
        pseudonymizer: Pseudonymizer | None = None,
        signer: EnvelopeSigner | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.warehouse = warehouse
        self.dead_letters = dead_letters
        self.audit = audit
        self.alerts = alerts
        self.lifecycle = lifecycle
        self.pseudonymizer = pseudonymizer or Pseudonymizer(config.worker.subject_hash_salt)
        if signer is None and config.worker.require_signature:
            signer = EnvelopeSigner(config.worker.envelope_signing_key)
        self.signer = signer
        self.retry = RetryConfig(
            max_attempts=config.worker.max_attempts,
            base_delay=config.worker.base_delay_seconds,
            max_delay=config.worker.max_delay_seconds,
        )
        self._sleep = sleep
        self._clock = clock
        self._consumer: MessageConsumer | None = None

    async def start(self) -> None:
        log_worker_startup(
            logger,
            "Sync Worker",
            bootstrap_servers=self.config.queue.bootstrap_servers,
            input_topic=self.config.queue.events_topic,
            consumer_group=self.config.queue.consumer_group,
            extra_config={
                "dead_letter_topic": self.config.queue.dead_letter_topic,
                "max_attempts": self.retry.max_attempts,
                "max_concurrency": self.config.worker.max_concurrency,
            },
        )
        self._consumer = MessageConsumer(
            config=self.config.queue,
            topics=[self.config.queue.events_topic],
            group_id=self.config.queue.consumer_group,
            handler=self.handle,
            max_concurrency=self.config.worker.max_concurrency,
        )
        await self._consumer.start()

    async def stop(self) -> None:
        if self._consumer is not None:
            await self._consumer.stop()
            self._consumer = None

    async def handle(self, message: PipelineMessage) -> Disposition:
        """Process one queue message and decide its disposition."""
        started_at = self._clock()
        raw = message.value or b""

        try:
            envelope = parse_envelope(raw)
        except ValidationError as e:
            log_exception(logger, e, "Rejected malformed envelope", level=logging.WARNING)
            dead_letter = DeadLetterMessage.from_raw(
                raw, self._failure_reason(e), self._clock(), classify_exception(e)
            )
            return await self._dead_letter(dead_letter, e, started_at, collection="unknown")

        with MessageLogContext(event_id=envelope.event_id):
            try:
                if self.signer is not None:
                    self.signer.verify(raw, message.get_header(SIGNATURE_HEADER))
                payload = validate_payload(envelope)
            except PipelineError as e:
                log_exception(
                    logger, e, "Rejected envelope at validation", level=logging.WARNING
                )
                dead_letter = DeadLetterMessage.from_envelope(
                    envelope, self._failure_reason(e), self._clock(), 0, e.category
                )
                return await self._dead_letter(
                    dead_letter, e, started_at, collection=envelope.collection_kind
                )

            return await self._process_with_retry(envelope, payload, started_at)

    async def _process_with_retry(
        self,
        envelope: EventEnvelope,
        payload: SessionPayload | None,
        started_at: datetime,
    ) -> Disposition:
        attempt = envelope.attempt_count
        while True:
            try:
                await self._apply(envelope, payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures = attempt + 1
                if not self.retry.should_retry(e, attempt):
                    log_exception(
                        logger,
                        e,
                        "Processing failed, routing to dead-letter topic",
                        attempts=failures,
                    )
                    dead_letter = DeadLetterMessage.from_envelope(
                        envelope.with_attempt_count(failures),
                        self._failure_reason(e),
                        self._clock(),
                        failures,
                        classify_exception(e),
                    )
                    return await self._dead_letter(
                        dead_letter, e, started_at, collection=envelope.collection_kind
                    )

                delay = self.retry.get_delay(attempt, e)
                category = classify_exception(e).value
                record_retry(category)
                log_exception(
                    logger,
                    e,
                    "Processing failed, retrying after backoff",
                    level=logging.WARNING,
                    include_traceback=False,
                    attempt=failures,
                    max_attempts=self.retry.max_attempts,
                    retry_delay_seconds=delay,
                )
                await self._record(
                    AuditStatus.RETRYING,
                    envelope.event_id,
                    started_at,
                    retry_count=failures,
                    error_message=self._failure_reason(e),
                    details={"retry_delay_seconds": delay, "error_category": category},
                )
                try:
                    await self._sleep(delay)
                except asyncio.CancelledError:
                    logger.warning("Cancelled during backoff, message will be redelivered")
                    raise
                attempt = failures
                continue

            await self._record(
                AuditStatus.SUCCESS,
                envelope.event_id,
                started_at,
                retry_count=attempt,
                details={"change_type": envelope.change_type.value},
            )
            record_event_processed(envelope.collection_kind, Disposition.ACK.value)
            log_with_context(
                logger,
                logging.INFO,
                "Envelope processed",
                change_type=envelope.change_type.value,
                attempts=attempt + 1,
            )
            return Disposition.ACK

    async def _apply(self, envelope: EventEnvelope, payload: SessionPayload | None) -> None:
        if envelope.change_type == ChangeType.DELETE:
            await self.lifecycle.mark_document_deleted(
                envelope.source_collection,
                envelope.source_document_id,
                envelope.occurred_at,
            )
            return

        row = build_row(
            envelope,
            payload,
            self.pseudonymizer,
            region=self.config.worker.region,
            ingested_at=self._clock(),
        )
        try:
            await self.warehouse.upsert_rows([row])
        except Exception:
            record_warehouse_write("upsert", success=False)
            raise
        record_warehouse_write("upsert", success=True)

    async def _dead_letter(
        self,
        dead_letter: DeadLetterMessage,
        error: BaseException,
        started_at: datetime,
        collection: str,
    ) -> Disposition:
        try:
            await self.dead_letters.publish(dead_letter)
        except Exception as e:
            log_exception(
                logger,
                e,
                "Dead-letter publish failed, message will be redelivered",
                dead_letter_event_id=dead_letter.event_id,
            )
            record_event_processed(collection, Disposition.NACK.value)
            return Disposition.NACK

        await self._record(
            AuditStatus.FAILED,
            dead_letter.event_id,
            started_at,
            retry_count=dead_letter.retry_count,
            error_message=dead_letter.failure_reason,
            details={"error_category": dead_letter.error_category.value},
        )
        await self.alerts.notify(
            Alert(
                component=COMPONENT,
                summary=f"Envelope dead-lettered: {dead_letter.failure_reason}",
                event_id=dead_letter.event_id,
            )
        )
        record_event_processed(collection, Disposition.DEAD_LETTER.value)
        return Disposition.DEAD_LETTER

    async def _record(
        self,
        status: AuditStatus,
        event_id: str,
        started_at: datetime,
        retry_count: int = 0,
        error_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        """Write a pipeline log entry. Failures are logged, never raised."""
        try:
            entry = AuditEntry(
                component=COMPONENT,
                action=ACTION,
                status=status,
                event_id=event_id,
                retry_count=retry_count,
                error_message=error_message,
                started_at=started_at,
                completed_at=max(self._clock(), started_at),
                details=details or {},
            )
            await self.audit.append(entry)
        except Exception as e:
            log_exception(
                logger,
                e,
                "Failed to record pipeline log entry",
                audit_status=status.value,
            )

    @staticmethod
    def _failure_reason(error: BaseException) -> str:
        if isinstance(error, pydantic.ValidationError):
            return f"ValidationError: {describe_validation_error(error)}"[:1000]
        return f"{type(error).__name__}: {error}"[:1000]
