"""
Dead-letter recovery.

recover(event_id) puts one dead-lettered message back on the events topic
with attemptCount reset to 0, and removes the dead-letter entry only after
the publish succeeded. Anything that fails before that leaves the
dead-letter entry in place, so recovery can simply be retried; the sync
worker's upsert by event_id makes repeated recoveries harmless.

All mutating operations require the admin role.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from core.errors.exceptions import AuthorizationError, NotFoundError
from core.logging import log_exception, log_with_context
from core.utils import utc_now
from warehouse_pipeline.audit.recorder import AuditRecorder
from warehouse_pipeline.common.auth import Principal, require_admin
from warehouse_pipeline.common.dlq.store import DeadLetterStore
from warehouse_pipeline.common.metrics import record_recovery
from warehouse_pipeline.common.queue import EnvelopePublisher
from warehouse_pipeline.schemas.audit import AuditEntry, AuditStatus
from warehouse_pipeline.schemas.dead_letter import DeadLetterMessage

logger = logging.getLogger(__name__)

COMPONENT = "dlq_recovery"
RECOVERY_HEADER = "manual_recovery"


@dataclass(frozen=True)
class RecoveryResult:
    event_id: str
    recovered: bool


@dataclass
class BatchRecoveryReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)


class DeadLetterRecoveryService:
    def __init__(
        self,
        store: DeadLetterStore,
        publisher: EnvelopePublisher,
        audit: AuditRecorder,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.publisher = publisher
        self.audit = audit
        self._clock = clock

    async def list_messages(self, limit: int | None = None) -> list[DeadLetterMessage]:
        return await self.store.list_entries(limit)

    async def recover(self, event_id: str, principal: Principal | None) -> RecoveryResult:
        """Republish one dead-lettered message.

        Raises:
            AuthorizationError: principal lacks the admin role
            NotFoundError: no dead-letter entry for event_id
        """
        started_at = self._clock()
        self._authorize(principal, "recover", event_id)
        message = await self._find(event_id)

        try:
            await self.publisher.publish_value(
                message.republish_value(),
                key=message.source_document_id,
                headers={RECOVERY_HEADER: "true", "recovered_by": principal.subject},
            )
        except Exception as e:
            record_recovery("failed")
            log_exception(logger, e, "Recovery publish failed, dead-letter entry kept", event_id=event_id)
            await self._record("recover", AuditStatus.FAILED, event_id, principal, started_at, error=e)
            raise

        await self.store.remove(event_id)
        record_recovery("recovered")
        await self._record("recover", AuditStatus.SUCCESS, event_id, principal, started_at)
        log_with_context(
            logger,
            logging.INFO,
            "Dead-letter message recovered",
            event_id=event_id,
            operator=principal.subject,
            previous_failure=message.failure_reason,
        )
        return RecoveryResult(event_id=event_id, recovered=True)

    async def recover_batch(
        self, principal: Principal | None, limit: int = 100
    ) -> BatchRecoveryReport:
        """Recover up to ``limit`` dead-lettered messages, oldest first."""
        require_admin(principal, "recover_batch")
        report = BatchRecoveryReport()
        for message in await self.store.list_entries(limit):
            report.processed += 1
            try:
                await self.recover(message.event_id, principal)
                report.succeeded += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                report.failed += 1
                report.errors[message.event_id] = f"{type(e).__name__}: {e}"
        logger.info(
            "Batch recovery finished",
            extra={
                "processed": report.processed,
                "succeeded": report.succeeded,
                "failed": report.failed,
            },
        )
        return report

    async def discard(
        self, event_id: str, principal: Principal | None, reason: str | None = None
    ) -> None:
        """Drop a dead-lettered message without republishing it."""
        started_at = self._clock()
        self._authorize(principal, "discard", event_id)
        message = await self._find(event_id)
        await self.store.remove(event_id)
        record_recovery("discarded")
        await self._record(
            "discard",
            AuditStatus.SUCCESS,
            event_id,
            principal,
            started_at,
            details={"reason": reason, "failure_reason": message.failure_reason},
        )
        logger.info(
            "Dead-letter message discarded",
            extra={"event_id": event_id, "operator": principal.subject, "reason": reason},
        )

    def _authorize(self, principal: Principal | None, operation: str, event_id: str) -> None:
        try:
            require_admin(principal, operation)
        except AuthorizationError:
            record_recovery("unauthorized")
            logger.warning(
                "Unauthorized dead-letter operation",
                extra={
                    "operation": operation,
                    "event_id": event_id,
                    "principal": getattr(principal, "subject", None),
                },
            )
            raise

    async def _find(self, event_id: str) -> DeadLetterMessage:
        message = await self.store.find(event_id)
        if message is None:
            record_recovery("not_found")
            raise NotFoundError(
                f"No dead-letter message with event id {event_id}",
                context={"event_id": event_id},
            )
        return message

    async def _record(
        self,
        action: str,
        status: AuditStatus,
        event_id: str,
        principal: Principal,
        started_at: datetime,
        error: BaseException | None = None,
        details: dict | None = None,
    ) -> None:
        try:
            await self.audit.append(
                AuditEntry(
                    component=COMPONENT,
                    action=action,
                    status=status,
                    event_id=event_id,
                    error_message=f"{type(error).__name__}: {error}" if error else None,
                    started_at=started_at,
                    completed_at=max(self._clock(), started_at),
                    details={"operator": principal.subject, **(details or {})},
                )
            )
        except Exception as e:
            log_exception(logger, e, "Failed to record recovery audit entry", action=action)
