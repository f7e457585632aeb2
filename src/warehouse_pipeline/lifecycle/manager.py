"""
Lifecycle Manager - soft deletion, grace-window purge and hard retention.

Row states: active -> soft-deleted -> purged.

- Soft delete sets is_deleted/deleted_at. It comes from delete envelopes
  (one document) or from a subject deletion request (all rows of a subject).
  Re-deleting keeps the first deleted_at.
- A soft delete can be undone within the grace window; purged rows are gone.
- The sweep walks partitions oldest first. A partition older than hard
  retention is expired whole; otherwise rows soft-deleted before
  ``now - grace`` are purged. Each partition is one atomic delete, and the
  cancel event is checked between partitions, so a cancelled sweep never
  leaves a partition half purged.
- A failing partition does not stop the sweep. It is audited, and alerted
  once it has failed ``alert_after_failures`` sweeps in a row.
- Pipeline log entries past their retention are expired by the same sweep.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

import polars as pl

from config.config import LifecycleConfig
from core.logging import log_exception, log_with_context
from core.utils import ensure_utc, utc_now
from warehouse_pipeline.audit.recorder import AuditRecorder
from warehouse_pipeline.common.alerts import Alert, AlertNotifier
from warehouse_pipeline.common.metrics import record_rows_purged
from warehouse_pipeline.common.storage.warehouse import Warehouse
from warehouse_pipeline.schemas.audit import AuditEntry, AuditStatus
from warehouse_pipeline.workers.pseudonymize import Pseudonymizer
from warehouse_pipeline.workers.transform import pseudonymize_collection

logger = logging.getLogger(__name__)

COMPONENT = "lifecycle_manager"


@dataclass
class SweepReport:
    started_at: datetime
    completed_at: datetime | None = None
    partitions_scanned: int = 0
    partitions_expired: list[date] = field(default_factory=list)
    failed_partitions: list[date] = field(default_factory=list)
    rows_purged: int = 0
    log_entries_expired: int = 0
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failed_partitions and not self.cancelled


class LifecycleManager:
    def __init__(
        self,
        config: LifecycleConfig,
        warehouse: Warehouse,
        audit: AuditRecorder,
        alerts: AlertNotifier,
        pseudonymizer: Pseudonymizer,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.warehouse = warehouse
        self.audit = audit
        self.alerts = alerts
        self.pseudonymizer = pseudonymizer
        self._clock = clock
        self._grace = timedelta(days=config.grace_window_days)
        self._partition_failures: dict[date, int] = {}

    # =========================================================================
    # Soft delete / restore
    # =========================================================================

    async def mark_document_deleted(
        self, source_collection: str, source_document_id: str, deleted_at: datetime
    ) -> int:
        """Soft-delete every active row of one document. Idempotent.

        Document ids are only unique within their collection, so the match is
        on the stored (pseudonymized) collection path and the document id.
        """
        collection = pseudonymize_collection(source_collection, self.pseudonymizer)
        affected = await self.warehouse.soft_delete(
            {"source_collection": collection, "source_document_id": source_document_id},
            ensure_utc(deleted_at),
        )
        log_with_context(
            logger,
            logging.INFO,
            "Document soft-deleted",
            collection=collection,
            source_document_id=source_document_id,
            rows_affected=affected,
        )
        return affected

    async def request_subject_deletion(
        self, raw_subject_id: str, requested_at: datetime | None = None
    ) -> int:
        """Soft-delete every row of a subject."""
        started_at = self._clock()
        requested_at = ensure_utc(requested_at) if requested_at else started_at
        subject_hash = self.pseudonymizer.hash(raw_subject_id)
        affected = await self.warehouse.soft_delete({"subject_hash": subject_hash}, requested_at)
        await self._record("soft_delete", AuditStatus.SUCCESS, started_at, details={
            "subject_hash": subject_hash,
            "rows_affected": affected,
        })
        logger.info("Subject deletion requested", extra={"rows_affected": affected})
        return affected

    async def restore_subject(self, raw_subject_id: str, now: datetime | None = None) -> int:
        """Undo a subject's soft delete. Only rows still inside the grace window come back."""
        started_at = self._clock()
        now = ensure_utc(now) if now else started_at
        subject_hash = self.pseudonymizer.hash(raw_subject_id)
        restored = await self.warehouse.restore({"subject_hash": subject_hash}, now - self._grace)
        await self._record("restore", AuditStatus.SUCCESS, started_at, details={
            "subject_hash": subject_hash,
            "rows_affected": restored,
        })
        logger.info("Subject restored", extra={"rows_affected": restored})
        return restored

    async def verify_subject_purged(self, raw_subject_id: str) -> bool:
        """True when no row of the subject remains, soft-deleted or not.

        Storage errors propagate: an unreadable table is not proof of deletion.
        """
        started_at = self._clock()
        subject_hash = self.pseudonymizer.hash(raw_subject_id)
        rows = await self.warehouse.read_rows(include_deleted=True)
        remaining = rows.filter(pl.col("subject_hash") == subject_hash).height
        purged = remaining == 0
        await self._record("verify_purge", AuditStatus.SUCCESS, started_at, details={
            "subject_hash": subject_hash,
            "remaining_rows": remaining,
            "purged": purged,
        })
        if not purged:
            logger.warning("Subject rows still present", extra={"remaining_rows": remaining})
        return purged

    # =========================================================================
    # Sweep
    # =========================================================================

    async def sweep(
        self,
        now: datetime | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SweepReport:
        now = ensure_utc(now) if now else self._clock()
        report = SweepReport(started_at=self._clock())
        purge_before = now - self._grace
        expire_before = (now - timedelta(days=self.config.hard_retention_days)).date()

        partitions = await self.warehouse.list_partitions()
        log_with_context(
            logger,
            logging.INFO,
            "Lifecycle sweep started",
            partitions=len(partitions),
            purge_before=purge_before,
            expire_before=expire_before,
        )

        for partition in partitions:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.info(
                    "Lifecycle sweep cancelled between partitions",
                    extra={"next_partition": str(partition)},
                )
                break
            report.partitions_scanned += 1
            expire = partition < expire_before
            await self._sweep_partition(partition, expire, purge_before, report)

        if not report.cancelled:
            await self._expire_pipeline_log(now, report)

        report.completed_at = self._clock()
        log_with_context(
            logger,
            logging.INFO,
            "Lifecycle sweep finished",
            partitions_scanned=report.partitions_scanned,
            partitions_expired=len(report.partitions_expired),
            failed_partitions=len(report.failed_partitions),
            rows_purged=report.rows_purged,
            cancelled=report.cancelled,
        )
        return report

    async def _sweep_partition(
        self,
        partition: date,
        expire: bool,
        purge_before: datetime,
        report: SweepReport,
    ) -> None:
        action = "expire" if expire else "purge"
        started_at = self._clock()
        try:
            purged = await self.warehouse.purge_partition(
                partition, None if expire else purge_before
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failures = self._partition_failures.get(partition, 0) + 1
            self._partition_failures[partition] = failures
            report.failed_partitions.append(partition)
            log_exception(
                logger,
                e,
                "Partition sweep failed",
                partition=str(partition),
                action=action,
                consecutive_failures=failures,
            )
            await self._record(
                action,
                AuditStatus.FAILED,
                started_at,
                partition=str(partition),
                retry_count=failures - 1,
                error_message=f"{type(e).__name__}: {e}"[:1000],
            )
            if failures >= self.config.alert_after_failures:
                await self.alerts.notify(
                    Alert(
                        component=COMPONENT,
                        summary=f"Partition {action} failed {failures} sweeps in a row: {e}",
                        partition=str(partition),
                    )
                )
            return

        self._partition_failures.pop(partition, None)
        report.rows_purged += purged
        if expire:
            report.partitions_expired.append(partition)
        record_rows_purged("retention" if expire else "grace_window", purged)
        if purged:
            await self._record(
                action,
                AuditStatus.SUCCESS,
                started_at,
                partition=str(partition),
                details={"rows_purged": purged},
            )

    async def _expire_pipeline_log(self, now: datetime, report: SweepReport) -> None:
        cutoff = (now - timedelta(days=self.config.pipeline_log_retention_days)).date()
        try:
            report.log_entries_expired = await self.audit.expire_before(cutoff)
        except Exception as e:
            log_exception(logger, e, "Pipeline log expiry failed", cutoff=str(cutoff))

    async def _record(
        self,
        action: str,
        status: AuditStatus,
        started_at: datetime,
        partition: str | None = None,
        retry_count: int = 0,
        error_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        try:
            await self.audit.append(
                AuditEntry(
                    component=COMPONENT,
                    action=action,
                    status=status,
                    partition=partition,
                    retry_count=retry_count,
                    error_message=error_message,
                    started_at=started_at,
                    completed_at=max(self._clock(), started_at),
                    details=details or {},
                )
            )
        except Exception as e:
            log_exception(logger, e, "Failed to record lifecycle audit entry", action=action)
