"""Runners for the warehouse pipeline workers.

- sync-worker: events topic -> pseudonymized warehouse rows
- emitter-dummy: synthetic change stream -> events topic (local testing)
- aggregation-scheduler: daily and weekly rollups
- lifecycle-scheduler: grace-window purge and retention sweep
"""

import asyncio
import logging
import os

from config.config import PipelineConfig
from warehouse_pipeline.common.health import HealthCheckServer
from warehouse_pipeline.runners.common import (
    _start_with_retry,
    execute_until_shutdown,
    execute_worker_with_shutdown,
)

logger = logging.getLogger(__name__)


def _build_shared(pipeline_config: PipelineConfig):
    """Warehouse, pipeline log, alerting and the lifecycle manager used by several workers."""
    from warehouse_pipeline.audit.recorder import AuditRecorder
    from warehouse_pipeline.common.alerts import create_alert_notifier
    from warehouse_pipeline.common.storage.delta import DeltaAuditSink, DeltaWarehouse
    from warehouse_pipeline.lifecycle.manager import LifecycleManager
    from warehouse_pipeline.workers.pseudonymize import Pseudonymizer

    warehouse = DeltaWarehouse(pipeline_config.warehouse)
    audit = AuditRecorder(DeltaAuditSink(pipeline_config.warehouse))
    alerts = create_alert_notifier(pipeline_config.alerts)
    lifecycle = LifecycleManager(
        pipeline_config.lifecycle,
        warehouse,
        audit,
        alerts,
        Pseudonymizer(pipeline_config.worker.subject_hash_salt),
    )
    return warehouse, audit, alerts, lifecycle


async def run_sync_worker(
    pipeline_config: PipelineConfig,
    shutdown_event: asyncio.Event,
    instance_id: str | None = None,
    health_server: HealthCheckServer | None = None,
):
    """Consumes the events topic, upserts warehouse rows, dead-letters failures."""
    from warehouse_pipeline.common.dlq.store import KafkaDeadLetterStore
    from warehouse_pipeline.common.producer import MessageProducer
    from warehouse_pipeline.workers.sync_worker import SyncWorker

    client_name = f"sync-worker-{instance_id}" if instance_id else "sync-worker"
    producer = MessageProducer(pipeline_config.queue, client_name=client_name)
    await _start_with_retry(producer.start, "sync-worker-producer")

    try:
        warehouse, audit, alerts, lifecycle = _build_shared(pipeline_config)
        worker = SyncWorker(
            config=pipeline_config,
            warehouse=warehouse,
            dead_letters=KafkaDeadLetterStore(pipeline_config.queue, producer),
            audit=audit,
            alerts=alerts,
            lifecycle=lifecycle,
        )
        await execute_worker_with_shutdown(
            worker,
            stage_name="sync-worker",
            shutdown_event=shutdown_event,
            instance_id=instance_id,
            health_server=health_server,
        )
    finally:
        await producer.stop()


async def run_dummy_emitter(
    pipeline_config: PipelineConfig,
    shutdown_event: asyncio.Event,
    instance_id: str | None = None,
    health_server: HealthCheckServer | None = None,
):
    """Publishes a synthetic change stream. Tuned with DUMMY_* env vars."""
    from warehouse_pipeline.common.auth import EnvelopeSigner
    from warehouse_pipeline.common.producer import MessageProducer
    from warehouse_pipeline.common.queue import EnvelopePublisher
    from warehouse_pipeline.emitter.change_capture import ChangeCaptureEmitter
    from warehouse_pipeline.emitter.dummy_source import DummyChangeSource, DummySourceConfig

    max_changes = os.getenv("DUMMY_MAX_CHANGES")
    source = DummyChangeSource(
        DummySourceConfig(
            seed=int(os.getenv("DUMMY_SEED", "0")) or None,
            user_count=int(os.getenv("DUMMY_USER_COUNT", "20")),
            interval_seconds=float(os.getenv("DUMMY_INTERVAL_SECONDS", "1.0")),
            max_changes=int(max_changes) if max_changes else None,
        )
    )

    producer = MessageProducer(pipeline_config.queue, client_name="emitter-dummy")
    await _start_with_retry(producer.start, "emitter-producer")
    try:
        signing_key = pipeline_config.worker.envelope_signing_key
        publisher = EnvelopePublisher(
            producer,
            pipeline_config.queue.events_topic,
            EnvelopeSigner(signing_key) if signing_key else None,
        )
        emitter = ChangeCaptureEmitter(pipeline_config.emitter, publisher)

        async def run(stop: asyncio.Event) -> None:
            await emitter.run(source.changes(stop), stop)

        await execute_until_shutdown(
            run,
            stage_name="emitter-dummy",
            shutdown_event=shutdown_event,
            instance_id=instance_id,
            health_server=health_server,
        )
    finally:
        await producer.stop()


async def run_aggregation_scheduler(
    pipeline_config: PipelineConfig,
    shutdown_event: asyncio.Event,
    instance_id: str | None = None,
    health_server: HealthCheckServer | None = None,
):
    """Daily rollup at aggregation.daily_time, weekly at weekly_weekday/weekly_time (UTC)."""
    from warehouse_pipeline.aggregation.scheduler import AggregationScheduler
    from warehouse_pipeline.common.scheduling import (
        DailySchedule,
        JobScheduler,
        NonOverlappingJob,
        WeeklySchedule,
        parse_hhmm,
    )

    warehouse, audit, alerts, _ = _build_shared(pipeline_config)
    aggregation = AggregationScheduler(pipeline_config, warehouse, audit, alerts)
    cfg = pipeline_config.aggregation

    scheduler = JobScheduler(
        [
            (
                DailySchedule(parse_hhmm(cfg.daily_time)),
                NonOverlappingJob("aggregate_daily", aggregation.run_daily),
            ),
            (
                WeeklySchedule(cfg.weekly_weekday, parse_hhmm(cfg.weekly_time)),
                NonOverlappingJob("aggregate_weekly", aggregation.run_weekly),
            ),
        ]
    )
    await execute_until_shutdown(
        scheduler.run,
        stage_name="aggregation-scheduler",
        shutdown_event=shutdown_event,
        instance_id=instance_id,
        health_server=health_server,
    )


async def run_lifecycle_scheduler(
    pipeline_config: PipelineConfig,
    shutdown_event: asyncio.Event,
    instance_id: str | None = None,
    health_server: HealthCheckServer | None = None,
):
    """Daily sweep at lifecycle.sweep_time (UTC). Shutdown stops a sweep between partitions."""
    from warehouse_pipeline.common.scheduling import (
        DailySchedule,
        JobScheduler,
        NonOverlappingJob,
        parse_hhmm,
    )

    _, _, _, lifecycle = _build_shared(pipeline_config)

    async def sweep(now):
        return await lifecycle.sweep(now, cancel_event=shutdown_event)

    scheduler = JobScheduler(
        [
            (
                DailySchedule(parse_hhmm(pipeline_config.lifecycle.sweep_time)),
                NonOverlappingJob("lifecycle_sweep", sweep),
            )
        ]
    )
    await execute_until_shutdown(
        scheduler.run,
        stage_name="lifecycle-scheduler",
        shutdown_event=shutdown_event,
        instance_id=instance_id,
        health_server=health_server,
    )
