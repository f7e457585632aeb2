"""Common worker execution patterns and utilities.

Provides reusable templates for running workers with consistent:
- Startup retry
- Shutdown handling
- Logging context
- Readiness reporting
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable

from core.logging.context import set_log_context
from warehouse_pipeline.common.health import HealthCheckServer

logger = logging.getLogger(__name__)

# Startup retry configuration (overridable via env vars)
DEFAULT_STARTUP_RETRIES = 5
DEFAULT_STARTUP_BACKOFF_BASE = 5  # seconds


async def _start_with_retry(
    start_fn: Callable[[], Awaitable[None]],
    label: str,
    max_retries: int | None = None,
    backoff_base: float | None = None,
) -> None:
    """Retry an async start function with linear backoff.

    On exhaustion, re-raises the last exception so the caller's fatal error
    handler can log it.

    Args:
        start_fn: Async callable (e.g. producer.start)
        label: Human-readable label for log messages
        max_retries: Number of attempts (default: 5, env: STARTUP_MAX_RETRIES)
        backoff_base: Base seconds for backoff (default: 5, env: STARTUP_BACKOFF_SECONDS)
    """
    max_retries = max_retries or int(
        os.getenv("STARTUP_MAX_RETRIES", str(DEFAULT_STARTUP_RETRIES))
    )
    if backoff_base is None:
        backoff_base = float(
            os.getenv("STARTUP_BACKOFF_SECONDS", str(DEFAULT_STARTUP_BACKOFF_BASE))
        )

    for attempt in range(1, max_retries + 1):
        try:
            await start_fn()
            return
        except Exception as e:
            if attempt == max_retries:
                logger.error(
                    f"Failed to start {label} after {max_retries} attempts, giving up",
                    extra={"error": str(e), "attempts": max_retries},
                )
                raise
            delay = backoff_base * attempt
            logger.warning(
                f"Failed to start {label} (attempt {attempt}/{max_retries}), "
                f"retrying in {delay}s",
                extra={"error": str(e), "attempt": attempt, "delay": delay},
            )
            await asyncio.sleep(delay)


def _set_stage_context(stage_name: str, instance_id: str | None) -> str:
    context = {"stage": stage_name}
    if instance_id is not None:
        context["instance_id"] = instance_id
        context["worker_id"] = f"{stage_name}-{instance_id}"
    set_log_context(**context)
    return f" (instance {instance_id})" if instance_id is not None else ""


async def execute_worker_with_shutdown(
    worker_instance,
    stage_name: str,
    shutdown_event: asyncio.Event,
    stop_method: str = "stop",
    instance_id: str | None = None,
    health_server: HealthCheckServer | None = None,
) -> None:
    """Execute a worker whose start() runs until stop() is called.

    Args:
        worker_instance: Worker instance with start() and stop() methods
        stage_name: Name for logging context
        shutdown_event: Event to signal graceful shutdown
        stop_method: Name of the stop method on worker (default: "stop")
        instance_id: Instance identifier for multi-instance deployments (optional)
        health_server: Readiness is reported here while the worker runs (optional)
    """
    logger_suffix = _set_stage_context(stage_name, instance_id)
    logger.info(f"Starting {stage_name}{logger_suffix}...")
    stop_fn = getattr(worker_instance, stop_method)

    async def shutdown_watcher():
        await shutdown_event.wait()
        logger.info(f"Shutdown signal received, stopping {stage_name}{logger_suffix}...")
        if health_server is not None:
            health_server.set_ready(False)
        await stop_fn()

    watcher_task = asyncio.create_task(shutdown_watcher())

    try:
        if health_server is not None:
            health_server.set_ready(True)
        await _start_with_retry(worker_instance.start, stage_name)
    finally:
        if health_server is not None:
            health_server.set_ready(False)
        try:
            watcher_task.cancel()
            await watcher_task
        except (asyncio.CancelledError, RuntimeError):
            pass
        await stop_fn()


async def execute_until_shutdown(
    run_fn: Callable[[asyncio.Event], Awaitable[None]],
    stage_name: str,
    shutdown_event: asyncio.Event,
    instance_id: str | None = None,
    health_server: HealthCheckServer | None = None,
) -> None:
    """Execute a coroutine that watches the shutdown event itself (schedulers, emitter)."""
    logger_suffix = _set_stage_context(stage_name, instance_id)
    logger.info(f"Starting {stage_name}{logger_suffix}...")
    if health_server is not None:
        health_server.set_ready(True)
    try:
        await run_fn(shutdown_event)
    finally:
        if health_server is not None:
            health_server.set_ready(False)
        logger.info(f"{stage_name}{logger_suffix} stopped")
