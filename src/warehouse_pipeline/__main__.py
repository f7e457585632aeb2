"""
Entry point for running warehouse pipeline workers.

Usage:
    # Sync worker (events topic -> warehouse)
    python -m warehouse_pipeline --worker sync-worker

    # Multiple sync worker instances in one process (same consumer group)
    python -m warehouse_pipeline --worker sync-worker --count 4

    # Synthetic change stream for local testing
    python -m warehouse_pipeline --worker emitter-dummy

    # Scheduled jobs
    python -m warehouse_pipeline --worker aggregation-scheduler
    python -m warehouse_pipeline --worker lifecycle-scheduler

    # Custom metrics / health ports
    python -m warehouse_pipeline --worker sync-worker --metrics-port 9090 --health-port 8081

Architecture:
    document store -> emitter -> warehouse.events -> sync-worker -> training_sessions
                                                          | (failed)
                                                          v
                                  warehouse.events.dlq -> dlq cli -> warehouse.events
    training_sessions -> aggregation-scheduler -> daily/weekly stats
    training_sessions -> lifecycle-scheduler -> purge / retention
"""

import argparse
import asyncio
import logging
import os
import signal
import socket
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

import coolname
from dotenv import load_dotenv
from prometheus_client import start_http_server

from config.config import load_config
from core.logging import get_logger, setup_logging
from warehouse_pipeline.common.health import HealthCheckServer
from warehouse_pipeline.runners.registry import WORKER_REGISTRY, run_worker_from_registry

# __main__.py is at src/warehouse_pipeline/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

WORKER_STAGES = list(WORKER_REGISTRY.keys())

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)

# Set by signal handlers, checked by workers to finish in-flight work before exiting
_shutdown_event: asyncio.Event | None = None


def get_shutdown_event() -> asyncio.Event:
    global _shutdown_event
    if _shutdown_event is None:
        _shutdown_event = asyncio.Event()
    return _shutdown_event


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


async def run_worker_pool(
    worker_fn: Callable[..., Coroutine[Any, Any, None]],
    count: int,
    worker_name: str,
    *args: Any,
    **kwargs: Any,
) -> None:
    """Run multiple instances of a worker concurrently.

    Each instance gets a unique instance_id (coolname) for distinct logging
    and Kafka client ids; consumers share one group, so partitions are
    spread across them.
    """
    logger.info("Starting worker instances", extra={"count": count, "worker_name": worker_name})

    tasks = []
    for _ in range(count):
        instance_id = coolname.generate_slug(2)
        instance_kwargs = kwargs.copy()
        instance_kwargs["instance_id"] = instance_id
        tasks.append(
            asyncio.create_task(
                worker_fn(*args, **instance_kwargs),
                name=f"{worker_name}-{instance_id}",
            )
        )

    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        logger.info("Worker pool cancelled, shutting down", extra={"worker_name": worker_name})
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    workers_help = "\n".join(
        f"    {name:<24} {entry['description']}" for name, entry in WORKER_REGISTRY.items()
    )
    parser = argparse.ArgumentParser(
        description="Run warehouse pipeline workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Workers:
{workers_help}

Examples:
    python -m warehouse_pipeline --worker sync-worker
    python -m warehouse_pipeline --worker sync-worker --count 3
    python -m warehouse_pipeline --worker lifecycle-scheduler --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--worker",
        choices=WORKER_STAGES,
        required=True,
        help="Which worker to run",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: bundled src/config/config.yaml)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=8000,
        help="Port for Prometheus metrics server (default: 8000)",
    )
    parser.add_argument(
        "--health-port",
        type=int,
        default=int(os.getenv("HEALTH_PORT", "8080")),
        help="Port for /health/live and /health/ready (default: 8080, env: HEALTH_PORT)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )
    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="JSON console output. Can also be set via JSON_LOGS environment variable.",
    )
    parser.add_argument(
        "--count",
        "-c",
        type=int,
        default=1,
        help="Number of worker instances to run concurrently (default: 1). "
        "Multiple sync workers share the same consumer group for partition distribution.",
    )

    args = parser.parse_args(argv)
    if args.count < 1:
        parser.error("--count must be at least 1")
    if args.count > 1 and args.worker != "sync-worker":
        parser.error(f"--count is only supported for sync-worker, not {args.worker}")
    return args


def start_metrics_server(preferred_port: int) -> int:
    """Start Prometheus metrics server with automatic port fallback.

    Returns actual port number that the server is listening on.
    """
    try:
        start_http_server(preferred_port)
        return preferred_port
    except OSError as e:
        if e.errno != 98:
            raise
        logger.info(
            "Port already in use, finding available port",
            extra={"preferred_port": preferred_port},
        )
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("", 0))
            s.listen(1)
            available_port = s.getsockname()[1]
        start_http_server(available_port)
        return available_port


def setup_signal_handlers(loop: asyncio.AbstractEventLoop):
    """Set up signal handlers for graceful shutdown.

    First signal: sets the shutdown event - workers finish in-flight messages,
    commit offsets, and a running sweep stops at the next partition boundary.
    Second signal: cancels all tasks.
    Signal handlers are not supported on Windows; KeyboardInterrupt is used instead.
    """

    def handle_signal(sig):
        logger.info("Received signal, initiating graceful shutdown", extra={"signal": sig.name})
        shutdown_event = get_shutdown_event()
        if not shutdown_event.is_set():
            shutdown_event.set()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    if sys.platform == "win32":
        logger.debug("Signal handlers not supported on Windows, using KeyboardInterrupt")
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))


async def run_error_mode(worker_name: str, health_port: int | None, error: str) -> None:
    """Keep the health endpoint up and reporting the error until shutdown."""
    health_server = HealthCheckServer(port=health_port, worker_name=worker_name)
    health_server.set_error(error)
    await health_server.start()
    try:
        await get_shutdown_event().wait()
        logger.info("Shutdown signal received in error mode")
    finally:
        await health_server.stop()


async def run(args: argparse.Namespace, pipeline_config) -> None:
    shutdown_event = get_shutdown_event()
    health_server = HealthCheckServer(port=args.health_port, worker_name=args.worker)
    await health_server.start()
    try:
        if args.count > 1:
            await run_worker_pool(
                run_worker_from_registry,
                args.count,
                args.worker,
                args.worker,
                pipeline_config,
                shutdown_event,
                health_server=health_server,
            )
        else:
            await run_worker_from_registry(
                args.worker,
                pipeline_config,
                shutdown_event,
                health_server=health_server,
            )
    finally:
        await health_server.stop()


def main(argv: list[str] | None = None):
    load_dotenv(PROJECT_ROOT / ".env")

    global logger
    args = parse_args(argv)

    log_dir = Path(args.log_dir or os.getenv("LOG_DIR", "logs"))
    setup_logging(
        name="warehouse_pipeline",
        stage=args.worker,
        worker_id=os.getenv("WORKER_ID", args.worker),
        level=getattr(logging, args.log_level),
        log_dir=log_dir,
        json_logs=args.json_logs or _env_flag("JSON_LOGS"),
        log_to_stdout=args.log_to_stdout or _env_flag("LOG_TO_STDOUT"),
    )
    logger = get_logger(__name__)

    actual_port = start_metrics_server(args.metrics_port)
    if actual_port != args.metrics_port:
        logger.info(
            "Metrics server started on fallback port",
            extra={"actual_port": actual_port, "preferred_port": args.metrics_port},
        )
    else:
        logger.info("Metrics server started", extra={"port": actual_port})

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    setup_signal_handlers(loop)

    try:
        try:
            pipeline_config = load_config(args.config)
        except (FileNotFoundError, ValueError) as e:
            logger.error("Configuration error", extra={"error": str(e)})
            logger.warning("Running in ERROR MODE - health endpoint will remain alive")
            loop.run_until_complete(
                run_error_mode(args.worker, args.health_port, f"Configuration error: {e}")
            )
            return

        loop.run_until_complete(run(args, pipeline_config))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except Exception as e:
        logger.error("Fatal error", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    finally:
        loop.close()
        logger.info("Pipeline shutdown complete")


if __name__ == "__main__":
    main()
