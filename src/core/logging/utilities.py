"""Logging helpers used by workers."""

import logging
from typing import Any

from core.errors.exceptions import PipelineError, classify_exception


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **fields: Any,
) -> None:
    """Log with keyword fields as structured extras. None values are dropped."""
    logger.log(level, message, extra={k: v for k, v in fields.items() if v is not None})


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    message: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **fields: Any,
) -> None:
    """Log an exception with its category and any PipelineError context."""
    extra: dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": str(exc)[:500],
        "error_category": classify_exception(exc).value,
    }
    if isinstance(exc, PipelineError):
        extra.update({k: v for k, v in exc.context.items() if v is not None})
    extra.update({k: v for k, v in fields.items() if v is not None})
    logger.log(level, message, exc_info=exc if include_traceback else None, extra=extra)


def log_worker_startup(
    logger: logging.Logger,
    worker_name: str,
    bootstrap_servers: str | None = None,
    input_topic: str | None = None,
    consumer_group: str | None = None,
    extra_config: dict[str, Any] | None = None,
) -> None:
    logger.info("Starting %s", worker_name)
    if bootstrap_servers:
        logger.info("  Kafka bootstrap servers: %s", bootstrap_servers)
    if input_topic:
        logger.info("  Input topic: %s", input_topic)
    if consumer_group:
        logger.info("  Consumer group: %s", consumer_group)
    for key, value in (extra_config or {}).items():
        logger.info("  %s: %s", key, value)
