"""Structured logging for pipeline workers."""

from core.logging.context import clear_log_context, get_log_context, set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.message_context import (
    MessageLogContext,
    clear_message_context,
    get_message_context,
    set_message_context,
)
from core.logging.setup import generate_cycle_id, get_logger, setup_logging
from core.logging.utilities import log_exception, log_with_context, log_worker_startup

__all__ = [
    "ConsoleFormatter",
    "JSONFormatter",
    "MessageLogContext",
    "clear_log_context",
    "clear_message_context",
    "generate_cycle_id",
    "get_log_context",
    "get_logger",
    "get_message_context",
    "log_exception",
    "log_with_context",
    "log_worker_startup",
    "set_log_context",
    "set_message_context",
    "setup_logging",
]
