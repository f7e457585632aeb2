"""JSON and console formatters for structured logging."""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

from core.logging.context import get_log_context
from core.logging.message_context import get_message_context

# Attributes every LogRecord has; anything else came in through extra={...}
_RESERVED_ATTRS = frozenset(
    {
        "args", "asctime", "created", "exc_info", "exc_text", "filename",
        "funcName", "levelname", "levelno", "lineno", "message", "module",
        "msecs", "msg", "name", "pathname", "process", "processName",
        "relativeCreated", "stack_info", "thread", "threadName", "taskName",
    }
)

_INT_FIELDS = frozenset(
    {"http_status", "records_processed", "retry_count", "attempt", "rows_affected", "partition_count"}
)
_FLOAT_FIELDS = frozenset({"duration_ms", "processing_time_ms", "delay_seconds"})

_SENSITIVE_PARAM_RE = re.compile(r"([?&](?:sig|token|key|password|secret)=)[^&]*", re.IGNORECASE)

_FILE_LEVELS = (logging.DEBUG, logging.ERROR, logging.CRITICAL)


class JSONFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, message, context, extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in get_log_context().items():
            if value:
                entry[key] = value

        message_ctx = get_message_context()
        if message_ctx["kafka_topic"]:
            entry.update(message_ctx)

        if record.levelno in _FILE_LEVELS:
            entry["file"] = f"{record.filename}:{record.lineno}"

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_") or value is None:
                continue
            entry[key] = self._ensure_type(key, value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)

    @staticmethod
    def _ensure_type(key: str, value: Any) -> Any:
        if value is None:
            return None
        try:
            if key in _INT_FIELDS:
                return int(value)
            if key in _FLOAT_FIELDS:
                return float(value)
        except (TypeError, ValueError):
            return None
        if isinstance(value, str) and key.endswith("url"):
            return JSONFormatter._sanitize_url(value)
        return value

    @staticmethod
    def _sanitize_url(url: str) -> str:
        return _SENSITIVE_PARAM_RE.sub(r"\1[REDACTED]", url)


class ConsoleFormatter(logging.Formatter):
    """Human readable single-line format with the most useful context inline."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ctx = get_log_context()
        tags = [f"{k}={ctx[k]}" for k in ("stage", "worker_id", "event_id") if ctx[k]]
        if tags:
            line = f"{line} [{' '.join(tags)}]"
        return line
