"""Logging setup for worker processes.

Console output always; a size-rotated JSON file is added when a log directory
is given and stdout-only mode is off.
"""

import logging
import secrets
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

NOISY_LOGGERS = [
    "aiokafka",
    "kafka",
    "deltalake",
    "urllib3",
    "aiohttp.access",
]

DEFAULT_MAX_BYTES = 50 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5


def get_log_file_path(log_dir: Path, name: str, stage: str | None = None) -> Path:
    """Build ``{log_dir}/{YYYY-MM-DD}/{name}[_{stage}].log``."""
    date_dir = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    filename = f"{name}_{stage}.log" if stage else f"{name}.log"
    return Path(log_dir) / date_dir / filename


def setup_logging(
    name: str = "warehouse_pipeline",
    stage: str | None = None,
    worker_id: str | None = None,
    level: int = logging.INFO,
    log_dir: Path | None = None,
    json_logs: bool = False,
    log_to_stdout: bool = False,
    suppress_noisy: bool = True,
) -> logging.Logger:
    """Configure the root logger and return the named logger.

    Args:
        name: Logger name, also used for the log file name
        stage: Worker stage (sync_worker, aggregation, ...) put in every record
        worker_id: Worker identifier put in every record
        level: Root log level
        log_dir: Directory for rotating JSON log files
        json_logs: Emit JSON on the console instead of the readable format
        log_to_stdout: Console only, no file handler
        suppress_noisy: Raise third-party loggers to WARNING
    """
    set_log_context(stage=stage, worker_id=worker_id)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONFormatter() if json_logs else ConsoleFormatter())
    root.addHandler(console)

    if log_dir is not None and not log_to_stdout:
        log_file = get_log_file_path(log_dir, name, stage)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=DEFAULT_MAX_BYTES,
            backupCount=DEFAULT_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    return logging.getLogger(name)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def generate_cycle_id() -> str:
    """Identifier for one scheduled run: ``c-YYYYMMDD-HHMMSS-xxxx``."""
    now = datetime.now(timezone.utc)
    return f"c-{now:%Y%m%d}-{now:%H%M%S}-{secrets.token_hex(2)}"
