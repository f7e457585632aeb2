"""Pipeline configuration from YAML file.

Loads from config/config.yaml with all settings in one place:
- Kafka connection, topics and consumer settings
- Sync worker retry budget, concurrency and pseudonymization secrets
- Warehouse (Delta Lake) table locations
- Lifecycle retention windows and aggregation schedules
- Alert webhook

Environment variables ARE supported using ${VAR_NAME} and
${VAR_NAME:-default} syntax in YAML files. Secrets (hash salt, signing key,
webhook URL) are expected to come from the environment.
"""

import json
import logging
import os
import re
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into a copy of base; nested dicts are merged, not replaced."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


DEFAULT_CONFIG_FILE = Path(__file__).parent / "config.yaml"


@dataclass
class QueueConfig:
    """Kafka connection and topic settings.

    The dead-letter topic must be log-compacted: entries are keyed by
    event id and removed with tombstones.
    """

    bootstrap_servers: str = ""
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str = "PLAIN"
    sasl_plain_username: str = ""
    sasl_plain_password: str = ""
    request_timeout_ms: int = 30000
    events_topic: str = "warehouse.events"
    dead_letter_topic: str = "warehouse.events.dlq"
    consumer_group: str = "warehouse-sync-worker"
    max_poll_records: int = 100
    poll_timeout_ms: int = 1000
    session_timeout_ms: int = 45000
    max_poll_interval_ms: int = 300000
    producer_retry_backoff_ms: int = 500
    producer_request_timeout_ms: int = 30000


@dataclass
class WorkerConfig:
    """Sync worker processing settings.

    Retry schedule: base_delay_seconds * 2 ** (attempt - 1), at most
    max_attempts attempts in total.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    max_concurrency: int = 10
    subject_hash_salt: str = ""
    envelope_signing_key: str = ""
    require_signature: bool = True
    region: str = "JP"


@dataclass
class WarehouseConfig:
    """Delta Lake table locations.

    Tables are resolved as ``{base_path}/{table_name}``; base_path may be a
    local directory or an object store URI understood by deltalake.
    """

    base_path: str = "./warehouse"
    rows_table: str = "training_sessions"
    pipeline_log_table: str = "pipeline_log"
    daily_aggregates_table: str = "daily_session_stats"
    weekly_aggregates_table: str = "weekly_session_stats"
    storage_options: dict[str, str] = field(default_factory=dict)

    def table_uri(self, table_name: str) -> str:
        return f"{self.base_path.rstrip('/')}/{table_name}"


@dataclass
class LifecycleConfig:
    grace_window_days: int = 30
    hard_retention_days: int = 730
    pipeline_log_retention_days: int = 90
    sweep_time: str = "04:00"
    alert_after_failures: int = 3


@dataclass
class AggregationConfig:
    daily_time: str = "02:00"
    weekly_weekday: int = 0  # Monday
    weekly_time: str = "03:00"
    alert_after_failures: int = 3


@dataclass
class AlertConfig:
    webhook_url: str = ""
    timeout_seconds: float = 10.0


@dataclass
class EmitterConfig:
    """Change capture rules.

    watched_collections maps a collection kind to its emit rule. A rule with
    ``require_status`` only emits create/update changes whose document has
    that status (updates only on the transition into it).
    """

    watched_collections: dict[str, dict[str, Any]] = field(
        default_factory=lambda: {"sessions": {"require_status": "completed"}}
    )


@dataclass
class PipelineConfig:
    queue: QueueConfig = field(default_factory=QueueConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    warehouse: WarehouseConfig = field(default_factory=WarehouseConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    emitter: EmitterConfig = field(default_factory=EmitterConfig)

    def validate(self) -> None:
        """Validate configuration for correctness and constraints."""
        if not self.queue.bootstrap_servers:
            raise ValueError("queue.bootstrap_servers is required")
        if self.queue.events_topic == self.queue.dead_letter_topic:
            raise ValueError("queue.dead_letter_topic must differ from queue.events_topic")
        if not self.worker.subject_hash_salt:
            raise ValueError(
                "worker.subject_hash_salt is required (set SUBJECT_HASH_SALT)"
            )
        if self.worker.require_signature and not self.worker.envelope_signing_key:
            raise ValueError(
                "worker.envelope_signing_key is required when require_signature is on "
                "(set ENVELOPE_SIGNING_KEY)"
            )

        self._validate_min("worker.max_attempts", self.worker.max_attempts, 1)
        self._validate_min("worker.max_concurrency", self.worker.max_concurrency, 1)
        self._validate_min("worker.base_delay_seconds", self.worker.base_delay_seconds, 0)
        self._validate_min("lifecycle.grace_window_days", self.lifecycle.grace_window_days, 0)
        self._validate_min(
            "lifecycle.hard_retention_days", self.lifecycle.hard_retention_days, 1
        )
        if self.lifecycle.hard_retention_days <= self.lifecycle.grace_window_days:
            raise ValueError(
                "lifecycle.hard_retention_days must be greater than grace_window_days"
            )
        if not 0 <= self.aggregation.weekly_weekday <= 6:
            raise ValueError(
                f"aggregation.weekly_weekday must be between 0 and 6, "
                f"got {self.aggregation.weekly_weekday}"
            )
        for name, value in (
            ("aggregation.daily_time", self.aggregation.daily_time),
            ("aggregation.weekly_time", self.aggregation.weekly_time),
            ("lifecycle.sweep_time", self.lifecycle.sweep_time),
        ):
            if not re.fullmatch(r"([01]\d|2[0-3]):[0-5]\d", value):
                raise ValueError(f"{name} must be HH:MM, got '{value}'")

    @staticmethod
    def _validate_min(name: str, value: float, min_value: float) -> None:
        if value < min_value:
            raise ValueError(f"{name} must be >= {min_value}, got {value}")

    def to_dict(self, redact_secrets: bool = True) -> dict[str, Any]:
        data = asdict(self)
        if redact_secrets:
            for section, key in _SECRET_FIELDS:
                if data[section].get(key):
                    data[section][key] = "[REDACTED]"
        return data


_SECRET_FIELDS = (
    ("queue", "sasl_plain_password"),
    ("worker", "subject_hash_salt"),
    ("worker", "envelope_signing_key"),
    ("alerts", "webhook_url"),
)

_TRUE_STRINGS = ("1", "true", "yes", "on")


def _coerce(value: Any, default: Any) -> Any:
    """Coerce an expanded YAML value to the dataclass default's type."""
    if isinstance(default, bool):
        return value if isinstance(value, bool) else str(value).lower() in _TRUE_STRINGS
    if isinstance(default, int) and not isinstance(value, bool):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def _build_section(cls, data: dict[str, Any]):
    defaults = cls()
    kwargs = {}
    for key, value in data.items():
        if not hasattr(defaults, key):
            logger.warning(
                "Ignoring unknown config key",
                extra={"section": cls.__name__, "key": key},
            )
            continue
        kwargs[key] = _coerce(value, getattr(defaults, key))
    return cls(**kwargs)


_SECTIONS = {
    "queue": QueueConfig,
    "worker": WorkerConfig,
    "warehouse": WarehouseConfig,
    "lifecycle": LifecycleConfig,
    "aggregation": AggregationConfig,
    "alerts": AlertConfig,
    "emitter": EmitterConfig,
}


def load_config(
    config_path: Path | None = None,
    overrides: dict[str, Any] | None = None,
    validate: bool = True,
) -> PipelineConfig:
    """Load pipeline configuration from config.yaml.

    Environment variables ARE supported using ${VAR_NAME} syntax in YAML files.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from file: {config_path}")
    yaml_data = _expand_env_vars(load_yaml(config_path))

    if "pipeline" not in yaml_data:
        raise ValueError("Invalid config file: missing 'pipeline:' section")

    pipeline_data = yaml_data["pipeline"] or {}
    if overrides:
        logger.debug(f"Applying overrides: {list(overrides.keys())}")
        pipeline_data = _deep_merge(pipeline_data, overrides)

    config = PipelineConfig(
        **{
            name: _build_section(cls, pipeline_data.get(name) or {})
            for name, cls in _SECTIONS.items()
        }
    )

    if validate:
        config.validate()
        logger.debug("Configuration validation passed")

    return config


_pipeline_config: PipelineConfig | None = None


def get_config() -> PipelineConfig:
    """Get or load the singleton pipeline config instance."""
    global _pipeline_config
    if _pipeline_config is None:
        _pipeline_config = load_config()
    return _pipeline_config


def set_config(config: PipelineConfig) -> None:
    """Set the singleton pipeline config instance (useful for testing)."""
    global _pipeline_config
    _pipeline_config = config


def reset_config() -> None:
    """Reset the singleton config instance (forces reload on next get_config() call)."""
    global _pipeline_config
    _pipeline_config = None


def _cli_main() -> int:
    """CLI entry point for config validation and debugging."""
    import argparse

    parser = argparse.ArgumentParser(description="Warehouse pipeline configuration tool")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--validate", action="store_true", help="Validate configuration")
    parser.add_argument("--show", action="store_true", help="Print effective configuration")
    args = parser.parse_args()

    try:
        config = load_config(args.config, validate=args.validate)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.validate:
        print("Configuration is valid")
    if args.show:
        print(json.dumps(config.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(_cli_main())
