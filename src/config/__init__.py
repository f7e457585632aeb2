from config.config import (
    AggregationConfig,
    AlertConfig,
    EmitterConfig,
    LifecycleConfig,
    PipelineConfig,
    QueueConfig,
    WarehouseConfig,
    WorkerConfig,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    "AggregationConfig",
    "AlertConfig",
    "EmitterConfig",
    "LifecycleConfig",
    "PipelineConfig",
    "QueueConfig",
    "WarehouseConfig",
    "WorkerConfig",
    "get_config",
    "load_config",
    "reset_config",
    "set_config",
]
