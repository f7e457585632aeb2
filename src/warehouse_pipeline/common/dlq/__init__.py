"""Dead-letter topic storage."""

from warehouse_pipeline.common.dlq.store import (
    DeadLetterStore,
    InMemoryDeadLetterStore,
    KafkaDeadLetterStore,
)

__all__ = ["DeadLetterStore", "InMemoryDeadLetterStore", "KafkaDeadLetterStore"]
