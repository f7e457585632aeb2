"""Dead-letter recovery service and operator CLI."""

from warehouse_pipeline.dlq.recovery import (
    BatchRecoveryReport,
    DeadLetterRecoveryService,
    RecoveryResult,
)

__all__ = ["BatchRecoveryReport", "DeadLetterRecoveryService", "RecoveryResult"]
