"""Transport-agnostic message types."""

from dataclasses import dataclass
from enum import Enum

__all__ = [
    "Disposition",
    "PipelineMessage",
    "ProduceResult",
    "from_consumer_record",
]


class Disposition(str, Enum):
    """What the consumer loop does with a message after handling it."""

    ACK = "ack"  # Processed: commit
    NACK = "nack"  # Not processed: do not commit, redeliver
    DEAD_LETTER = "dead_letter"  # Routed to the dead-letter topic: commit

    @property
    def commits(self) -> bool:
        return self is not Disposition.NACK


@dataclass(frozen=True)
class PipelineMessage:
    """Message received from the queue."""

    topic: str
    partition: int
    offset: int
    timestamp: int
    key: bytes | None = None
    value: bytes | None = None
    headers: list[tuple[str, bytes]] | None = None

    def get_header(self, name: str) -> bytes | None:
        for key, value in self.headers or []:
            if key == name:
                return value
        return None


@dataclass(frozen=True)
class ProduceResult:
    """Confirmation of a published message."""

    topic: str
    partition: int
    offset: int


def from_consumer_record(record) -> PipelineMessage:
    """Convert aiokafka ConsumerRecord to PipelineMessage."""
    headers = None
    if getattr(record, "headers", None):
        headers = [(k, v) for k, v in record.headers]

    return PipelineMessage(
        topic=record.topic,
        partition=record.partition,
        offset=record.offset,
        timestamp=record.timestamp,
        key=record.key,
        value=record.value,
        headers=headers,
    )
