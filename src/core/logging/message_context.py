"""Kafka message context for log records.

MessageLogContext scopes topic/partition/offset/key (and the envelope's
event id) to the handling of a single message:

    with MessageLogContext(topic=record.topic, partition=record.partition,
                           offset=record.offset, event_id=envelope.event_id):
        await handle(envelope)
"""

from contextvars import ContextVar, Token
from typing import Any

from core.logging.context import _event_id

_kafka_topic: ContextVar[str] = ContextVar("kafka_topic", default="")
_kafka_partition: ContextVar[int] = ContextVar("kafka_partition", default=-1)
_kafka_offset: ContextVar[int] = ContextVar("kafka_offset", default=-1)
_kafka_key: ContextVar[str] = ContextVar("kafka_key", default="")
_kafka_consumer_group: ContextVar[str] = ContextVar("kafka_consumer_group", default="")


def set_message_context(
    topic: str | None = None,
    partition: int | None = None,
    offset: int | None = None,
    key: str | None = None,
    consumer_group: str | None = None,
) -> None:
    """Set message context. None values don't override existing context."""
    if topic is not None:
        _kafka_topic.set(topic)
    if partition is not None:
        _kafka_partition.set(partition)
    if offset is not None:
        _kafka_offset.set(offset)
    if key is not None:
        _kafka_key.set(key)
    if consumer_group is not None:
        _kafka_consumer_group.set(consumer_group)


def get_message_context() -> dict[str, Any]:
    """Current message context. Optional fields are omitted when unset."""
    ctx: dict[str, Any] = {
        "kafka_topic": _kafka_topic.get(),
        "kafka_partition": _kafka_partition.get(),
        "kafka_offset": _kafka_offset.get(),
    }
    if _kafka_key.get():
        ctx["kafka_key"] = _kafka_key.get()
    if _kafka_consumer_group.get():
        ctx["kafka_consumer_group"] = _kafka_consumer_group.get()
    return ctx


def clear_message_context() -> None:
    _kafka_topic.set("")
    _kafka_partition.set(-1)
    _kafka_offset.set(-1)
    _kafka_key.set("")
    _kafka_consumer_group.set("")


class MessageLogContext:
    """Context manager that sets message context and restores it on exit."""

    def __init__(
        self,
        topic: str | None = None,
        partition: int | None = None,
        offset: int | None = None,
        key: str | None = None,
        consumer_group: str | None = None,
        event_id: str | None = None,
    ):
        self._values = [
            (_kafka_topic, topic),
            (_kafka_partition, partition),
            (_kafka_offset, offset),
            (_kafka_key, key),
            (_kafka_consumer_group, consumer_group),
            (_event_id, event_id),
        ]
        self._tokens: list[tuple[ContextVar, Token]] = []

    def __enter__(self) -> "MessageLogContext":
        for var, value in self._values:
            if value is not None:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
