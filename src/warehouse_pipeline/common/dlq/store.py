"""
Dead-letter store.

The dead-letter topic is log-compacted and keyed by event id, so it behaves
as a key/value store: publishing a message for an event id replaces any
earlier entry, and a tombstone (null value) removes it. Lookups replay the
topic from the beginning up to the current end offsets.

Usage:
    store = KafkaDeadLetterStore(config.queue, producer)
    await store.publish(DeadLetterMessage.from_envelope(...))
    message = await store.find("evt-1")
    await store.remove("evt-1")
"""

import asyncio
import logging
from typing import Protocol

from aiokafka import AIOKafkaConsumer
from aiokafka.structs import TopicPartition
from pydantic import ValidationError as PydanticValidationError

from config.config import QueueConfig
from core.errors.exceptions import TransientIOError
from core.logging import log_with_context
from warehouse_pipeline.common.kafka_config import build_connection_config
from warehouse_pipeline.common.metrics import record_dlq_message
from warehouse_pipeline.common.queue import MessagePublisher
from warehouse_pipeline.schemas.dead_letter import DeadLetterMessage

logger = logging.getLogger(__name__)


class DeadLetterStore(Protocol):
    async def publish(self, message: DeadLetterMessage) -> None:
        """Durably store ``message``. Raises on failure."""
        ...

    async def find(self, event_id: str) -> DeadLetterMessage | None:
        ...

    async def remove(self, event_id: str) -> None:
        ...

    async def list_entries(self, limit: int | None = None) -> list[DeadLetterMessage]:
        """Messages oldest first."""
        ...


class KafkaDeadLetterStore:
    """Dead-letter entries on a compacted Kafka topic."""

    def __init__(
        self,
        config: QueueConfig,
        producer: MessagePublisher,
        read_timeout_ms: int = 5000,
    ):
        self.config = config
        self.topic = config.dead_letter_topic
        self._producer = producer
        self._read_timeout_ms = read_timeout_ms

    async def publish(self, message: DeadLetterMessage) -> None:
        await self._producer.send(
            self.topic,
            key=message.event_id,
            value=message.to_json_bytes(),
            headers={
                "error_category": message.error_category.value,
                "retry_count": str(message.retry_count),
            },
        )
        record_dlq_message(message.error_category.value)
        log_with_context(
            logger,
            logging.INFO,
            "Message routed to dead-letter topic",
            event_id=message.event_id,
            dlq_topic=self.topic,
            error_category=message.error_category.value,
            retry_count=message.retry_count,
        )

    async def remove(self, event_id: str) -> None:
        await self._producer.send(self.topic, key=event_id, value=None)
        log_with_context(
            logger,
            logging.INFO,
            "Dead-letter entry removed",
            event_id=event_id,
            dlq_topic=self.topic,
        )

    async def find(self, event_id: str) -> DeadLetterMessage | None:
        entries = await self._read_entries()
        return entries.get(event_id)

    async def list_entries(self, limit: int | None = None) -> list[DeadLetterMessage]:
        entries = list((await self._read_entries()).values())
        entries.sort(key=lambda m: m.failed_at)
        return entries[:limit] if limit is not None else entries

    async def _read_entries(self) -> dict[str, DeadLetterMessage]:
        """Replay the topic to its current end; later records win, tombstones delete."""
        consumer = AIOKafkaConsumer(
            group_id=None,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            **build_connection_config(self.config),
        )
        try:
            await consumer.start()
        except Exception as e:
            raise TransientIOError(
                "Could not connect to read dead-letter topic",
                cause=e,
                context={"dlq_topic": self.topic},
            ) from e

        entries: dict[str, DeadLetterMessage] = {}
        try:
            partitions = consumer.partitions_for_topic(self.topic) or set()
            assignment = [TopicPartition(self.topic, p) for p in sorted(partitions)]
            if not assignment:
                return entries
            consumer.assign(assignment)
            await consumer.seek_to_beginning(*assignment)
            end_offsets = await consumer.end_offsets(assignment)
            remaining = {tp for tp in assignment if end_offsets[tp] > 0}

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._read_timeout_ms / 1000
            while remaining:
                if loop.time() > deadline:
                    raise TransientIOError(
                        "Timed out reading dead-letter topic",
                        context={"dlq_topic": self.topic},
                    )
                batch = await consumer.getmany(*remaining, timeout_ms=500)
                for tp, records in batch.items():
                    for record in records:
                        self._apply_record(entries, record.key, record.value, record.offset)
                for tp in list(remaining):
                    if await consumer.position(tp) >= end_offsets[tp]:
                        remaining.discard(tp)
        finally:
            await consumer.stop()
        return entries

    def _apply_record(
        self,
        entries: dict[str, DeadLetterMessage],
        key: bytes | None,
        value: bytes | None,
        offset: int,
    ) -> None:
        if key is None:
            logger.warning("Skipping dead-letter record without key", extra={"offset": offset})
            return
        event_id = key.decode("utf-8")
        if value is None:
            entries.pop(event_id, None)
            return
        try:
            entries[event_id] = DeadLetterMessage.model_validate_json(value)
        except PydanticValidationError as e:
            logger.warning(
                "Skipping unparseable dead-letter record",
                extra={"event_id": event_id, "offset": offset, "error": str(e)[:200]},
            )


class InMemoryDeadLetterStore:
    """Dict-backed store with the same replace/remove semantics."""

    def __init__(self) -> None:
        self._entries: dict[str, DeadLetterMessage] = {}

    async def publish(self, message: DeadLetterMessage) -> None:
        self._entries.pop(message.event_id, None)
        self._entries[message.event_id] = message
        record_dlq_message(message.error_category.value)

    async def find(self, event_id: str) -> DeadLetterMessage | None:
        return self._entries.get(event_id)

    async def remove(self, event_id: str) -> None:
        self._entries.pop(event_id, None)

    async def list_entries(self, limit: int | None = None) -> list[DeadLetterMessage]:
        entries = sorted(self._entries.values(), key=lambda m: m.failed_at)
        return entries[:limit] if limit is not None else entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._entries
