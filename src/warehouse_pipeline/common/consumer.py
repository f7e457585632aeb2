"""
Kafka consumer with bounded concurrent dispatch.

Provides async Kafka consumer functionality with:
- Manual offset commit for at-least-once processing
- Concurrent handling of a fetched batch, bounded by a semaphore
- Per-key ordering: records sharing a key within a partition are handled
  one after another, so a create and a later delete of the same document
  are applied in order
- Handler pattern: the handler returns a Disposition and never has to
  touch offsets
- Graceful shutdown handling

Commit rule per partition: offsets are committed up to (not including) the
first NACKed record, and the consumer seeks back to it so it is redelivered
together with everything after it. Records after a NACK that already
succeeded are redelivered too; handlers must be idempotent.

Backoff: a handler that retries sleeps inside its own dispatch, holding its
semaphore slot, and the next getmany waits for the whole batch. Other
records of the batch keep running, but a record in backoff delays the next
fetch by up to the sum of its delays (3s with the default budget) and
leaves one fewer slot for the rest of the batch. max_poll_interval_ms must
stay well above that sum.
"""

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable

from aiokafka import AIOKafkaConsumer
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from config.config import QueueConfig
from core.logging import MessageLogContext, log_exception, log_with_context
from warehouse_pipeline.common.kafka_config import build_connection_config
from warehouse_pipeline.common.metrics import (
    consumer_in_flight_gauge,
    message_processing_duration_seconds,
    record_message_consumed,
    update_connection_status,
)
from warehouse_pipeline.common.types import Disposition, PipelineMessage, from_consumer_record

logger = logging.getLogger(__name__)

MessageHandler = Callable[[PipelineMessage], Awaitable[Disposition]]


def plan_commits(
    messages: list[PipelineMessage], dispositions: list[Disposition]
) -> tuple[dict[tuple[str, int], int], dict[tuple[str, int], int]]:
    """Work out what to commit and where to rewind after a batch.

    Returns ``(commits, seeks)``, both keyed by (topic, partition). A commit
    value is the next offset to consume; a seek value is the offset of the
    first record that must be redelivered.
    """
    by_partition: dict[tuple[str, int], list[tuple[int, Disposition]]] = defaultdict(list)
    for message, disposition in zip(messages, dispositions):
        by_partition[(message.topic, message.partition)].append((message.offset, disposition))

    commits: dict[tuple[str, int], int] = {}
    seeks: dict[tuple[str, int], int] = {}
    for tp, entries in by_partition.items():
        entries.sort()
        committed_through = None
        for offset, disposition in entries:
            if not disposition.commits:
                seeks[tp] = offset
                break
            committed_through = offset
        if committed_through is not None:
            commits[tp] = committed_through + 1
    return commits, seeks


class MessageConsumer:
    """
    Async Kafka consumer dispatching to a Disposition-returning handler.

    Usage:
        >>> async def handle(message: PipelineMessage) -> Disposition:
        ...     return Disposition.ACK
        >>>
        >>> consumer = MessageConsumer(
        ...     config=config.queue,
        ...     topics=[config.queue.events_topic],
        ...     group_id=config.queue.consumer_group,
        ...     handler=handle,
        ...     max_concurrency=10,
        ... )
        >>> await consumer.start()  # runs until stop()
    """

    def __init__(
        self,
        config: QueueConfig,
        topics: list[str],
        group_id: str,
        handler: MessageHandler,
        max_concurrency: int = 10,
        max_batches: int | None = None,
    ):
        if not topics:
            raise ValueError("At least one topic must be specified")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

        self.config = config
        self.topics = topics
        self.group_id = group_id
        self.handler = handler
        self.max_concurrency = max_concurrency
        self.max_batches = max_batches
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._consumer: AIOKafkaConsumer | None = None
        self._running = False
        self._batch_count = 0

    async def start(self) -> None:
        """Connect, subscribe and run the consumption loop until stop() is called."""
        if self._running:
            logger.warning("Consumer already running, ignoring duplicate start call")
            return

        log_with_context(
            logger,
            logging.INFO,
            "Starting Kafka consumer",
            topics=self.topics,
            group_id=self.group_id,
            max_concurrency=self.max_concurrency,
        )
        self._consumer = AIOKafkaConsumer(
            *self.topics,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            max_poll_records=self.config.max_poll_records,
            session_timeout_ms=self.config.session_timeout_ms,
            max_poll_interval_ms=self.config.max_poll_interval_ms,
            **build_connection_config(self.config),
        )
        await self._consumer.start()
        self._running = True
        update_connection_status("consumer", connected=True)
        logger.info("Kafka consumer started successfully")

        try:
            await self._consume_loop()
        except asyncio.CancelledError:
            logger.info("Consumer loop cancelled, shutting down")
            raise
        except Exception as e:
            log_exception(logger, e, "Consumer loop terminated with error")
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop consuming and close the connection. Safe to call multiple times."""
        if self._consumer is None:
            logger.debug("Consumer not running or already stopped")
            return

        logger.info("Stopping Kafka consumer")
        self._running = False
        try:
            await self._consumer.stop()
            logger.info("Kafka consumer stopped successfully")
        except Exception as e:
            log_exception(logger, e, "Error stopping Kafka consumer")
            raise
        finally:
            update_connection_status("consumer", connected=False)
            self._consumer = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def _consume_loop(self) -> None:
        while self._running and self._consumer:
            if self.max_batches is not None and self._batch_count >= self.max_batches:
                log_with_context(
                    logger,
                    logging.INFO,
                    "Reached max_batches limit, stopping consumer",
                    max_batches=self.max_batches,
                )
                return
            try:
                data = await self._consumer.getmany(
                    timeout_ms=self.config.poll_timeout_ms,
                    max_records=self.config.max_poll_records,
                )
                if not data:
                    continue
                self._batch_count += 1
                messages = [
                    from_consumer_record(record)
                    for records in data.values()
                    for record in records
                ]
                dispositions = await self.process_messages(messages)
                await self._apply_offsets(messages, dispositions)
            except asyncio.CancelledError:
                logger.info("Consumption loop cancelled")
                raise
            except Exception as e:
                log_exception(logger, e, "Error in consumption loop")
                await asyncio.sleep(1)

    async def process_messages(self, messages: list[PipelineMessage]) -> list[Disposition]:
        """Run the handler over a batch; returns one disposition per message, in order.

        Records are grouped by (topic, partition, key). Groups run
        concurrently; within a group records run in offset order and the
        first NACK leaves the rest of the group unprocessed (NACK).
        """
        groups: dict[tuple[str, int, bytes | None], list[int]] = defaultdict(list)
        for index, message in enumerate(messages):
            # Keyless records have no ordering requirement
            key = message.key if message.key is not None else f"#{index}".encode()
            groups[(message.topic, message.partition, key)].append(index)

        dispositions: list[Disposition] = [Disposition.NACK] * len(messages)

        async def run_group(indices: list[int]) -> None:
            for index in sorted(indices, key=lambda i: messages[i].offset):
                disposition = await self._dispatch(messages[index])
                dispositions[index] = disposition
                if disposition is Disposition.NACK:
                    return

        await asyncio.gather(*(run_group(indices) for indices in groups.values()))
        return dispositions

    async def _dispatch(self, message: PipelineMessage) -> Disposition:
        async with self._semaphore:
            consumer_in_flight_gauge.labels(consumer_group=self.group_id).inc()
            start_time = time.perf_counter()
            with MessageLogContext(
                topic=message.topic,
                partition=message.partition,
                offset=message.offset,
                key=message.key.decode("utf-8", errors="replace") if message.key else None,
                consumer_group=self.group_id,
            ):
                try:
                    disposition = await self.handler(message)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log_exception(
                        logger,
                        e,
                        "Unhandled error in message handler - message will be redelivered",
                    )
                    disposition = Disposition.NACK
                finally:
                    consumer_in_flight_gauge.labels(consumer_group=self.group_id).dec()
                    message_processing_duration_seconds.labels(topic=message.topic).observe(
                        time.perf_counter() - start_time
                    )
            record_message_consumed(message.topic, self.group_id)
            return disposition

    async def _apply_offsets(
        self, messages: list[PipelineMessage], dispositions: list[Disposition]
    ) -> None:
        if self._consumer is None:
            return
        commits, seeks = plan_commits(messages, dispositions)
        if commits:
            await self._consumer.commit(
                {
                    TopicPartition(topic, partition): OffsetAndMetadata(offset, "")
                    for (topic, partition), offset in commits.items()
                }
            )
            log_with_context(logger, logging.DEBUG, "Committed offsets", partitions=len(commits))
        for (topic, partition), offset in seeks.items():
            self._consumer.seek(TopicPartition(topic, partition), offset)
            log_with_context(
                logger,
                logging.WARNING,
                "Rewinding partition for redelivery",
                topic=topic,
                partition=partition,
                offset=offset,
            )
