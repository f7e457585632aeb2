"""Kafka message producer."""

import asyncio
import json
import logging
from typing import Any

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel

from config.config import QueueConfig
from core.utils import json_serializer
from warehouse_pipeline.common.kafka_config import build_connection_config
from warehouse_pipeline.common.metrics import record_message_produced, update_connection_status
from warehouse_pipeline.common.types import ProduceResult

logger = logging.getLogger(__name__)


def encode_value(value: BaseModel | dict[str, Any] | bytes | None) -> bytes | None:
    """Serialize a message value. Pydantic models use their aliases (camelCase)."""
    if value is None or isinstance(value, bytes):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json(by_alias=True).encode("utf-8")
    return json.dumps(value, default=json_serializer).encode("utf-8")


def encode_key(key: str | bytes | None) -> bytes | None:
    if key is None or isinstance(key, bytes):
        return key
    return key.encode("utf-8")


class MessageProducer:
    """Async Kafka producer.

    Idempotent, acks=all. Transient send failures are retried by aiokafka
    itself (retry_backoff_ms) until request_timeout_ms; anything that still
    fails is raised to the caller.
    """

    def __init__(self, config: QueueConfig, client_name: str = "warehouse-pipeline"):
        self.config = config
        self.client_name = client_name
        self._producer: AIOKafkaProducer | None = None
        self._started = False

    async def start(self) -> None:
        if self._started:
            logger.warning("Producer already started, ignoring duplicate start call")
            return

        logger.info(
            "Starting message producer",
            extra={
                "bootstrap_servers": self.config.bootstrap_servers,
                "security_protocol": self.config.security_protocol,
                "client_name": self.client_name,
            },
        )
        self._producer = AIOKafkaProducer(
            client_id=self.client_name,
            acks="all",
            enable_idempotence=True,
            retry_backoff_ms=self.config.producer_retry_backoff_ms,
            **build_connection_config(self.config),
        )
        await self._producer.start()
        self._started = True
        update_connection_status("producer", connected=True)
        logger.info("Message producer started successfully")

    async def stop(self) -> None:
        # Errors during stop are logged but not re-raised to avoid masking original exceptions
        if self._producer is None:
            logger.debug("Producer already stopped")
            return

        logger.info("Stopping message producer")
        try:
            if self._started:
                await self._producer.flush()
            await self._producer.stop()
            logger.info("Message producer stopped successfully")
        except (asyncio.CancelledError, RuntimeError):
            logger.warning("Event loop shutting down, skipping graceful producer shutdown")
        except Exception as e:
            logger.error(
                "Error stopping message producer",
                extra={"error": str(e)},
                exc_info=True,
            )
        finally:
            update_connection_status("producer", connected=False)
            self._producer = None
            self._started = False

    async def send(
        self,
        topic: str,
        key: str | bytes | None,
        value: BaseModel | dict[str, Any] | bytes | None,
        headers: dict[str, str] | None = None,
    ) -> ProduceResult:
        """Send one message and wait for the broker acknowledgement.

        ``value=None`` produces a tombstone (used on compacted topics).
        """
        if not self._started or self._producer is None:
            raise RuntimeError("Producer not started. Call start() first.")

        value_bytes = encode_value(value)
        headers_list = [(k, v.encode("utf-8")) for k, v in headers.items()] if headers else None

        try:
            metadata = await self._producer.send_and_wait(
                topic,
                key=encode_key(key),
                value=value_bytes,
                headers=headers_list,
            )
        except Exception as e:
            record_message_produced(topic, success=False)
            logger.error(
                "Failed to send message",
                extra={"topic": topic, "key": key, "error": str(e)},
                exc_info=True,
            )
            raise

        record_message_produced(topic, success=True)
        logger.debug(
            "Message sent successfully",
            extra={
                "topic": metadata.topic,
                "partition": metadata.partition,
                "offset": metadata.offset,
            },
        )
        return ProduceResult(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
        )

    @property
    def is_started(self) -> bool:
        return self._started and self._producer is not None
