"""Queue client interface, envelope publishing and an in-memory broker.

Components depend on MessagePublisher, not on aiokafka, so tests and local
runs can substitute InMemoryBroker for MessageProducer.
"""

import asyncio
import time
from collections import defaultdict
from typing import Any, Protocol

from pydantic import BaseModel

from warehouse_pipeline.common.auth import SIGNATURE_HEADER, EnvelopeSigner
from warehouse_pipeline.common.producer import encode_key, encode_value
from warehouse_pipeline.common.types import PipelineMessage, ProduceResult
from warehouse_pipeline.schemas.envelope import EventEnvelope


class MessagePublisher(Protocol):
    async def send(
        self,
        topic: str,
        key: str | bytes | None,
        value: BaseModel | dict[str, Any] | bytes | None,
        headers: dict[str, str] | None = None,
    ) -> ProduceResult:
        ...


class EnvelopePublisher:
    """Publishes signed envelopes to the events topic, keyed by source document."""

    def __init__(
        self,
        publisher: MessagePublisher,
        topic: str,
        signer: EnvelopeSigner | None = None,
    ):
        self._publisher = publisher
        self.topic = topic
        self._signer = signer

    async def publish(
        self, envelope: EventEnvelope, headers: dict[str, str] | None = None
    ) -> ProduceResult:
        return await self.publish_value(
            envelope.to_json_bytes(), key=envelope.source_document_id, headers=headers
        )

    async def publish_value(
        self,
        value: bytes,
        key: str | None,
        headers: dict[str, str] | None = None,
    ) -> ProduceResult:
        all_headers = dict(headers or {})
        if self._signer is not None:
            all_headers[SIGNATURE_HEADER] = self._signer.sign(value)
        return await self._publisher.send(self.topic, key, value, all_headers or None)


class InMemoryBroker:
    """Append-only in-memory topics implementing MessagePublisher."""

    def __init__(self) -> None:
        self._topics: dict[str, list[PipelineMessage]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def send(
        self,
        topic: str,
        key: str | bytes | None,
        value: BaseModel | dict[str, Any] | bytes | None,
        headers: dict[str, str] | None = None,
    ) -> ProduceResult:
        async with self._lock:
            log = self._topics[topic]
            message = PipelineMessage(
                topic=topic,
                partition=0,
                offset=len(log),
                timestamp=int(time.time() * 1000),
                key=encode_key(key),
                value=encode_value(value),
                headers=[(k, v.encode("utf-8")) for k, v in (headers or {}).items()] or None,
            )
            log.append(message)
            return ProduceResult(topic=topic, partition=0, offset=message.offset)

    def messages(self, topic: str) -> list[PipelineMessage]:
        return list(self._topics.get(topic, []))
