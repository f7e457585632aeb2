"""
Change Capture Emitter.

Turns change notifications from the primary document store into event
envelopes and publishes each to the events topic, keyed by source document
id so all changes of one document stay in order on one partition.

event_id is a digest of the notification's own change id (plus collection
and document), so a notification the store delivers twice yields the same
envelope and the sync worker's upsert absorbs the duplicate.

There is no retry loop here: the Kafka producer retries sends with its own
backoff, and a send that still fails is raised to the caller.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from config.config import EmitterConfig
from core.logging import log_exception, log_with_context
from core.utils import ensure_utc, stable_digest
from warehouse_pipeline.common.metrics import record_event_processed
from warehouse_pipeline.common.queue import EnvelopePublisher
from warehouse_pipeline.schemas.envelope import ChangeType, EventEnvelope

logger = logging.getLogger(__name__)

EVENT_ID_PREFIX = "evt-"


@dataclass(frozen=True)
class ChangeNotification:
    """One mutation reported by the primary store.

    Attributes:
        change_id: The store's unique id for this change
        source_collection: Collection path, e.g. ``users/u-1/sessions``
        document_id: Id of the changed document
        change_type: create, update or delete
        occurred_at: Commit time in the primary store
        data: Document after the change (None for deletes)
        previous_data: Document before the change (None for creates)
    """

    change_id: str
    source_collection: str
    document_id: str
    change_type: ChangeType
    occurred_at: datetime
    data: dict[str, Any] | None = None
    previous_data: dict[str, Any] | None = None

    @property
    def collection_kind(self) -> str:
        return self.source_collection.rstrip("/").rsplit("/", 1)[-1]


class ChangeCaptureEmitter:
    """
    Usage:
        >>> emitter = ChangeCaptureEmitter(config.emitter, EnvelopePublisher(producer, topic, signer))
        >>> await emitter.run(source.changes(), shutdown_event)
    """

    def __init__(self, config: EmitterConfig, publisher: EnvelopePublisher):
        self.config = config
        self.publisher = publisher
        self.published = 0
        self.filtered = 0

    def build_envelope(self, change: ChangeNotification) -> EventEnvelope:
        event_id = EVENT_ID_PREFIX + stable_digest(
            change.change_id, change.source_collection, change.document_id
        )[:32]
        payload = {} if change.change_type == ChangeType.DELETE else dict(change.data or {})
        return EventEnvelope(
            event_id=event_id,
            source_collection=change.source_collection,
            source_document_id=change.document_id,
            change_type=change.change_type,
            payload=payload,
            occurred_at=ensure_utc(change.occurred_at),
            attempt_count=0,
        )

    def should_emit(self, change: ChangeNotification) -> bool:
        rule = self.config.watched_collections.get(change.collection_kind)
        if rule is None:
            return False
        if change.change_type == ChangeType.DELETE:
            return True

        required_status = (rule or {}).get("require_status")
        if required_status is None:
            return True
        if (change.data or {}).get("status") != required_status:
            return False
        if change.change_type == ChangeType.UPDATE:
            # Only the transition into the required status
            return (change.previous_data or {}).get("status") != required_status
        return True

    async def handle_change(self, change: ChangeNotification) -> EventEnvelope | None:
        """Publish one envelope for ``change``; returns None when the change is filtered out."""
        if not self.should_emit(change):
            self.filtered += 1
            logger.debug(
                "Change filtered out",
                extra={
                    "source_collection": change.source_collection,
                    "change_type": change.change_type.value,
                },
            )
            return None

        envelope = self.build_envelope(change)
        await self.publisher.publish(envelope)
        self.published += 1
        record_event_processed(change.collection_kind, "emitted")
        log_with_context(
            logger,
            logging.INFO,
            "Envelope emitted",
            event_id=envelope.event_id,
            change_type=envelope.change_type.value,
            source_document_id=envelope.source_document_id,
        )
        return envelope

    async def run(
        self,
        source: AsyncIterator[ChangeNotification],
        shutdown_event: asyncio.Event,
    ) -> None:
        """Drain ``source`` until it ends or shutdown is requested."""
        logger.info("Change capture emitter started")
        try:
            async for change in source:
                if shutdown_event.is_set():
                    break
                try:
                    await self.handle_change(change)
                except Exception as e:
                    log_exception(
                        logger,
                        e,
                        "Failed to publish change",
                        change_id=change.change_id,
                        source_document_id=change.document_id,
                    )
                    raise
        finally:
            logger.info(
                "Change capture emitter stopped",
                extra={"published": self.published, "filtered": self.filtered},
            )
