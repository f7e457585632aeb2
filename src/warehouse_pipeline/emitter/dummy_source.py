"""
Synthetic change source for local runs.

Generates training session lifecycles for a fixed pool of users: a session
is created in progress, completed by an update, and occasionally deleted.
Seeded generation is reproducible.
"""

import asyncio
import random
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from core.utils import utc_now
from warehouse_pipeline.emitter.change_capture import ChangeNotification
from warehouse_pipeline.schemas.envelope import ChangeType

EXERCISE_TYPES = ["squat", "push_up", "plank", "lunge", "deadlift", "burpee"]
PLATFORMS = [("ios", ["17.4", "17.5", "18.0"]), ("android", ["13", "14", "15"])]
DEVICE_MODELS = ["iPhone15,2", "iPhone16,1", "Pixel 8", "SM-S918B", "Pixel 7a"]
APP_VERSIONS = ["3.2.0", "3.2.1", "3.3.0"]


@dataclass
class DummySourceConfig:
    seed: int | None = None
    user_count: int = 20
    interval_seconds: float = 1.0
    delete_rate: float = 0.05
    max_changes: int | None = None


class DummyChangeSource:
    def __init__(self, config: DummySourceConfig | None = None):
        self.config = config or DummySourceConfig()
        self._rng = random.Random(self.config.seed)
        self._users = [f"user-{i:04d}" for i in range(self.config.user_count)]
        self._in_progress: list[tuple[str, str, dict[str, Any]]] = []
        self._completed: list[tuple[str, str, dict[str, Any]]] = []

    def _change_id(self) -> str:
        return str(uuid.UUID(int=self._rng.getrandbits(128)))

    def _new_session(self, now: datetime) -> dict[str, Any]:
        platform, versions = self._rng.choice(PLATFORMS)
        return {
            "userId": self._rng.choice(self._users),
            "exerciseType": self._rng.choice(EXERCISE_TYPES),
            "status": "in_progress",
            "startTime": now.isoformat(),
            "deviceInfo": {
                "platform": platform,
                "osVersion": self._rng.choice(versions),
                "model": self._rng.choice(DEVICE_MODELS),
            },
            "appVersion": self._rng.choice(APP_VERSIONS),
        }

    def next_change(self, now: datetime | None = None) -> ChangeNotification:
        now = now or utc_now()

        if self._completed and self._rng.random() < self.config.delete_rate:
            collection, doc_id, data = self._completed.pop(self._rng.randrange(len(self._completed)))
            return ChangeNotification(
                change_id=self._change_id(),
                source_collection=collection,
                document_id=doc_id,
                change_type=ChangeType.DELETE,
                occurred_at=now,
                previous_data=data,
            )

        if self._in_progress and self._rng.random() < 0.5:
            collection, doc_id, before = self._in_progress.pop(0)
            duration = self._rng.randint(60, 1800)
            after = {
                **before,
                "status": "completed",
                "endTime": (now + timedelta(seconds=duration)).isoformat(),
                "durationSeconds": float(duration),
                "repCount": self._rng.randint(5, 120),
                "score": round(self._rng.uniform(40, 100), 1),
            }
            self._completed.append((collection, doc_id, after))
            return ChangeNotification(
                change_id=self._change_id(),
                source_collection=collection,
                document_id=doc_id,
                change_type=ChangeType.UPDATE,
                occurred_at=now,
                data=after,
                previous_data=before,
            )

        data = self._new_session(now)
        collection = f"users/{data['userId']}/sessions"
        doc_id = f"s-{self._rng.getrandbits(48):012x}"
        self._in_progress.append((collection, doc_id, data))
        return ChangeNotification(
            change_id=self._change_id(),
            source_collection=collection,
            document_id=doc_id,
            change_type=ChangeType.CREATE,
            occurred_at=now,
            data=data,
        )

    async def changes(self, shutdown_event: asyncio.Event | None = None) -> AsyncIterator[ChangeNotification]:
        produced = 0
        while shutdown_event is None or not shutdown_event.is_set():
            if self.config.max_changes is not None and produced >= self.config.max_changes:
                return
            yield self.next_change()
            produced += 1
            await asyncio.sleep(self.config.interval_seconds)
