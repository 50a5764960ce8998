"""
Publish/subscribe channel for batch changes.

The job store publishes one BatchEvent per committed mutation; UI layers
subscribe by batch id instead of polling the tables.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from src.core.config import settings
from src.entities.base import utcnow

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    job_created = "job_created"
    job_updated = "job_updated"
    job_deleted = "job_deleted"
    url_results_created = "url_results_created"
    url_result_updated = "url_result_updated"
    url_results_updated = "url_results_updated"


@dataclass(frozen=True)
class BatchEvent:
    batch_id: str
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "type": str(self.type),
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


Subscriber = Callable[[BatchEvent], None]


class EventBus:
    def __init__(self, queue_size: int = settings.EVENT_QUEUE_SIZE) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._queue_size = queue_size

    def subscribe(self, batch_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for one batch; returns an unsubscribe function."""
        self._subscribers[batch_id].append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(batch_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[batch_id]

        return unsubscribe

    def publish(self, event: BatchEvent) -> None:
        for callback in list(self._subscribers.get(event.batch_id, ())):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Subscriber failed on %s for batch %s", event.type, event.batch_id
                )

    def subscriber_count(self, batch_id: str) -> int:
        return len(self._subscribers.get(batch_id, ()))

    async def stream(self, batch_id: str) -> AsyncIterator[BatchEvent]:
        """
        Yield events for ``batch_id`` until the consumer stops iterating.

        A slow consumer loses the oldest buffered events rather than blocking
        publishers.
        """
        queue: asyncio.Queue[BatchEvent] = asyncio.Queue(maxsize=self._queue_size)

        def enqueue(event: BatchEvent) -> None:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

        unsubscribe = self.subscribe(batch_id, enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
