"""In-process job-changed notifications keyed by job id."""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from job_board_service.logging import get_logger
from job_board_service.services.payload_fields import now_iso

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class JobEventBus:
    """
    Fan-out of job events to subscribers of that job.

    Every subscriber owns a bounded queue. Publishing never blocks: an event
    for a subscriber whose queue is full is dropped for that subscriber and
    logged.
    """

    def __init__(self, queue_size: int) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = defaultdict(set)
        self._sequence = 0
        self._logger = get_logger(__name__)

    def subscribe(self, job_id: str) -> asyncio.Queue[dict[str, Any]]:
        """Register a new subscriber for a job and return its queue."""
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[job_id].add(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        """Remove a subscriber queue."""
        subscribers = self._subscribers.get(job_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if len(subscribers) == 0:
            del self._subscribers[job_id]

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def publish(self, job_id: str, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
        """Deliver an event to every current subscriber of the job."""
        self._sequence += 1
        event = {
            "sequence": self._sequence,
            "job_id": job_id,
            "type": event_type,
            "data": data,
            "timestamp": now_iso(),
        }
        for queue in list(self._subscribers.get(job_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self._logger.warning(
                    "Subscriber queue full, event dropped",
                    extra={"job_id": job_id, "event_type": event_type},
                )
        return event

    async def stream(self, job_id: str, keepalive_seconds: float) -> AsyncIterator[dict[str, Any]]:
        """Async generator of SSE messages for one job."""
        queue = self.subscribe(job_id)
        try:
            yield {"retry": 3000}
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
                except TimeoutError:
                    yield {"comment": "keepalive"}
                    continue
                yield {
                    "event": event["type"],
                    "data": json.dumps(event),
                    "id": str(event["sequence"]),
                }
        finally:
            self.unsubscribe(job_id, queue)
