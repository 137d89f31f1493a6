import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

@dataclass
class Event:
    name: str
    payload: dict[str, Any]
    job_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "job_id": self.job_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }

Subscriber = Callable[[Event], Union[None, Awaitable[None]]]

class EventBus:
    """
    In-process publish/subscribe channel for job lifecycle events.

    Delivery is fire-and-forget and at-most-once: a subscriber that raises,
    or a queue that is full, loses that event and nothing is retried.
    """

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscribers: list[Subscriber] = []
        self._queues: set[asyncio.Queue] = set()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def open_queue(self) -> asyncio.Queue:
        """Queue-backed subscription, used by the websocket push channel."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._queues.add(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue) -> None:
        self._queues.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers) + len(self._queues)

    async def publish(self, name: str, payload: Optional[dict[str, Any]] = None, job_id: Optional[str] = None) -> Event:
        event = Event(name=str(name), payload=payload or {}, job_id=job_id)
        logger.debug(f"EVENT {event.name} job={job_id}")

        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event subscriber failed on {event.name}: {e}", exc_info=True)

        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event.name} for a slow subscriber (queue full)")

        return event
