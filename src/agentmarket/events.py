"""In-process job event channel.

Workers and the coordinator subscribe here so a status change wakes them
immediately instead of waiting for the next poll tick. Polling stays as the
fallback, so a dropped event only costs latency.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Optional

import structlog

from .models import JobStatus, utcnow

logger = structlog.get_logger()


@dataclass
class JobEvent:
    """A job changed status."""
    job_id: str
    status: JobStatus
    previous: Optional[JobStatus] = None
    created_at: object = field(default_factory=utcnow)


@dataclass
class Subscription:
    """Bounded queue of events for one listener."""
    name: str
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=256))
    subscription_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


class JobEventBus:
    """Fan-out of job events to every subscriber.

    When a subscriber's queue is full the oldest event is dropped.
    """

    def __init__(self):
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(self, name: str) -> Subscription:
        sub = Subscription(name=name)
        self._subscriptions[sub.subscription_id] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.subscription_id, None)

    def publish(self, event: JobEvent) -> None:
        for sub in list(self._subscriptions.values()):
            if sub.queue.full():
                try:
                    sub.queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.debug("job_event_dropped", subscriber=sub.name, job_id=event.job_id)
            sub.queue.put_nowait(event)

    async def wait(self, subscription: Subscription, timeout: float) -> list[JobEvent]:
        """Wait up to ``timeout`` seconds for events, then drain the queue."""
        events: list[JobEvent] = []
        try:
            events.append(await asyncio.wait_for(subscription.queue.get(), timeout=timeout))
        except asyncio.TimeoutError:
            return events

        while not subscription.queue.empty():
            events.append(subscription.queue.get_nowait())
        return events

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
