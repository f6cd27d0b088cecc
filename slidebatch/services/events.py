"""
In-process publish/subscribe for batch job events.

Publishing never awaits: each subscriber owns an unbounded queue, so a slow
consumer cannot stall the orchestrator loop and no event is dropped.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from slidebatch.models.event import BatchEvent, BatchEventType

logger = logging.getLogger(__name__)

Listener = Callable[[BatchEvent], Any]


class Subscription:
    """Queue-backed event stream, optionally filtered to one job."""

    def __init__(self, bus: "EventBus", job_id: Optional[str] = None):
        self._bus = bus
        self.job_id = job_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, event: BatchEvent) -> bool:
        return self.job_id is None or self.job_id == event.job_id

    async def get(self, timeout: Optional[float] = None) -> BatchEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def close(self):
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> BatchEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.queue.get()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class EventBus:
    """Fan-out of BatchEvents to queue subscribers and inline listeners."""

    def __init__(self):
        self._subscriptions: Set[Subscription] = set()
        self._listeners: List[Listener] = []

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, job_id)
        self._subscriptions.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        self._subscriptions.discard(subscription)

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event_type: BatchEventType, job_id: str,
                data: Optional[Dict[str, Any]] = None) -> BatchEvent:
        event = BatchEvent(type=event_type, job_id=job_id, data=data or {})
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.queue.put_nowait(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Event listener failed for %s on job %s: %s", event_type.value, job_id, e)
        return event
