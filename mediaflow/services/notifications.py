"""
Notification hub: routes progress events to the uploader's live connections.

Subscriptions are keyed by owner and scoped to the group the caller was
authorized for. Publishing never waits on a subscriber: each subscription
owns a bounded buffer and the oldest undelivered event is dropped when it
overflows.
"""

import asyncio
import threading
import uuid
from collections import deque
from typing import Protocol

import structlog

from mediaflow.schemas.job import ProgressEvent

logger = structlog.get_logger()


class EventSink(Protocol):
    def publish(self, event: ProgressEvent) -> int: ...


class Subscription:
    """One live connection's view of an owner's progress events."""

    def __init__(self, owner_id: str, group_id: str, buffer_size: int = 100) -> None:
        if buffer_size < 1:
            raise ValueError(f"buffer_size must be >= 1, got {buffer_size}")
        self.id = uuid.uuid4().hex
        self.owner_id = owner_id
        self.group_id = group_id
        self.dropped = 0
        self._buffer: deque[ProgressEvent] = deque(maxlen=buffer_size)
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    def offer(self, event: ProgressEvent) -> bool:
        """Buffer an event without blocking. Returns False once closed."""
        if self._closed:
            return False
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
            logger.warning(
                "subscriber_buffer_overflow",
                subscription_id=self.id,
                owner_id=self.owner_id,
                dropped=self.dropped,
            )
        self._buffer.append(event)
        self._ready.set()
        return True

    def drain(self) -> list[ProgressEvent]:
        """Pop every buffered event in delivery order."""
        events = list(self._buffer)
        self._buffer.clear()
        return events

    async def get(self) -> ProgressEvent | None:
        """Wait for the next event; None once closed and drained."""
        while True:
            if self._buffer:
                return self._buffer.popleft()
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class NotificationHub:
    """Subscription table plus fire-and-forget fan-out."""

    def __init__(self, buffer_size: int = 100) -> None:
        self.buffer_size = buffer_size
        self._subscriptions: dict[str, dict[str, Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, owner_id: str, group_id: str) -> Subscription:
        """
        Register interest in an owner's events.

        The caller must already have authorized the connection for
        ``owner_id`` within ``group_id``; events from other groups are never
        delivered to this subscription.
        """
        subscription = Subscription(owner_id, group_id, self.buffer_size)
        with self._lock:
            self._subscriptions.setdefault(owner_id, {})[subscription.id] = subscription
        logger.info(
            "subscriber_added",
            subscription_id=subscription.id,
            owner_id=owner_id,
            group_id=group_id,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Idempotent; safe after the connection already went away."""
        with self._lock:
            owner_subs = self._subscriptions.get(subscription.owner_id)
            removed = owner_subs.pop(subscription.id, None) if owner_subs else None
            if owner_subs is not None and not owner_subs:
                del self._subscriptions[subscription.owner_id]
        subscription.close()
        if removed is not None:
            logger.info("subscriber_removed", subscription_id=subscription.id, owner_id=subscription.owner_id)

    def publish(self, event: ProgressEvent) -> int:
        """Deliver to every matching subscription. Returns the delivery count."""
        with self._lock:
            targets = list(self._subscriptions.get(event.owner_id, {}).values())

        delivered = 0
        for subscription in targets:
            if subscription.group_id != event.group_id:
                continue
            try:
                if subscription.offer(event):
                    delivered += 1
            except Exception as e:
                logger.error(
                    "subscriber_delivery_failed",
                    subscription_id=subscription.id,
                    job_id=event.job_id,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            job_id=event.job_id,
            progress=event.progress,
            state=event.state.value,
            delivered=delivered,
        )
        return delivered

    def subscriber_count(self, owner_id: str | None = None) -> int:
        with self._lock:
            if owner_id is not None:
                return len(self._subscriptions.get(owner_id, {}))
            return sum(len(subs) for subs in self._subscriptions.values())

    def close(self) -> None:
        """Close every subscription; used on shutdown."""
        with self._lock:
            subscriptions = [s for subs in self._subscriptions.values() for s in subs.values()]
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()
        logger.info("notification_hub_closed", subscriptions=len(subscriptions))
