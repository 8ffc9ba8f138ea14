"""Event publishers and an in-process broadcast hub."""

from __future__ import annotations

import asyncio
import json
import threading
import weakref
from collections import deque

from skillrun.models import EventPublisher, ExecutionEvent, StoreError

_HUB_CAPACITY = 1024


class TeeEventPublisher(EventPublisher):
    """Publishes each event to two publishers, left first."""

    def __init__(self, left: EventPublisher, right: EventPublisher) -> None:
        self.left = left
        self.right = right

    def publish(self, event: ExecutionEvent) -> None:
        self.left.publish(event)
        self.right.publish(event)


class StdoutEventPublisher(EventPublisher):
    """Prints each event as one JSON line."""

    def publish(self, event: ExecutionEvent) -> None:
        try:
            line = json.dumps(event.to_dict())
        except (TypeError, ValueError) as error:
            raise StoreError(f"failed to serialize event: {error}") from error
        print(line)


def _wake(waiter: asyncio.Future) -> None:
    if not waiter.done():
        waiter.set_result(None)


class _Channel:
    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self._subscribers: weakref.WeakSet[EventSubscription] = weakref.WeakSet()
        self._lock = threading.Lock()

    def attach(self, subscription: EventSubscription) -> None:
        with self._lock:
            self._subscribers.add(subscription)

    def send(self, event: ExecutionEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._deliver(event)


class EventSubscription:
    """Receives every event broadcast after it was created."""

    def __init__(self, channel: _Channel) -> None:
        self._capacity = channel.capacity
        self._buffer: deque[ExecutionEvent] = deque()
        self._lagged = 0
        self._lock = threading.Lock()
        self._waiters: list[asyncio.Future] = []
        channel.attach(self)

    def _deliver(self, event: ExecutionEvent) -> None:
        with self._lock:
            self._buffer.append(event)
            if len(self._buffer) > self._capacity:
                self._buffer.popleft()
                self._lagged += 1
            waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            waiter.get_loop().call_soon_threadsafe(_wake, waiter)

    def _take_locked(self) -> ExecutionEvent | None:
        if self._lagged:
            skipped, self._lagged = self._lagged, 0
            raise StoreError(f"failed to receive event: channel lagged by {skipped}")
        if self._buffer:
            return self._buffer.popleft()
        return None

    async def recv(self) -> ExecutionEvent:
        """Wait for the next event."""
        loop = asyncio.get_running_loop()
        while True:
            with self._lock:
                event = self._take_locked()
                if event is not None:
                    return event
                waiter = loop.create_future()
                self._waiters.append(waiter)
            await waiter

    def try_recv(self) -> ExecutionEvent | None:
        """Return the next event if one is buffered, else None."""
        with self._lock:
            return self._take_locked()


class EventHubPublisher(EventPublisher):
    """Publishes into an EventHub; sending with no subscribers is not an error."""

    def __init__(self, channel: _Channel) -> None:
        self._channel = channel

    def publish(self, event: ExecutionEvent) -> None:
        self._channel.send(event)


class EventHub:
    """Broadcasts events to any number of subscriptions."""

    def __init__(self, capacity: int = _HUB_CAPACITY) -> None:
        self._channel = _Channel(capacity)

    def subscribe(self) -> EventSubscription:
        return EventSubscription(self._channel)

    def publisher(self) -> EventHubPublisher:
        return EventHubPublisher(self._channel)