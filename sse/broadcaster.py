"""
sse/broadcaster.py -- Fan-out of published messages to per-event subscribers.

Pattern: single owner task. publish() drops (message, future) on an inbox;
one broadcast task drains the inbox and copies each message into the bounded
queue of every subscriber of that event, then resolves the future. The
subscriber map is only touched from the event loop and no code path awaits
while iterating or mutating it, so it needs no lock and a subscriber is
never handed a message after unsubscribe() has returned.

Backpressure: disconnect-slow-subscriber. Fan-out never blocks. When a
subscriber's queue is full it is removed and closed; it can still drain
what it already holds, then its stream ends and the browser reconnects.
Every subscriber therefore sees an in-order prefix of the messages
published while it was subscribed, and one stuck client cannot stall the
others.

Subscriber lifecycle: SUBSCRIBED -> DRAINING (its HTTP request is going
away) -> REMOVED (out of the map, queue closed).

Usage:
    broadcaster = Broadcaster(queue_size=10)
    broadcaster.register_events("", "event1")
    broadcaster.run()                       # inside a running event loop
    sub = broadcaster.subscribe(request_id, "event1")
    await broadcaster.publish(Message(event="event1", data="x"))
    broadcaster.unsubscribe("event1", sub)
    await broadcaster.close()

Layer rule: no imports from api/, web/, auth/, or mail/.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger("webauth.sse")

DEFAULT_QUEUE_SIZE = 10


class EventNotRegistered(LookupError):
    pass


class BroadcasterNotRunning(RuntimeError):
    pass


@dataclass(frozen=True)
class Message:
    """One server-sent event. retry is in milliseconds; 0 means unset."""

    event: str = ""
    data: str = ""
    id: str = ""
    retry: int = 0

    def __post_init__(self) -> None:
        for name in ("event", "id"):
            value = getattr(self, name)
            if "\n" in value or "\r" in value:
                raise ValueError(f"{name} must not contain a line break")
        if self.retry < 0:
            raise ValueError("retry must not be negative")


class SubscriberState(str, Enum):
    SUBSCRIBED = "subscribed"
    DRAINING = "draining"
    REMOVED = "removed"


@dataclass(eq=False)
class Subscriber:
    id: str
    event: str
    queue: asyncio.Queue
    state: SubscriberState = field(default=SubscriberState.SUBSCRIBED)

    @property
    def closed(self) -> bool:
        return self.state is SubscriberState.REMOVED

    def close(self) -> None:
        """Mark removed and wake the reader with a None sentinel if there is room."""
        if self.closed:
            return
        self.state = SubscriberState.REMOVED
        with contextlib.suppress(asyncio.QueueFull):
            self.queue.put_nowait(None)


class Broadcaster:
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        # asyncio.Queue treats maxsize=0 as unbounded.
        if queue_size <= 0:
            raise ValueError(f"queue_size must be positive, got {queue_size}")
        self.queue_size = queue_size
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._inbox: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_event(self, event: str) -> None:
        self._subscribers.setdefault(event, [])

    def register_events(self, *events: str) -> None:
        for event in events:
            self.register_event(event)

    def event_exists(self, event: str) -> bool:
        return event in self._subscribers

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, subscriber_id: str, event: str) -> Subscriber:
        if not self.event_exists(event):
            raise EventNotRegistered(event)
        sub = Subscriber(id=subscriber_id, event=event, queue=asyncio.Queue(maxsize=self.queue_size))
        self._subscribers[event].append(sub)
        logger.debug("Subscribed %s to %r", subscriber_id, event)
        return sub

    def unsubscribe(self, event: str, sub: Subscriber) -> None:
        """Remove sub from event and close it. Safe to call more than once."""
        subs = self._subscribers.get(event, [])
        if sub in subs:
            subs.remove(sub)
            logger.debug("Unsubscribed %s from %r", sub.id, event)
        sub.close()

    def subscriber_count(self, event: str) -> int:
        return len(self._subscribers.get(event, []))

    def subscribers(self, event: str) -> list[Subscriber]:
        return list(self._subscribers.get(event, []))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run(self) -> None:
        """Start the broadcast task on the running event loop."""
        if self.running:
            return
        self._inbox = asyncio.Queue()
        self._task = asyncio.get_running_loop().create_task(self._broadcast_loop())

    async def publish(self, msg: Message) -> None:
        """Deliver msg to every subscriber of msg.event, then return."""
        if not self.event_exists(msg.event):
            raise EventNotRegistered(msg.event)
        if not self.running:
            raise BroadcasterNotRunning()
        done = asyncio.get_running_loop().create_future()
        await self._inbox.put((msg, done))
        await done

    async def _broadcast_loop(self) -> None:
        while True:
            msg, done = await self._inbox.get()
            try:
                self._fan_out(msg)
            finally:
                if not done.done():
                    done.set_result(None)

    def _fan_out(self, msg: Message) -> None:
        for sub in list(self._subscribers.get(msg.event, [])):
            try:
                sub.queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("Dropping slow subscriber %s on %r", sub.id, msg.event)
                self.unsubscribe(msg.event, sub)

    async def close(self) -> None:
        """Stop the broadcast task, fail pending publishes, close every subscriber."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._inbox is not None:
            while not self._inbox.empty():
                _msg, done = self._inbox.get_nowait()
                if not done.done():
                    done.set_exception(BroadcasterNotRunning())
        for event, subs in self._subscribers.items():
            for sub in list(subs):
                self.unsubscribe(event, sub)
