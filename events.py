"""
Real-time request lifecycle events over Server-Sent Events.

``RequestEventBus`` keeps the set of connected subscribers and pushes each
published event to all of them. Delivery is at most once: there is no
buffering or replay, and a subscriber whose delivery fails is dropped.

Route handlers publish from worker threads while stream connections live on
the event loop, so a ``Subscriber`` hands frames to its loop with
``call_soon_threadsafe``.
"""

import asyncio
import json
import logging
import threading
import time
from typing import Any, AsyncIterator, Optional, Set

from bson import ObjectId
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": ping\n\n"
DEFAULT_QUEUE_SIZE = 100


class SubscriberClosed(ConnectionError):
    pass


def format_event(event_type: str, data: Any) -> str:
    payload = jsonable_encoder({"type": event_type, "data": data}, custom_encoder={ObjectId: str})
    return f"data: {json.dumps(payload)}\n\n"


class Subscriber:
    """A stream connection's inbox. Must be created on the loop that reads it."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop or asyncio.get_running_loop()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize)
        self.closed = False

    def send(self, frame: str) -> None:
        if self.closed:
            raise SubscriberClosed("subscriber closed")
        self.loop.call_soon_threadsafe(self._deliver, frame)

    def _deliver(self, frame: str) -> None:
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            # a reader this far behind is treated like a failed write
            logger.warning("Stream subscriber fell behind, closing it")
            self.close()

    def close(self) -> None:
        self.closed = True

    async def receive(self, timeout: float) -> Optional[str]:
        """Next frame, or None when nothing arrived within ``timeout`` seconds."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class RequestEventBus:

    def __init__(self):
        self._subscribers: Set[Any] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, handle: Any) -> None:
        with self._lock:
            self._subscribers.add(handle)
        logger.info("Request stream subscriber connected (%d active)", self.subscriber_count)

    def unsubscribe(self, handle: Any) -> None:
        with self._lock:
            self._subscribers.discard(handle)
        logger.info("Request stream subscriber disconnected (%d active)", self.subscriber_count)

    def publish(self, event_type: str, payload: Any) -> int:
        """Push one event to every current subscriber; returns how many accepted it."""
        frame = format_event(event_type, payload)
        with self._lock:
            targets = list(self._subscribers)
        delivered = 0
        for handle in targets:
            try:
                handle.send(frame)
            except Exception:
                logger.warning("Dropping request stream subscriber after failed %s delivery", event_type,
                               exc_info=True)
                self.unsubscribe(handle)
                continue
            delivered += 1
        return delivered

    def close(self) -> None:
        with self._lock:
            handles = list(self._subscribers)
            self._subscribers.clear()
        for handle in handles:
            close = getattr(handle, "close", None)
            if close is not None:
                close()


async def event_stream(bus: RequestEventBus, subscriber: Subscriber, heartbeat: float = 30.0) -> AsyncIterator[str]:
    """SSE frames for one connection: a ``connected`` frame, events, and heartbeats while idle.

    The subscription lasts exactly as long as the generator; closing or
    cancelling it (client disconnect) unsubscribes.
    """
    bus.subscribe(subscriber)
    try:
        yield format_event("connected", {"ts": int(time.time() * 1000)})
        while not subscriber.closed:
            frame = await subscriber.receive(heartbeat)
            yield frame if frame is not None else HEARTBEAT_FRAME
    finally:
        subscriber.close()
        bus.unsubscribe(subscriber)
