"""Sync event channel (publish/subscribe) and its SSE rendering.

Sync runs execute in worker threads (scheduler jobs, threadpool endpoints)
while listeners are asyncio tasks serving SSE connections, so publishing hops
onto each subscriber's own event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)

SYNC_COMPLETED = "sync_completed"
SYNC_ERROR = "sync_error"


def json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True)
class SyncEvent:
    event: str
    data: Dict[str, Any]

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data, default=json_default)}\n\n"


class Subscription:
    """One listener's queue, bound to the loop that created it"""

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int):
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def get(self, timeout: Optional[float] = None) -> Optional[SyncEvent]:
        """Next event, or None when ``timeout`` elapses first."""
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class SyncEventChannel:
    """Process-owned channel; subscribers live exactly as long as their connection."""

    def __init__(self, maxsize: int = 256):
        self._maxsize = maxsize
        self._subscribers: set[Subscription] = set()
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        sub = Subscription(asyncio.get_running_loop(), self._maxsize)
        with self._lock:
            self._subscribers.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _deliver(self, sub: Subscription, event: SyncEvent) -> None:
        # Runs on the subscriber's loop, so nothing else touches the queue meanwhile.
        if sub.queue.full():
            dropped = sub.queue.get_nowait()
            logger.warning(f"Slow sync event subscriber; dropping queued {dropped.event} event")
        sub.queue.put_nowait(event)

    def publish(self, event: str, data: Dict[str, Any]) -> int:
        """Fan an event out to every subscriber; safe to call from any thread."""
        item = SyncEvent(event=event, data=data)
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for sub in subscribers:
            try:
                sub.loop.call_soon_threadsafe(self._deliver, sub, item)
                delivered += 1
            except RuntimeError:
                # Listener's loop is closed; its connection is gone.
                self.unsubscribe(sub)
        logger.info(f"Broadcasting {event} event to {delivered} subscriber(s)")
        return delivered

    async def stream(self, heartbeat_seconds: float = 15.0) -> AsyncIterator[str]:
        """SSE frames for one connection; unsubscribes when the consumer stops."""
        sub = self.subscribe()
        try:
            yield ": connected\n\n"
            while True:
                item = await sub.get(timeout=heartbeat_seconds)
                if item is None:
                    yield ": keep-alive\n\n"
                    continue
                yield item.to_sse()
        finally:
            self.unsubscribe(sub)


# Global channel instance
sync_events = SyncEventChannel()
