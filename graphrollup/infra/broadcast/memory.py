"""In-process broadcaster: rollup events reach subscribers of the same process only."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict, Set

from .base import Broadcast

logger = logging.getLogger(__name__)

# Wakes a subscriber blocked on an empty queue when the broadcaster closes
_CLOSED = object()


class InMemoryBroadcaster(Broadcast):
    """
    Fan-out over bounded per-subscriber queues.

    A slow subscriber loses messages instead of stalling the executor;
    ``dropped`` counts them. Consumers that need every lifecycle event
    replay the execution stream from the event log.
    """

    def __init__(self, max_queue_size: int = 1000) -> None:
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self._max_queue_size = max_queue_size
        self._closed = False
        self.dropped = 0

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def publish(self, channel: str, message: str) -> None:
        if self._closed:
            return
        for queue in tuple(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.warning(f"Subscriber on {channel} is full; dropped one rollup event")

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        subscribers = self._subscribers.setdefault(channel, set())
        subscribers.add(queue)
        try:
            while not self._closed:
                message = await queue.get()
                if message is _CLOSED:
                    break
                yield message
        finally:
            subscribers.discard(queue)
            if not subscribers and self._subscribers.get(channel) is subscribers:
                del self._subscribers[channel]

    async def close(self) -> None:
        self._closed = True
        for subscribers in self._subscribers.values():
            for queue in subscribers:
                # Queues may be full; make room for the sentinel
                while queue.full():
                    queue.get_nowait()
                queue.put_nowait(_CLOSED)
        self._subscribers.clear()
