"""Abstract base class for broadcasting implementations."""

from __future__ import annotations

import abc
from typing import AsyncIterator


class Broadcast(abc.ABC):
    """Abstract pub/sub broadcasting interface for rollup lifecycle events."""

    @abc.abstractmethod
    async def publish(self, channel: str, message: str) -> None:
        """Publish a message to a channel."""
        ...

    @abc.abstractmethod
    def subscribe(self, channel: str) -> AsyncIterator[str]:
        """
        Subscribe to a channel and yield messages.

        Caller must iterate/cleanup. The iterator should handle
        cancellation gracefully.
        """
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        """Close the broadcaster and cleanup resources."""
        ...


def build_broadcaster(redis_url: str | None) -> Broadcast:
    """Redis pub/sub when a URL is configured, in-process queues otherwise."""
    if redis_url:
        from .redis import RedisBroadcaster

        return RedisBroadcaster(redis_url)
    from .memory import InMemoryBroadcaster

    return InMemoryBroadcaster()
