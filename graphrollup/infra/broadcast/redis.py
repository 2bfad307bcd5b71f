"""Redis pub/sub broadcaster: rollup events shared across API and worker processes."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis

from .base import Broadcast

logger = logging.getLogger(__name__)


class RedisBroadcaster(Broadcast):
    """
    Publishes each envelope on its tenant channel.

    Publish failures are logged and swallowed: events are also in the
    event log, and a lost broadcast must never fail an execution.
    """

    def __init__(
        self,
        url: str,
        client: Optional[aioredis.Redis] = None,
        poll_timeout: float = 1.0,
    ) -> None:
        self._url = url
        self._client = client
        self._poll_timeout = poll_timeout
        self._closed = False

    def _redis(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=10,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
            logger.info(f"Rollup event broadcaster using Redis at {self._url}")
        return self._client

    async def publish(self, channel: str, message: str) -> None:
        if self._closed:
            return
        try:
            await self._redis().publish(channel, message)
        except (aioredis.RedisError, OSError) as e:
            logger.error(f"Could not publish rollup event on {channel}: {e}")

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        pubsub = self._redis().pubsub()
        await pubsub.subscribe(channel)
        try:
            while not self._closed:
                try:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=self._poll_timeout
                    )
                except (aioredis.RedisError, OSError) as e:
                    logger.error(f"Rollup event subscription on {channel} failed: {e}")
                    await asyncio.sleep(0.1)
                    continue
                if message is None or message.get("type") != "message":
                    continue
                data = message.get("data")
                if data is not None:
                    yield data if isinstance(data, str) else data.decode("utf-8")
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except (aioredis.RedisError, OSError) as e:
                logger.warning(f"Unsubscribe from {channel} failed: {e}")

    async def close(self) -> None:
        self._closed = True
        if self._client is not None:
            await self._client.aclose()
            self._client = None
