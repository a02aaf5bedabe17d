"""DeskPilot – Redis Bus Connector.

Owns the Redis connection shared by the durable job queue and the realtime
event relay (pub/sub on `deskpilot:events`).
"""

from typing import Any, Awaitable, Callable

import redis.asyncio as redis
import structlog

from app.core.redis_keys import EVENTS_CHANNEL

logger = structlog.get_logger()


class RedisBus:
    """Async Redis connection + Pub/Sub helper."""

    CHANNEL_EVENTS = EVENTS_CHANNEL

    def __init__(self, redis_url: str = "redis://127.0.0.1:6379/0") -> None:
        self._redis_url = redis_url
        self._client: redis.Redis | None = None
        self._pubsub: Any = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._client = redis.from_url(
            self._redis_url,
            decode_responses=True,
            retry_on_timeout=True,
        )
        await self._client.ping()
        logger.info("redis.connected")

    async def disconnect(self) -> None:
        """Gracefully close Redis connection."""
        if self._pubsub:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("redis.disconnected")

    async def health_check(self) -> bool:
        """Check Redis connectivity."""
        if not self._client:
            return False
        try:
            return bool(await self._client.ping())
        except (redis.ConnectionError, redis.TimeoutError):
            logger.error("redis.health_check_failed")
            return False

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message to a Redis channel.

        Returns:
            Number of subscribers that received the message.
        """
        count = await self.client.publish(channel, message)
        logger.debug("redis.published", channel=channel, subscribers=count)
        return count

    async def subscribe(self, channel: str, callback: Callable[[str], Awaitable[None]]) -> None:
        """Subscribe to a channel and await `callback` for each message. Runs until cancelled."""
        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(channel)
        logger.info("redis.subscribed", channel=channel)

        async for message in self._pubsub.listen():
            if message["type"] == "message":
                try:
                    await callback(message["data"])
                except Exception as exc:
                    logger.error("redis.subscriber_callback_failed", channel=channel, error=str(exc))

    @property
    def client(self) -> redis.Redis:
        """Direct access to the Redis client."""
        if not self._client:
            raise RuntimeError("Redis not connected. Call connect() first.")
        return self._client
