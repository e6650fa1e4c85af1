"""Redis connection shared by the Redis-backed order store and checkout storage."""

import redis.asyncio as redis
from redis.asyncio.client import PubSub

from pizzeria.utils.logging import get_logger

logger = get_logger(__name__)


class StateManager:
    """One Redis connection with an explicit connect/disconnect lifecycle.

    Values are plain strings; callers own their serialization.
    """

    def __init__(self, redis_url: str) -> None:
        self.redis_url = redis_url
        self.redis_client: redis.Redis | None = None

    async def connect(self) -> None:
        if self.redis_client is not None:
            return
        self.redis_client = redis.from_url(
            self.redis_url, encoding="utf-8", decode_responses=True
        )
        logger.info("redis_connected", url=self.redis_url)

    async def disconnect(self) -> None:
        if self.redis_client is None:
            return
        await self.redis_client.aclose()
        self.redis_client = None
        logger.info("redis_disconnected")

    @property
    def client(self) -> redis.Redis:
        if self.redis_client is None:
            raise RuntimeError("StateManager is not connected")
        return self.redis_client

    async def set_text(self, key: str, value: str, ttl: int | None = None) -> None:
        await self.client.set(key, value, ex=ttl)

    async def get_text(self, key: str) -> str | None:
        return await self.client.get(key)

    async def delete(self, *keys: str) -> int:
        return await self.client.delete(*keys)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern, scanning instead of KEYS."""
        deleted = 0
        async for key in self.client.scan_iter(match=pattern):
            deleted += await self.client.delete(key)
        logger.info("redis_pattern_deleted", pattern=pattern, deleted=deleted)
        return deleted

    async def next_number(self, key: str) -> int:
        """Atomically hand out the next value of a counter, starting at 1."""
        return await self.client.incr(key)

    # Time-ordered index (sorted set scored by timestamp)

    async def index_add(self, key: str, member: str, score: float) -> None:
        await self.client.zadd(key, {member: score})

    async def index_members(self, key: str, newest_first: bool = True) -> list[str]:
        return await self.client.zrange(key, 0, -1, desc=newest_first)

    async def index_remove(self, key: str, member: str) -> None:
        await self.client.zrem(key, member)

    # Change feed

    async def publish(self, channel: str, message: str) -> None:
        await self.client.publish(channel, message)
        logger.debug("redis_published", channel=channel)

    def pubsub(self) -> PubSub:
        return self.client.pubsub()
