"""
Ephemeral key/value store backed by Redis.

Holds short-lived coordination state: sliding rate-limit windows, 429
records, cancellation flags and progress pub/sub. Nothing here is the
source of truth; callers treat every failure as "unknown" and fall back.
"""

from typing import Optional, Protocol, Sequence
import uuid
import logging

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class EphemeralStore(Protocol):
    """Operations the pipeline needs from a TTL key/value store."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def incr(self, key: str, ttl_seconds: int) -> int: ...

    async def window_count(self, key: str, window_start: float) -> int: ...

    async def window_add(self, key: str, timestamps: Sequence[float], ttl_seconds: int) -> None: ...

    async def publish(self, channel: str, message: str) -> int: ...

    async def ping(self) -> bool: ...


class RedisStore:
    """EphemeralStore over ``redis.asyncio``; the client is created lazily."""

    def __init__(self, url: str, client: Optional[Redis] = None):
        self.url = url
        self._client = client

    @property
    def client(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(self.url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.setex(key, ttl_seconds, value)

    async def incr(self, key: str, ttl_seconds: int) -> int:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            results = await pipe.execute()
        return int(results[0])

    async def window_count(self, key: str, window_start: float) -> int:
        """Drop entries older than ``window_start`` and count the rest."""
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            results = await pipe.execute()
        return int(results[1])

    async def window_add(self, key: str, timestamps: Sequence[float], ttl_seconds: int) -> None:
        # Members must be unique or concurrent reservations collapse
        members = {f"{ts}:{uuid.uuid4().hex}": ts for ts in timestamps}
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zadd(key, members)
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def publish(self, channel: str, message: str) -> int:
        return await self.client.publish(channel, message)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
