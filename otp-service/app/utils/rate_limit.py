import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from app.utils.logger import get_logger

logger = get_logger(__name__)


class CounterStore(ABC):
    """Fixed-window counters keyed by string"""

    @abstractmethod
    async def incr(self, key: str, ttl_seconds: int) -> Tuple[int, int]:
        """Increment the counter; returns (count, seconds until the window resets)"""

    async def close(self) -> None:
        pass


class InMemoryCounterStore(CounterStore):
    def __init__(self):
        self.counters: Dict[str, Tuple[int, float]] = {}

    def _live(self, key: str, now: float) -> Optional[Tuple[int, float]]:
        entry = self.counters.get(key)
        if entry is not None and entry[1] <= now:
            del self.counters[key]
            return None
        return entry

    async def incr(self, key: str, ttl_seconds: int) -> Tuple[int, int]:
        now = time.monotonic()
        entry = self._live(key, now)
        if entry is None:
            entry = (0, now + ttl_seconds)
        count, reset_at = entry[0] + 1, entry[1]
        self.counters[key] = (count, reset_at)
        return count, max(1, int(reset_at - now))


class RedisCounterStore(CounterStore):
    """Counters shared by every instance of the service"""

    def __init__(self, redis_url: str):
        self.redis = aioredis.from_url(redis_url, decode_responses=True)

    async def incr(self, key: str, ttl_seconds: int) -> Tuple[int, int]:
        count = await self.redis.incr(key)
        if count == 1:
            await self.redis.expire(key, ttl_seconds)
        ttl = await self.redis.ttl(key)
        if ttl < 0:
            # key survived without an expiry
            await self.redis.expire(key, ttl_seconds)
            ttl = ttl_seconds
        return count, ttl

    async def close(self) -> None:
        await self.redis.aclose()


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimiter:
    def __init__(self, store: CounterStore, max_requests: int, window_seconds: int, prefix: str = "otp_rl"):
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.prefix = prefix

    async def hit(self, key: str) -> RateLimitResult:
        try:
            count, reset_in = await self.store.incr(f"{self.prefix}:{key}", self.window_seconds)
        except RedisError as e:
            logger.warning(f"Rate limit store unavailable, allowing request: {e}")
            return RateLimitResult(allowed=True, remaining=self.max_requests)

        if count > self.max_requests:
            return RateLimitResult(allowed=False, remaining=0, retry_after=reset_in)
        return RateLimitResult(allowed=True, remaining=self.max_requests - count)
