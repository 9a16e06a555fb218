"""
Outbound Rate Limiting

Redis fixed-window counters shared by every API process and Celery worker.
A limiter never blocks: `hit()` answers with the number of seconds the
caller should wait before trying again, and the caller re-queues the work.
"""
import math
import time
from dataclasses import dataclass

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateWindow:
    """`limit` hits allowed per `seconds`-long window"""

    limit: int
    seconds: int


class RateLimiter:
    """
    Multi-window fixed-window limiter.

    Every window must have room for the hit to be counted. A rejected hit is
    rolled back from the windows it already incremented, so deferred work does
    not eat into the budget of the window it is deferred from.
    """

    def __init__(self, name: str, windows: list[RateWindow], release_after: int):
        if not windows:
            raise ValueError("RateLimiter needs at least one window")
        self.name = name
        self.windows = windows
        self.release_after = release_after

    def _key(self, scope: str, window: RateWindow, now: float) -> str:
        bucket = int(now // window.seconds)
        return f"ratelimit:{self.name}:{scope}:{window.seconds}:{bucket}"

    async def _incr_with_ttl(self, redis: aioredis.Redis, key: str, ttl: int) -> int:
        # INCR ו-EXPIRE אטומיים - למפתח תמיד יש TTL
        pipe = redis.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, ttl)
        count, _ = await pipe.execute()
        return int(count)

    async def hit(
        self,
        redis: aioredis.Redis,
        scope: str = "all",
        now: float | None = None,
    ) -> int:
        """
        Count one hit against every window.

        Returns:
            0 when the hit is allowed, otherwise the delay in seconds before retrying
        """
        now = time.time() if now is None else now
        counted: list[str] = []

        for window in self.windows:
            key = self._key(scope, window, now)
            # שני חלונות - המפתח נמחק רק אחרי שהחלון נסגר בוודאות
            count = await self._incr_with_ttl(redis, key, window.seconds * 2)
            counted.append(key)

            if count > window.limit:
                for rolled_back in counted:
                    await redis.decr(rolled_back)
                window_left = (int(now // window.seconds) + 1) * window.seconds - now
                delay = max(self.release_after, math.ceil(window_left))
                logger.debug(
                    "Rate limit reached",
                    extra_data={
                        "limiter": self.name,
                        "window_seconds": window.seconds,
                        "limit": window.limit,
                        "delay_seconds": delay,
                    }
                )
                return delay

        return 0

    async def release(self, redis: aioredis.Redis, scope: str = "all", now: float | None = None) -> None:
        """
        Give back an allowed hit that was not used.

        `now` must be the timestamp passed to the matching `hit()` so the
        same window buckets are decremented.
        """
        now = time.time() if now is None else now
        for window in self.windows:
            await redis.decr(self._key(scope, window, now))


class ConcurrencyLimiter:
    """
    Bounds how many batch jobs run at the same time.

    The counter carries a lease TTL so a worker that dies without releasing
    cannot hold a slot forever.
    """

    def __init__(self, name: str, max_concurrent: int, release_after: int, lease_seconds: int):
        self.name = name
        self.max_concurrent = max_concurrent
        self.release_after = release_after
        self.lease_seconds = lease_seconds

    @property
    def key(self) -> str:
        return f"concurrency:{self.name}"

    async def acquire(self, redis: aioredis.Redis) -> bool:
        pipe = redis.pipeline(transaction=True)
        pipe.incr(self.key)
        pipe.expire(self.key, self.lease_seconds)
        count, _ = await pipe.execute()
        if count > self.max_concurrent:
            await redis.decr(self.key)
            logger.info(
                "Concurrency limit reached",
                extra_data={"limiter": self.name, "max_concurrent": self.max_concurrent}
            )
            return False
        return True

    async def release(self, redis: aioredis.Redis) -> None:
        count = await redis.decr(self.key)
        if count < 0:
            await redis.set(self.key, "0", ex=self.lease_seconds)


def get_global_limiter() -> RateLimiter:
    """Cap on provider API calls across all destinations"""
    return RateLimiter(
        "whatsapp-api",
        [RateWindow(settings.RATE_LIMIT_GLOBAL_PER_SECOND, 1)],
        release_after=settings.RATE_LIMIT_GLOBAL_RELEASE_SECONDS,
    )


def get_per_phone_limiter() -> RateLimiter:
    """Cap on messages to a single phone"""
    return RateLimiter(
        "per-phone",
        [RateWindow(settings.RATE_LIMIT_PER_PHONE_PER_MINUTE, 60)],
        release_after=settings.RATE_LIMIT_PER_PHONE_RELEASE_SECONDS,
    )


def get_burst_limiter() -> RateLimiter:
    """Separate budget for alert broadcasts"""
    return RateLimiter(
        "burst",
        [
            RateWindow(settings.RATE_LIMIT_BURST_PER_SECOND, 1),
            RateWindow(settings.RATE_LIMIT_BURST_PER_MINUTE, 60),
        ],
        release_after=settings.RATE_LIMIT_BURST_RELEASE_SECONDS,
    )


def get_batch_limiter() -> ConcurrencyLimiter:
    return ConcurrencyLimiter(
        "batch-processing",
        max_concurrent=settings.BATCH_MAX_CONCURRENT_JOBS,
        release_after=settings.BATCH_RELEASE_SECONDS,
        lease_seconds=settings.BATCH_LEASE_SECONDS,
    )
