"""
Redis client.

Backs the fast tier of the dedup gate, the outbound rate limiters and the
alert batch slots. Connections belong to the event loop that opened them:
the API process keeps one client for its lifetime, while every Celery task
runs on a fresh loop (see app.workers.tasks.get_event_loop) and closes its
client when that loop ends.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_client: aioredis.Redis | None = None
_client_loop: asyncio.AbstractEventLoop | None = None


def _mask_redis_url(url: str) -> str:
    """redis://:secret@host:6379 → redis://:****@host:6379"""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """Client bound to the running loop; raises if Redis does not answer PING."""
    global _client, _client_loop
    loop = asyncio.get_running_loop()
    if _client is not None and _client_loop is loop:
        return _client

    if _client is not None:
        # ה-loop הקודם כבר נסגר, אין על מה לעשות aclose
        logger.debug("Dropping Redis client from a finished event loop")

    client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    await client.ping()
    _client, _client_loop = client, loop
    logger.info("Redis client initialized", extra_data={"url": _mask_redis_url(settings.REDIS_URL)})
    return client


async def get_redis_or_none() -> aioredis.Redis | None:
    """
    Like get_redis(), but an outage yields None.

    Callers degrade instead of failing: dedup falls back to the durable
    record, rate limiters let the send through, batches run without a slot.
    """
    try:
        return await get_redis()
    except (RedisError, OSError) as e:
        logger.warning("Redis unavailable, continuing without it", extra_data={"error": str(e)})
        return None


async def close_redis() -> None:
    global _client, _client_loop
    if _client is None:
        return
    client, _client, _client_loop = _client, None, None
    await client.aclose()
    logger.info("Redis connection closed")
