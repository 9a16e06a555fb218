"""
שירות בדיקת בריאות - בדיקות תלויות (DB, Redis, Celery broker, WhatsApp circuit).

liveness לא בודק תלויות; readiness בודק את כולן.
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.circuit_breaker import CircuitState, get_whatsapp_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import get_session

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות, ללא פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"
_ERROR_WHATSAPP_CIRCUIT_OPEN = "error: whatsapp_circuit_open"


async def _check_db() -> str:
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """Ping the broker; workers themselves are not probed"""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


def _check_whatsapp_circuit() -> str:
    """Open circuit = the Cloud API has been failing; messages are deferred, not lost"""
    if get_whatsapp_circuit_breaker().state == CircuitState.OPEN:
        return _ERROR_WHATSAPP_CIRCUIT_OPEN
    return _CHECK_OK


async def check_readiness() -> dict[str, Any]:
    """
    Readiness of every external dependency.

    Returns {"status": "healthy" | "degraded", "db": ..., "redis": ...,
    "celery": ..., "whatsapp": ...} where each check is "ok" or "error: ...".
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
        "whatsapp": _check_whatsapp_circuit(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)
    return {"status": _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED, **checks}
