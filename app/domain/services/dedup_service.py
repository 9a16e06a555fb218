"""
Dedup Gate - at-most-once acceptance of webhook message ids.

Two tiers: a Redis key with a short TTL absorbs the provider's retry floods
cheaply, and a `processed_webhooks` row survives restarts. The id is marked
before any processing starts; a crash after marking loses that message
rather than processing it twice.
"""
import enum
from datetime import timedelta

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.processed_webhook import ProcessedWebhook, ProcessingStatus

logger = get_logger(__name__)

CACHE_KEY_PREFIX = "wa_msg_"


class DedupResult(str, enum.Enum):
    NEW = "new"
    DUPLICATE = "duplicate"


class DedupGate:
    """Check-and-mark for provider message ids"""

    def __init__(self, db: AsyncSession, redis: aioredis.Redis | None):
        self.db = db
        self.redis = redis

    @staticmethod
    def cache_key(message_id: str) -> str:
        return f"{CACHE_KEY_PREFIX}{message_id}"

    async def _claim_cache(self, message_id: str) -> bool | None:
        """
        SET NX on the fast tier.

        Returns:
            True if claimed, False if already present, None if Redis is unavailable
        """
        if self.redis is None:
            return None
        try:
            claimed = await self.redis.set(
                self.cache_key(message_id), "1", nx=True, ex=settings.DEDUP_CACHE_TTL_SECONDS
            )
        except (RedisError, OSError) as e:
            logger.warning(
                "Dedup cache unavailable, falling back to durable check",
                extra_data={"message_id": message_id, "error": str(e)}
            )
            return None
        return bool(claimed)

    async def _release_cache(self, message_id: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.delete(self.cache_key(message_id))
        except (RedisError, OSError):
            logger.warning("Failed to release dedup cache key", extra_data={"message_id": message_id})

    async def accept(self, message_id: str) -> DedupResult:
        """
        Must run before any processing of the message.

        NEW means this caller owns the message; DUPLICATE means someone else
        already accepted it and the caller must do nothing.
        """
        claimed = await self._claim_cache(message_id)
        if claimed is False:
            logger.info("Duplicate message absorbed by cache", extra_data={"message_id": message_id})
            return DedupResult.DUPLICATE

        # INSERT אופטימיסטי ב-savepoint; commit מיידי כדי שהסימון ישרוד גם אם העיבוד נכשל
        try:
            async with self.db.begin_nested():
                self.db.add(ProcessedWebhook(
                    message_id=message_id,
                    status=ProcessingStatus.PROCESSING.value,
                    processed_at=utcnow(),
                ))
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Duplicate message absorbed by durable record", extra_data={"message_id": message_id})
            return DedupResult.DUPLICATE
        except Exception:
            # לא סומן בבסיס הנתונים - משחררים את המפתח כדי שה-retry של הספק יעובד
            await self._release_cache(message_id)
            raise

        return DedupResult.NEW

    async def mark_completed(self, message_id: str) -> None:
        await self.db.execute(
            update(ProcessedWebhook)
            .where(ProcessedWebhook.message_id == message_id)
            .values(status=ProcessingStatus.COMPLETED.value, completed_at=utcnow())
        )
        await self.db.commit()

    async def mark_failed(self, message_id: str, error: str) -> None:
        """Recorded for observability; a failed message is not retried"""
        await self.db.execute(
            update(ProcessedWebhook)
            .where(ProcessedWebhook.message_id == message_id)
            .values(status=ProcessingStatus.FAILED.value, last_error=error[:1000])
        )
        await self.db.commit()

    async def cleanup(self, days: int | None = None) -> int:
        """Delete durable records older than the retention window"""
        days = days if days is not None else settings.PROCESSED_WEBHOOK_RETENTION_DAYS
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(ProcessedWebhook).where(ProcessedWebhook.processed_at < cutoff)
        )
        await self.db.commit()
        logger.info(
            "Cleaned up processed webhook records",
            extra_data={"deleted": result.rowcount, "days": days}
        )
        return result.rowcount
