"""
Outbox Service - Transactional Outbox Pattern for outbound WhatsApp messages

Send intents are inserted in the caller's transaction (no commit here) and
delivered later by a worker. The state-changing methods used by the worker
commit immediately, since each delivery attempt is its own unit of work.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List

from sqlalchemy import select, update, delete, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.database import utcnow
from app.db.models.outbox_message import OutboxMessage, OutboxMessageType, MessageStatus
from app.domain.messages import OutboundMessage

logger = get_logger(__name__)

# שורה שנתקעה ב-processing (worker מת באמצע) חוזרת לתור אחרי הזמן הזה
STUCK_PROCESSING_SECONDS = 300


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff with a hard upper bound:
        backoff = base_seconds * (2 ** retry_count), capped at max_backoff_seconds

    Avoids computing huge powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # האם 2**retry_count >= ceil(max/base), בלי לחשב את החזקה עצמה
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    backoff = base_seconds * (1 << retry_count)
    return min(backoff, max_backoff_seconds)


class OutboxService:
    """Queueing and delivery bookkeeping for outbox messages"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def queue_message(
        self,
        recipient_phone: str,
        message: OutboundMessage,
        message_type: OutboxMessageType = OutboxMessageType.REPLY,
    ) -> OutboxMessage:
        """Insert a send intent in the current transaction and flush to get its id"""
        row = OutboxMessage(
            recipient_phone=recipient_phone,
            message_type=message_type.value,
            message_content=message.to_content(),
            status=MessageStatus.PENDING,
            retry_count=0,
            max_retries=settings.WHATSAPP_MAX_RETRIES,
            created_at=utcnow(),
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def get(self, message_id: int) -> OutboxMessage | None:
        result = await self.db.execute(
            select(OutboxMessage).where(OutboxMessage.id == message_id)
        )
        return result.scalar_one_or_none()

    async def get_due_messages(self, limit: int | None = None, now: datetime | None = None) -> List[OutboxMessage]:
        """Pending messages whose retry/deferral time has come"""
        now = now or utcnow()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PENDING,
                or_(OutboxMessage.next_retry_at.is_(None), OutboxMessage.next_retry_at <= now),
            )
            .order_by(OutboxMessage.created_at, OutboxMessage.id)
            .limit(limit or settings.OUTBOX_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def claim(self, message_id: int) -> OutboxMessage | None:
        """
        Move a pending message to processing.

        Returns None if another worker already claimed it or it is not pending.
        """
        result = await self.db.execute(
            update(OutboxMessage)
            .where(OutboxMessage.id == message_id, OutboxMessage.status == MessageStatus.PENDING)
            .values(status=MessageStatus.PROCESSING, processed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            return None
        message = await self.get(message_id)
        if message is not None:
            await self.db.refresh(message)
        return message

    async def mark_as_sent(self, message: OutboxMessage, provider_message_id: str | None) -> None:
        message.status = MessageStatus.SENT
        message.processed_at = utcnow()
        message.next_retry_at = None
        message.provider_message_id = provider_message_id
        message.last_error = None
        await self.db.commit()

    async def defer(self, message: OutboxMessage, delay_seconds: int) -> None:
        """Rate-limited: back to pending without consuming a retry"""
        message.status = MessageStatus.PENDING
        message.next_retry_at = utcnow() + timedelta(seconds=delay_seconds)
        await self.db.commit()

    async def mark_as_failed(self, message: OutboxMessage, error: str) -> bool:
        """
        Record a failed attempt.

        Returns:
            True if the message will be retried, False if it is now terminally failed
        """
        message.retry_count = (message.retry_count or 0) + 1
        message.last_error = error[:1000]

        if message.retry_count >= message.max_retries:
            message.status = MessageStatus.FAILED
            message.next_retry_at = None
            will_retry = False
        else:
            message.status = MessageStatus.PENDING
            backoff_seconds = _calculate_backoff_seconds(
                message.retry_count,
                base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
            )
            message.next_retry_at = utcnow() + timedelta(seconds=backoff_seconds)
            will_retry = True

        await self.db.commit()
        logger.warning(
            "Outbox message send failed",
            extra_data={
                "outbox_id": message.id,
                "recipient": PhoneNumberValidator.mask(message.recipient_phone),
                "retry_count": message.retry_count,
                "will_retry": will_retry,
                "error": error[:200],
            }
        )
        return will_retry

    async def mark_as_skipped(self, message: OutboxMessage, reason: str) -> None:
        """Terminal failure without retry (unsendable content)"""
        message.status = MessageStatus.FAILED
        message.last_error = reason[:1000]
        message.next_retry_at = None
        await self.db.commit()

    async def find_by_provider_message_id(self, provider_message_id: str) -> OutboxMessage | None:
        result = await self.db.execute(
            select(OutboxMessage).where(OutboxMessage.provider_message_id == provider_message_id)
        )
        return result.scalar_one_or_none()

    async def requeue_stuck(self, now: datetime | None = None) -> int:
        """processing rows abandoned by a dead worker go back to pending"""
        cutoff = (now or utcnow()) - timedelta(seconds=STUCK_PROCESSING_SECONDS)
        result = await self.db.execute(
            update(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PROCESSING,
                OutboxMessage.processed_at < cutoff,
            )
            .values(status=MessageStatus.PENDING, next_retry_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.warning("Requeued stuck outbox messages", extra_data={"count": result.rowcount})
        return result.rowcount

    async def cleanup_old_messages(self, days: int | None = None) -> int:
        """Delete sent/failed messages older than the retention window"""
        days = days if days is not None else settings.OUTBOX_RETENTION_DAYS
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(OutboxMessage).where(
                and_(
                    OutboxMessage.status.in_([MessageStatus.SENT, MessageStatus.FAILED]),
                    OutboxMessage.created_at < cutoff,
                )
            )
        )
        await self.db.commit()
        return result.rowcount
