"""
Outbound Delivery Service - sends one outbox row under the rate limiters

Each call is one delivery attempt and commits its own bookkeeping. A limiter
hit or an open circuit never fails the row: it goes back to pending with a
`next_retry_at`, and the caller re-queues the job with the returned delay.
"""
import enum
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import redis.asyncio as aioredis

from app.core.exceptions import AppException, CircuitBreakerOpenError
from app.core.logging import get_logger
from app.core.rate_limiter import RateLimiter, get_burst_limiter, get_global_limiter, get_per_phone_limiter
from app.core.validation import PhoneNumberValidator
from app.db.models.outbox_message import OutboxMessage
from app.domain.messages import OutboundMessage
from app.domain.services.fish.alert_service import FishAlertService
from app.domain.services.outbox_service import OutboxService
from app.domain.services.whatsapp import BaseWhatsAppProvider, get_whatsapp_provider

logger = get_logger(__name__)


class DeliveryOutcome(str, enum.Enum):
    SENT = "sent"
    DEFERRED = "deferred"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class DeliveryResult:
    outcome: DeliveryOutcome
    outbox_id: int
    delay_seconds: int = 0
    will_retry: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "outbox_id": self.outbox_id,
            "delay_seconds": self.delay_seconds,
            "will_retry": self.will_retry,
            "reason": self.reason,
        }


class OutboundDeliveryService:
    def __init__(
        self,
        db,
        redis: aioredis.Redis | None,
        provider: BaseWhatsAppProvider | None = None,
    ):
        self.db = db
        self.redis = redis
        self.provider = provider or get_whatsapp_provider()
        self.outbox = OutboxService(db)
        self.global_limiter = get_global_limiter()
        self.per_phone_limiter = get_per_phone_limiter()
        self.burst_limiter = get_burst_limiter()

    async def _limit_delay(self, message: OutboxMessage, now: float | None = None) -> int:
        """Seconds to wait before this send is allowed; 0 = send now"""
        if self.redis is None:
            logger.warning(
                "Rate limiters unavailable, sending without limits",
                extra_data={"outbox_id": message.id}
            )
            return 0

        now = time.time() if now is None else now
        limits = [(self.global_limiter, "all"), (self.per_phone_limiter, message.recipient_phone)]
        if message.is_broadcast:
            limits.append((self.burst_limiter, "all"))

        # hit שנדחה מחזיר את ההיטים של המגבילים הקודמים - שליחה שנדחתה לא נספרת
        allowed: list[tuple[RateLimiter, str]] = []
        for limiter, scope in limits:
            delay = await limiter.hit(self.redis, scope=scope, now=now)
            if delay:
                for taken, taken_scope in allowed:
                    await taken.release(self.redis, scope=taken_scope, now=now)
                return delay
            allowed.append((limiter, scope))
        return 0

    async def _fail_linked_alerts(self, message: OutboxMessage, reason: str, now: datetime | None = None) -> None:
        if not message.is_broadcast:
            return
        await FishAlertService(self.db, None).apply_delivery_status(message.id, "failed", reason, now=now)
        await self.db.commit()

    async def deliver(self, outbox_id: int, clock: float | None = None) -> DeliveryResult:
        """
        One delivery attempt for an outbox row.

        `clock` is the epoch time used for the limiter windows (tests pin it).
        """
        message = await self.outbox.claim(outbox_id)
        if message is None:
            return DeliveryResult(DeliveryOutcome.SKIPPED, outbox_id, reason="not pending")

        delay = await self._limit_delay(message, now=clock)
        if delay:
            await self.outbox.defer(message, delay)
            logger.info(
                "Outbound send deferred by rate limit",
                extra_data={
                    "outbox_id": message.id,
                    "recipient": PhoneNumberValidator.mask(message.recipient_phone),
                    "delay_seconds": delay,
                }
            )
            return DeliveryResult(DeliveryOutcome.DEFERRED, message.id, delay_seconds=delay)

        try:
            content = OutboundMessage.from_content(message.message_content)
        except (KeyError, TypeError, ValueError) as e:
            reason = f"Unsendable content: {e}"
            await self.outbox.mark_as_skipped(message, reason)
            await self._fail_linked_alerts(message, reason)
            logger.error("Outbox message skipped", extra_data={"outbox_id": message.id, "error": str(e)})
            return DeliveryResult(DeliveryOutcome.SKIPPED, message.id, reason=reason)

        try:
            provider_message_id = await self.provider.send(message.recipient_phone, content)
        except CircuitBreakerOpenError as e:
            delay = max(1, int(e.details.get("retry_after_seconds") or 1))
            await self.outbox.defer(message, delay)
            return DeliveryResult(DeliveryOutcome.DEFERRED, message.id, delay_seconds=delay, reason=e.message)
        except Exception as e:
            error = e.message if isinstance(e, AppException) else str(e)
            will_retry = await self.outbox.mark_as_failed(message, error)
            if not will_retry:
                await self._fail_linked_alerts(message, error)
            delay = 0
            if will_retry and message.next_retry_at is not None:
                delay = max(0, int((message.next_retry_at - message.processed_at).total_seconds()))
            return DeliveryResult(
                DeliveryOutcome.FAILED, message.id, delay_seconds=delay, will_retry=will_retry, reason=error
            )

        await self.outbox.mark_as_sent(message, provider_message_id)
        logger.info(
            "Outbound message sent",
            extra_data={
                "outbox_id": message.id,
                "recipient": PhoneNumberValidator.mask(message.recipient_phone),
                "message_type": message.message_type,
            }
        )
        return DeliveryResult(DeliveryOutcome.SENT, message.id)
