"""
Celery Tasks

Worker side of the conversation pipeline and the transactional outbox:
queued conversation turns, outbound delivery under the rate limiters, fish
alert batches and the periodic sweeps.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any, Awaitable, Callable

from app.workers.celery_app import celery_app
from app.workers.publisher import get_job_publisher
from app.core.exceptions import NotFoundException
from app.core.logging import get_logger, log_async_operation, set_correlation_id
from app.core.rate_limiter import get_batch_limiter
from app.core.redis_client import get_redis_or_none
from app.core.validation import PhoneNumberValidator
from app.db.database import get_task_session
from app.db.models.fish_catch import FishCatch
from app.domain.messages import IncomingMessage
from app.domain.services.conversation_service import ConversationService
from app.domain.services.dedup_service import DedupGate
from app.domain.services.delivery_service import DeliveryOutcome, OutboundDeliveryService
from app.domain.services.fish.alert_service import FishAlertService
from app.domain.services.fish.catch_service import FishCatchService
from app.domain.services.messenger import OutboxMessenger
from app.domain.services.outbox_service import OutboxService
from app.domain.services.post_commit import PostCommitJobs

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    A private event loop for one Celery task.

    The loop's Redis client is closed before the loop itself shuts down.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Run a coroutine to completion from a sync task, under a fresh correlation id"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


# ==================== Conversations ====================


@celery_app.task(name="app.workers.tasks.process_incoming_message")
def process_incoming_message(payload: dict):
    """A conversation turn the webhook handed off (media or heavy flows)"""

    async def _process():
        message = IncomingMessage.from_payload(payload)
        redis = await get_redis_or_none()
        async with get_task_session() as db:
            gate = DedupGate(db, redis)
            try:
                await ConversationService(db, get_job_publisher()).process(message)
            except Exception as e:
                logger.error(
                    "Queued message processing failed",
                    extra_data={
                        "message_id": message.message_id,
                        "phone": PhoneNumberValidator.mask(message.sender),
                        "error": str(e),
                    },
                    exc_info=True,
                )
                await gate.mark_failed(message.message_id, str(e))
                return {"message_id": message.message_id, "status": "failed"}

            await gate.mark_completed(message.message_id)
            return {"message_id": message.message_id, "status": "completed"}

    return run_async(_process())


# ==================== Outbound delivery ====================


@celery_app.task(name="app.workers.tasks.send_outbox_message")
def send_outbox_message(outbox_id: int):
    """One delivery attempt; deferred or retryable rows are re-queued with their delay"""

    async def _send():
        redis = await get_redis_or_none()
        async with get_task_session() as db:
            return await OutboundDeliveryService(db, redis).deliver(outbox_id)

    result = run_async(_send())
    if result.outcome == DeliveryOutcome.DEFERRED or (
        result.outcome == DeliveryOutcome.FAILED and result.will_retry
    ):
        send_outbox_message.apply_async(args=[outbox_id], countdown=max(1, result.delay_seconds))
    return result.to_dict()


@celery_app.task(name="app.workers.tasks.process_outbox_messages")
def process_outbox_messages():
    """
    Periodic outbox sweep.

    Picks up rows whose job was lost (publish failed, worker died) and rows
    whose retry/deferral time has come. A row deferred here stays pending
    and is seen again by a later sweep.
    """

    async def _process():
        redis = await get_redis_or_none()
        async with get_task_session() as db:
            outbox = OutboxService(db)
            await outbox.requeue_stuck()
            due_ids = [message.id for message in await outbox.get_due_messages()]

            delivery = OutboundDeliveryService(db, redis)
            results = []
            for outbox_id in due_ids:
                result = await delivery.deliver(outbox_id)
                results.append(result.to_dict())
            return results

    return run_async(_process())


# ==================== Fish alerts ====================


async def _run_alert_batch(
    catch_id: int,
    action: Callable[[FishAlertService, FishCatch], Awaitable[Any]],
) -> dict | None:
    """
    Run one alert batch inside a concurrency slot.

    Returns None when no slot is free (the caller re-queues), otherwise the
    batch result. Delivery jobs are published only after the commit.
    """
    redis = await get_redis_or_none()
    limiter = get_batch_limiter()
    if redis is not None and not await limiter.acquire(redis):
        return None

    try:
        jobs = PostCommitJobs()
        async with get_task_session() as db:
            service = FishAlertService(db, OutboxMessenger(db, jobs))
            try:
                catch = await service.catches.get_catch(catch_id)
            except NotFoundException:
                logger.warning("Catch not found for alert batch", extra_data={"catch_id": catch_id})
                return {"catch_id": catch_id, "error": "not found"}

            result = await action(service, catch)
            await db.commit()

        jobs.release(get_job_publisher())
        return {"catch_id": catch_id, **result.to_dict()}
    finally:
        if redis is not None:
            await limiter.release(redis)


@celery_app.task(name="app.workers.tasks.process_new_catch")
def process_new_catch(catch_id: int):
    """Match a new catch against subscriptions and alert the immediate ones"""
    result = run_async(_run_alert_batch(catch_id, lambda service, catch: service.process_new_catch(catch)))
    if result is None:
        countdown = get_batch_limiter().release_after
        logger.info("Alert batch deferred", extra_data={"catch_id": catch_id, "countdown": countdown})
        process_new_catch.apply_async(args=[catch_id], countdown=countdown)
        return {"catch_id": catch_id, "deferred": True}
    return result


@celery_app.task(name="app.workers.tasks.notify_catch_sold_out")
def notify_catch_sold_out(catch_id: int):
    """Send alternatives to everyone who said they were coming"""
    result = run_async(_run_alert_batch(catch_id, lambda service, catch: service.notify_sold_out(catch)))
    if result is None:
        countdown = get_batch_limiter().release_after
        logger.info("Sold-out batch deferred", extra_data={"catch_id": catch_id, "countdown": countdown})
        notify_catch_sold_out.apply_async(args=[catch_id], countdown=countdown)
        return {"catch_id": catch_id, "deferred": True}
    return result


@celery_app.task(name="app.workers.tasks.send_fish_digests")
def send_fish_digests():
    """Flush scheduled (morning / twice-daily / weekly) alerts"""

    @log_async_operation("fish digest sweep")
    async def _digest():
        jobs = PostCommitJobs()
        async with get_task_session() as db:
            result = await FishAlertService(db, OutboxMessenger(db, jobs)).send_digests()
            await db.commit()
        jobs.release(get_job_publisher())
        return result.to_dict()

    return run_async(_digest())


# ==================== Maintenance ====================


@celery_app.task(name="app.workers.tasks.expire_stale_catches")
def expire_stale_catches():
    @log_async_operation("catch expiry")
    async def _expire():
        async with get_task_session() as db:
            count = await FishCatchService(db).expire_stale()
            await db.commit()
            return {"expired": count}

    return run_async(_expire())


@celery_app.task(name="app.workers.tasks.cleanup_processed_webhooks")
def cleanup_processed_webhooks(days: int | None = None):
    """ניקוי רשומות dedup ישנות"""

    async def _cleanup():
        async with get_task_session() as db:
            return {"deleted": await DedupGate(db, None).cleanup(days)}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_old_outbox_messages")
def cleanup_old_outbox_messages(days: int | None = None):
    """Clean up old sent/failed messages from the outbox"""

    async def _cleanup():
        async with get_task_session() as db:
            return {"deleted": await OutboxService(db).cleanup_old_messages(days)}

    return run_async(_cleanup())
