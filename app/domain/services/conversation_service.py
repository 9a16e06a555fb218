"""
Conversation Service - the inbound pipeline after the webhook

ingest(): dedup gate -> dispatch decision -> route inline or queue for the
worker. process(): one routed transition in one transaction, retried when
the session compare-and-swap loses, with post-commit jobs released only
after the commit.
"""
import enum
import time

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import StaleSessionError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.domain.messages import IncomingMessage
from app.domain.services.dedup_service import DedupGate, DedupResult
from app.domain.services.dispatch_service import DispatchMode, DispatchService
from app.domain.services.post_commit import JobPublisher, PostCommitJobs
from app.state_machine.router import FlowRouter
from app.state_machine.session_store import SessionStore

logger = get_logger(__name__)


class IngestOutcome(str, enum.Enum):
    DUPLICATE = "duplicate"
    PROCESSED = "processed"
    QUEUED = "queued"
    FAILED = "failed"


class ConversationService:
    def __init__(self, db: AsyncSession, publisher: JobPublisher):
        self.db = db
        self.publisher = publisher
        self.store = SessionStore(db)

    async def process(self, message: IncomingMessage) -> None:
        """
        Route one message; the whole route is retried on a lost session CAS.

        Raises:
            StaleSessionError: every attempt lost the compare-and-swap
        """
        attempts = settings.SESSION_CAS_ATTEMPTS
        for attempt in range(1, attempts + 1):
            jobs = PostCommitJobs()
            try:
                session = await self.store.get_or_create(message.sender)
                router = FlowRouter(self.db, jobs)
                await router.route(message, session)
                await self.db.commit()
            except StaleSessionError:
                await self.db.rollback()
                jobs.discard()
                logger.info(
                    "Session changed concurrently, re-routing",
                    extra_data={
                        "phone": PhoneNumberValidator.mask(message.sender),
                        "message_id": message.message_id,
                        "attempt": attempt,
                    }
                )
                if attempt == attempts:
                    raise
                continue
            except Exception:
                await self.db.rollback()
                jobs.discard()
                raise

            jobs.release(self.publisher)
            return

    async def ingest(self, message: IncomingMessage, redis: aioredis.Redis | None) -> IngestOutcome:
        """Dedup, then process inline or hand to the conversations queue"""
        gate = DedupGate(self.db, redis)
        if await gate.accept(message.message_id) == DedupResult.DUPLICATE:
            return IngestOutcome.DUPLICATE

        session = await self.store.get(message.sender)
        mode = DispatchService.decide(message, session)
        if mode == DispatchMode.ASYNC:
            self.publisher.process_incoming_message(message.to_payload())
            logger.info(
                "Message queued for worker",
                extra_data={"message_id": message.message_id, "flow": session.current_flow if session else None}
            )
            return IngestOutcome.QUEUED

        started = time.monotonic()
        try:
            await self.process(message)
        except Exception as e:
            logger.error(
                "Inline message processing failed",
                extra_data={
                    "message_id": message.message_id,
                    "phone": PhoneNumberValidator.mask(message.sender),
                    "error": str(e),
                },
                exc_info=True,
            )
            await gate.mark_failed(message.message_id, str(e))
            return IngestOutcome.FAILED

        elapsed_ms = (time.monotonic() - started) * 1000
        if elapsed_ms > settings.MAX_SYNC_PROCESSING_MS:
            logger.warning(
                "Inline processing exceeded budget",
                extra_data={
                    "message_id": message.message_id,
                    "elapsed_ms": round(elapsed_ms),
                    "budget_ms": settings.MAX_SYNC_PROCESSING_MS,
                }
            )
        await gate.mark_completed(message.message_id)
        return IngestOutcome.PROCESSED
