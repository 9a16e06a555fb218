"""
Session Store - durable per-sender flow/step/scratch record

The store is the only code that writes current_flow/current_step. Writes are
compare-and-swap on the `version` column: a write based on a stale read
raises StaleSessionError instead of overwriting a newer transition.
"""
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidStateTransitionError, StaleSessionError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.database import utcnow
from app.db.models.conversation_session import ConversationSession
from app.state_machine.scratch import FlowScratch, dump_scratch, empty_scratch, load_scratch
from app.state_machine.states import FlowType, MainMenuStep, IDLE_STEPS, is_declared_step

logger = get_logger(__name__)


class SessionStore:
    """Reads and compare-and-swap writes of conversation sessions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, phone: str) -> ConversationSession | None:
        result = await self.db.execute(
            select(ConversationSession).where(ConversationSession.phone == phone)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, phone: str) -> ConversationSession:
        """Lazily create the session as main_menu/idle on the first message"""
        session = await self.get(phone)
        if session is not None:
            return session

        try:
            async with self.db.begin_nested():
                session = ConversationSession(
                    phone=phone,
                    current_flow=FlowType.MAIN_MENU.value,
                    current_step=MainMenuStep.IDLE.value,
                    temp_data={},
                    version=1,
                    last_activity_at=utcnow(),
                )
                self.db.add(session)
        except IntegrityError:
            # delivery מקבילה לאותו שולח יצרה את השורה ראשונה
            logger.info(
                "Session created concurrently, reloading",
                extra_data={"phone": PhoneNumberValidator.mask(phone)}
            )
            session = await self.get(phone)
            if session is None:
                raise
            return session

        logger.info("Session created", extra_data={"phone": PhoneNumberValidator.mask(phone)})
        return session

    async def reload(self, session: ConversationSession) -> ConversationSession:
        await self.db.refresh(session)
        return session

    def flow_of(self, session: ConversationSession) -> FlowType | None:
        return FlowType.parse(session.current_flow)

    def scratch_of(self, session: ConversationSession, flow: FlowType) -> FlowScratch:
        return load_scratch(flow, session.temp_data)

    async def apply(
        self,
        session: ConversationSession,
        flow: FlowType,
        step: str,
        scratch: FlowScratch | None = None,
        user_id: int | None = None,
    ) -> ConversationSession:
        """
        Persist a transition with compare-and-swap on `version`.

        Raises:
            InvalidStateTransitionError: step is not declared by the flow
            StaleSessionError: the row changed since `session` was read
        """
        if not is_declared_step(flow, step):
            raise InvalidStateTransitionError(flow.value, step)

        expected_version = session.version
        now = utcnow()
        values = {
            "current_flow": flow.value,
            "current_step": step,
            "temp_data": dump_scratch(flow, scratch if scratch is not None else empty_scratch(flow)),
            "version": expected_version + 1,
            "last_activity_at": now,
            "updated_at": now,
        }
        if user_id is not None:
            values["user_id"] = user_id

        result = await self.db.execute(
            update(ConversationSession)
            .where(
                ConversationSession.id == session.id,
                ConversationSession.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "Session compare-and-swap lost",
                extra_data={
                    "phone": PhoneNumberValidator.mask(session.phone),
                    "expected_version": expected_version,
                }
            )
            raise StaleSessionError(session.id, expected_version)

        await self.db.refresh(session)
        return session

    async def reset_to_main_menu(self, session: ConversationSession) -> ConversationSession:
        return await self.apply(session, FlowType.MAIN_MENU, MainMenuStep.IDLE.value)

    @staticmethod
    def is_idle(session: ConversationSession) -> bool:
        return session.current_flow == FlowType.MAIN_MENU.value and session.current_step in IDLE_STEPS

    @staticmethod
    def has_timed_out(session: ConversationSession, now: datetime | None = None) -> bool:
        """Mid-flow session untouched for longer than SESSION_TIMEOUT_MINUTES"""
        if SessionStore.is_idle(session) or session.last_activity_at is None:
            return False
        now = now or utcnow()
        return now - session.last_activity_at > timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES)
