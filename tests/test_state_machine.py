"""
בדיקות למכונת המצבים של השיחה.

מכסה:
- סגירות צעדים: כל handler מכסה בדיוק את הצעדים של ה-flow שלו
- כל צעד מוצהר × כל סוג קלט (טקסט, מספר, מיקום, כפתור/שורה לא מוכרים, מדיה, retry) נוחת על צעד מוצהר
- SessionStore: compare-and-swap על version, צעד לא מוצהר נדחה
- ConversationService: ניסיון חוזר כשה-CAS מפסיד, jobs משתחררים רק אחרי commit
- Router: הרשמה, מילות ניווט (menu/help/cancel), קלט שגוי, timeout
"""
import uuid
from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis.strategies import sampled_from, text
from sqlalchemy import update

from app.core.config import settings
from app.core.exceptions import InvalidStateTransitionError, StaleSessionError
from app.db.database import utcnow
from app.db.models.conversation_session import ConversationSession
from app.domain.messages import IncomingMessage
from app.domain.services.conversation_service import ConversationService
from app.domain.services.post_commit import PostCommitJobs
from app.domain.services.user_service import UserService
from app.state_machine.base import FlowHandler, HandlerDeps
from app.state_machine.main_menu_handler import MainMenuHandler
from app.state_machine.router import EXPIRED_TEXT, build_handlers
from app.state_machine.scratch import SubscribeScratch
from app.state_machine.session_store import SessionStore
from app.state_machine.states import (
    FLOW_STEPS,
    AgreementStep,
    FlowType,
    MainMenuStep,
    RegistrationStep,
    SubscribeStep,
    is_declared_step,
)

from tests.scenarios.conftest import (
    build_wa_button,
    build_wa_list_reply,
    build_wa_location,
    build_wa_text,
    outbox_for,
)


def _incoming(raw: dict) -> IncomingMessage:
    return IncomingMessage.from_cloud_api(raw)


async def _bodies(db_session, phone: str) -> list[str]:
    return [row.message_content.get("body", "") for row in await outbox_for(db_session, phone)]


# ============================================================================
# TestStepClosure - כל flow מוצהר במלואו
# ============================================================================


class TestStepClosure:

    @pytest.mark.unit
    async def test_every_flow_has_a_complete_handler(self, db_session) -> None:
        handlers = build_handlers(HandlerDeps.build(db_session, PostCommitJobs()))

        assert set(handlers) == set(FlowType)
        for flow, handler in handlers.items():
            assert set(handler.steps) == set(FLOW_STEPS[flow]), flow

    @pytest.mark.unit
    async def test_missing_step_fails_at_construction(self, db_session) -> None:
        class IncompleteRegistration(FlowHandler):
            flow = FlowType.REGISTRATION
            Step = RegistrationStep

            def _step_handlers(self):
                return {RegistrationStep.ASK_NAME: self._start}

        with pytest.raises(TypeError, match="missing=\\['ask_location'\\]"):
            IncompleteRegistration(HandlerDeps.build(db_session, PostCommitJobs()))

    @pytest.mark.unit
    async def test_foreign_step_enum_fails_at_construction(self, db_session) -> None:
        class WrongSteps(MainMenuHandler):
            Step = RegistrationStep

        with pytest.raises(TypeError):
            WrongSteps(HandlerDeps.build(db_session, PostCommitJobs()))

    @pytest.mark.unit
    @given(flow=sampled_from(list(FlowType)), step=text(max_size=20))
    def test_declared_step_membership(self, flow: FlowType, step: str) -> None:
        declared = {member.value for member in FLOW_STEPS[flow]}
        assert is_declared_step(flow, step) == (step in declared)

    @pytest.mark.unit
    async def test_store_rejects_undeclared_step(self, db_session) -> None:
        store = SessionStore(db_session)
        session = await store.get_or_create("919847000001")

        with pytest.raises(InvalidStateTransitionError):
            await store.apply(session, FlowType.FISH_SUBSCRIBE, "ask_name")


# ============================================================================
# TestSessionStore - compare-and-swap
# ============================================================================


class TestSessionStore:

    @pytest.mark.unit
    async def test_lazy_creation_starts_idle(self, db_session) -> None:
        store = SessionStore(db_session)
        session = await store.get_or_create("919847000002")

        assert session.current_flow == FlowType.MAIN_MENU.value
        assert session.current_step == MainMenuStep.IDLE.value
        assert session.version == 1
        assert (await store.get_or_create("919847000002")).id == session.id

    @pytest.mark.unit
    async def test_apply_bumps_version_and_stores_scratch(self, db_session) -> None:
        store = SessionStore(db_session)
        session = await store.get_or_create("919847000003")

        await store.apply(
            session, FlowType.FISH_SUBSCRIBE, SubscribeStep.SET_RADIUS.value,
            SubscribeScratch(latitude=9.93, longitude=76.26),
        )

        assert session.version == 2
        assert session.current_step == SubscribeStep.SET_RADIUS.value
        scratch = store.scratch_of(session, FlowType.FISH_SUBSCRIBE)
        assert scratch.latitude == 9.93
        # scratch של flow אחר לא דולף
        assert store.scratch_of(session, FlowType.FISH_BROWSE).latitude is None

    @pytest.mark.unit
    async def test_stale_write_is_rejected(self, db_session) -> None:
        store = SessionStore(db_session)
        session = await store.get_or_create("919847000004")
        await db_session.commit()

        # כתיבה מקבילה שהקדימה אותנו
        await db_session.execute(
            update(ConversationSession)
            .where(ConversationSession.id == session.id)
            .values(version=session.version + 1)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(StaleSessionError):
            await store.apply(session, FlowType.MAIN_MENU, MainMenuStep.IDLE.value)

    @pytest.mark.unit
    async def test_timeout_only_applies_mid_flow(self, db_session) -> None:
        store = SessionStore(db_session)
        session = await store.get_or_create("919847000005")
        later = utcnow() + timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES + 1)

        assert not store.has_timed_out(session, later)

        await store.apply(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.SET_RADIUS.value)
        assert store.has_timed_out(session, later)
        assert not store.has_timed_out(session, utcnow())


# ============================================================================
# TestConversationRetries - CAS שהפסיד
# ============================================================================


class TestConversationRetries:

    @pytest.mark.unit
    async def test_lost_cas_is_retried_and_only_winning_jobs_released(
        self, db_session, publisher, monkeypatch
    ) -> None:
        attempts: list[int] = []

        class FlakyRouter:
            def __init__(self, db, jobs):
                self.jobs = jobs

            async def route(self, message, session):
                attempts.append(len(attempts) + 1)
                self.jobs.send_outbox(len(attempts))
                if len(attempts) == 1:
                    raise StaleSessionError(session.id, session.version)
                return session

        monkeypatch.setattr("app.domain.services.conversation_service.FlowRouter", FlakyRouter)

        await ConversationService(db_session, publisher).process(_incoming(build_wa_text("919847000006", "hi")))

        assert attempts == [1, 2]
        assert publisher.named("send_outbox_message") == [(2,)]

    @pytest.mark.unit
    async def test_gives_up_after_configured_attempts(self, db_session, publisher, monkeypatch) -> None:
        attempts: list[int] = []

        class AlwaysStale:
            def __init__(self, db, jobs):
                self.jobs = jobs

            async def route(self, message, session):
                attempts.append(1)
                self.jobs.send_outbox(99)
                raise StaleSessionError(session.id, session.version)

        monkeypatch.setattr("app.domain.services.conversation_service.FlowRouter", AlwaysStale)
        monkeypatch.setattr(settings, "SESSION_CAS_ATTEMPTS", 3)

        with pytest.raises(StaleSessionError):
            await ConversationService(db_session, publisher).process(_incoming(build_wa_text("919847000007", "hi")))

        assert len(attempts) == 3
        assert publisher.calls == []


# ============================================================================
# TestRouter - זרימות דרך ConversationService
# ============================================================================


class TestRouter:

    @pytest.fixture
    def conversations(self, db_session, publisher) -> ConversationService:
        return ConversationService(db_session, publisher)

    async def _send(self, conversations: ConversationService, raw: dict) -> ConversationSession:
        message = _incoming(raw)
        await conversations.process(message)
        session = await conversations.store.get(message.sender)
        await conversations.db.refresh(session)
        return session

    @pytest.mark.unit
    async def test_unregistered_sender_is_asked_for_name(self, db_session, conversations, publisher) -> None:
        phone = "919847000010"
        session = await self._send(conversations, build_wa_text(phone, "hi"))

        assert session.current_flow == FlowType.REGISTRATION.value
        assert session.current_step == RegistrationStep.ASK_NAME.value
        assert session.version == 2
        assert "What's your name?" in (await _bodies(db_session, phone))[0]
        assert len(publisher.named("send_outbox_message")) == 1

    @pytest.mark.unit
    async def test_registration_then_main_menu(self, db_session, conversations) -> None:
        phone = "919847000011"
        await self._send(conversations, build_wa_text(phone, "hi"))
        session = await self._send(conversations, build_wa_text(phone, "Asha"))
        assert session.current_step == RegistrationStep.ASK_LOCATION.value

        session = await self._send(conversations, build_wa_button(phone, "skip_location"))

        assert session.current_flow == FlowType.MAIN_MENU.value
        assert session.current_step == MainMenuStep.IDLE.value
        user = await UserService(db_session).get_by_phone(phone)
        assert UserService.is_registered(user)
        assert user.name == "Asha"
        assert session.user_id == user.id

    @pytest.mark.unit
    async def test_requested_flow_resumes_after_registration(self, db_session, conversations) -> None:
        phone = "919847000012"
        session = await self._send(conversations, build_wa_text(phone, "fish alerts"))
        assert session.current_flow == FlowType.REGISTRATION.value

        await self._send(conversations, build_wa_text(phone, "Ravi"))
        session = await self._send(conversations, build_wa_location(phone, 9.93, 76.26))

        assert session.current_flow == FlowType.FISH_SUBSCRIBE.value
        assert session.current_step == SubscribeStep.SELECT_LOCATION.value
        user = await UserService(db_session).get_by_phone(phone)
        assert user.has_location

    @pytest.mark.unit
    async def test_help_does_not_move_session(self, db_session, conversations, user_factory) -> None:
        user = await user_factory()
        store = conversations.store
        session = await store.get_or_create(user.phone_number)
        await store.apply(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.SET_RADIUS.value)
        await db_session.commit()

        session = await self._send(conversations, build_wa_text(user.phone_number, "help"))

        assert session.current_step == SubscribeStep.SET_RADIUS.value
        assert session.version == 2
        assert "How Nearbuy works" in (await _bodies(db_session, user.phone_number))[-1]

    @pytest.mark.unit
    async def test_cancel_mid_flow_returns_to_menu(self, db_session, conversations, user_factory) -> None:
        user = await user_factory()
        store = conversations.store
        session = await store.get_or_create(user.phone_number)
        await store.apply(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.SET_RADIUS.value)
        await db_session.commit()

        session = await self._send(conversations, build_wa_text(user.phone_number, "cancel"))

        assert session.current_flow == FlowType.MAIN_MENU.value
        assert session.current_step == MainMenuStep.IDLE.value
        assert "❌ Cancelled." in await _bodies(db_session, user.phone_number)

    @pytest.mark.unit
    async def test_invalid_radius_keeps_step_and_scratch(self, db_session, conversations, user_factory) -> None:
        user = await user_factory()
        store = conversations.store
        session = await store.get_or_create(user.phone_number)
        await store.apply(
            session, FlowType.FISH_SUBSCRIBE, SubscribeStep.SET_RADIUS.value,
            SubscribeScratch(latitude=9.93, longitude=76.26),
        )
        await db_session.commit()

        session = await self._send(conversations, build_wa_text(user.phone_number, "99"))
        assert session.current_step == SubscribeStep.SET_RADIUS.value
        assert store.scratch_of(session, FlowType.FISH_SUBSCRIBE).latitude == 9.93

        session = await self._send(conversations, build_wa_button(user.phone_number, "radius_5"))
        assert session.current_step == SubscribeStep.SELECT_FISH_TYPES.value
        assert store.scratch_of(session, FlowType.FISH_SUBSCRIBE).radius_km == 5

    @pytest.mark.unit
    async def test_undeclared_step_restarts_flow(self, db_session, conversations, user_factory) -> None:
        user = await user_factory()
        session = await conversations.store.get_or_create(user.phone_number)
        await db_session.execute(
            update(ConversationSession)
            .where(ConversationSession.id == session.id)
            .values(current_flow=FlowType.FISH_SUBSCRIBE.value, current_step="ask_amount")
        )
        await db_session.commit()
        await db_session.refresh(session)

        session = await self._send(conversations, build_wa_text(user.phone_number, "hello there"))

        assert session.current_flow == FlowType.FISH_SUBSCRIBE.value
        assert session.current_step == SubscribeStep.SELECT_LOCATION.value

    @pytest.mark.unit
    async def test_timed_out_session_resets_and_notifies(self, db_session, conversations, user_factory) -> None:
        user = await user_factory()
        store = conversations.store
        session = await store.get_or_create(user.phone_number)
        await store.apply(session, FlowType.FISH_SUBSCRIBE, SubscribeStep.SET_RADIUS.value)
        await db_session.execute(
            update(ConversationSession)
            .where(ConversationSession.id == session.id)
            .values(last_activity_at=utcnow() - timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES + 5))
        )
        await db_session.commit()
        await db_session.refresh(session)

        session = await self._send(conversations, build_wa_text(user.phone_number, "whatever"))

        assert session.current_flow == FlowType.MAIN_MENU.value
        assert EXPIRED_TEXT in await _bodies(db_session, user.phone_number)


# ============================================================================
# TestStepClosureUnderInput - כל צעד מוצהר שורד כל סוג קלט
# ============================================================================


def _image(phone: str) -> dict:
    return {
        "from": phone,
        "id": f"wamid.{uuid.uuid4().hex}",
        "timestamp": "1700000000",
        "type": "image",
        "image": {"id": "media-1", "mime_type": "image/jpeg"},
    }


ANY_INPUT = [
    lambda phone: build_wa_text(phone, "something else entirely"),
    lambda phone: build_wa_text(phone, "7"),
    lambda phone: build_wa_location(phone, 9.93, 76.26),
    lambda phone: build_wa_button(phone, "not_a_real_button"),
    lambda phone: build_wa_list_reply(phone, "catch_999999"),
    lambda phone: build_wa_button(phone, "confirm"),
    lambda phone: build_wa_button(phone, "retry"),
    _image,
]

ALL_DECLARED_STEPS = [(flow, step) for flow, steps in FLOW_STEPS.items() for step in steps]


class TestStepClosureUnderInput:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "flow,step",
        ALL_DECLARED_STEPS,
        ids=[f"{flow.value}-{step.value}" for flow, step in ALL_DECLARED_STEPS],
    )
    async def test_any_input_lands_on_a_declared_step(
        self, db_session, publisher, user_factory, seller_factory, fish_type_factory, flow, step
    ) -> None:
        # scratch ריק בכוונה - גם review בלי נתונים לא מפיל את השיחה
        user = await user_factory(latitude=9.93, longitude=76.26)
        await seller_factory(user=user)
        await fish_type_factory()
        conversations = ConversationService(db_session, publisher)
        store = SessionStore(db_session)

        for build in ANY_INPUT:
            session = await store.get_or_create(user.phone_number)
            await db_session.refresh(session)
            await store.apply(session, flow, step.value)
            await db_session.commit()

            await conversations.process(_incoming(build(user.phone_number)))

            await db_session.refresh(session)
            landed = FlowType(session.current_flow)
            assert is_declared_step(landed, session.current_step), (build, landed, session.current_step)

    @pytest.mark.unit
    async def test_retry_on_empty_review_restarts_flow(self, db_session, publisher, user_factory) -> None:
        user = await user_factory()
        store = SessionStore(db_session)
        session = await store.get_or_create(user.phone_number)
        await store.apply(session, FlowType.AGREEMENT_CREATE, AgreementStep.REVIEW.value)
        await db_session.commit()

        await ConversationService(db_session, publisher).process(
            _incoming(build_wa_button(user.phone_number, "retry"))
        )

        await db_session.refresh(session)
        assert session.current_flow == FlowType.AGREEMENT_CREATE.value
        assert session.current_step == AgreementStep.ASK_DIRECTION.value
        assert "Are you giving money or receiving it?" in (await _bodies(db_session, user.phone_number))[-1]
