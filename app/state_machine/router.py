"""
Flow Router

Routes one normalized message to the handler of the sender's current flow and
applies the Transition it returns. The router is the only caller of
SessionStore.apply; handlers never write flow/step themselves.
"""
import re
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import conversation_context, get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.conversation_session import ConversationSession
from app.db.models.user import User
from app.domain.messages import IncomingMessage
from app.domain.services.fish.alert_service import ACTION_COMING, ACTION_LOCATION
from app.domain.services.post_commit import PostCommitJobs
from app.domain.services.user_service import UserService
from app.state_machine.agreement_handler import AgreementHandler
from app.state_machine.base import FlowContext, FlowHandler, HandlerDeps, Transition, TransitionKind
from app.state_machine.fish_buyer_handler import BrowseHandler, ManageSubscriptionHandler, SubscribeHandler
from app.state_machine.fish_seller_handler import CatchPostHandler, SellerRegisterHandler, StockUpdateHandler
from app.state_machine.job_handler import JobPostHandler
from app.state_machine.main_menu_handler import MENU_SELECTIONS, MainMenuHandler, RegistrationHandler
from app.state_machine.scratch import BrowseScratch, FlowScratch, RegistrationScratch, empty_scratch
from app.state_machine.session_store import SessionStore
from app.state_machine.states import (
    FISH_SELLER_FLOWS,
    PUBLIC_FLOWS,
    FlowType,
    MainMenuStep,
    initial_step,
)

logger = get_logger(__name__)

HANDLER_CLASSES: tuple[type[FlowHandler], ...] = (
    MainMenuHandler,
    RegistrationHandler,
    SellerRegisterHandler,
    CatchPostHandler,
    StockUpdateHandler,
    SubscribeHandler,
    ManageSubscriptionHandler,
    BrowseHandler,
    AgreementHandler,
    JobPostHandler,
)

MENU_KEYWORDS = frozenset({"menu", "home", "start", "0", "hi", "hello", "main", "reset", "main_menu"})
HELP_KEYWORDS = frozenset({"help", "?", "support", "how"})
CANCEL_KEYWORDS = frozenset({"cancel", "exit", "quit", "stop", "end"})

# מילות קיצור שעובדות רק כשהמשתמש לא באמצע flow
QUICK_ACTIONS: dict[str, FlowType] = {
    "fish": FlowType.FISH_BROWSE,
    "fresh fish": FlowType.FISH_BROWSE,
    "buy fish": FlowType.FISH_BROWSE,
    "catch": FlowType.FISH_POST_CATCH,
    "sell fish": FlowType.FISH_POST_CATCH,
    "stock": FlowType.FISH_STOCK_UPDATE,
    "alerts": FlowType.FISH_SUBSCRIBE,
    "fish alerts": FlowType.FISH_SUBSCRIBE,
    "my alerts": FlowType.FISH_MANAGE_SUBSCRIPTION,
    "unsubscribe": FlowType.FISH_MANAGE_SUBSCRIPTION,
    "agree": FlowType.AGREEMENT_CREATE,
    "agreement": FlowType.AGREEMENT_CREATE,
    "job": FlowType.JOB_POST,
}

ALERT_BUTTON_RE = re.compile(rf"^fish_({ACTION_COMING}|{ACTION_LOCATION})_(\d+)_(\d+)$")
VIEW_CATCH_RE = re.compile(r"^fish_view_(\d+)$")

# handoff שרשרתי (main menu -> registration -> seller register -> post catch) חסום במספר קפיצות
MAX_HANDOFF_HOPS = 4

HELP_TEXT = (
    "ℹ️ *How Nearbuy works*\n\n"
    "• *menu* - main menu\n"
    "• *cancel* - stop what you're doing\n"
    "• *fish* - fresh fish near you\n"
    "• *alerts* - get told when fish arrives\n"
    "• *sell fish* - post today's catch\n"
    "• *agree* - record a money agreement\n"
    "• *job* - post a small job"
)

EXPIRED_TEXT = "⌛ Your previous action expired, so we took you back to the menu."


def build_handlers(deps: HandlerDeps) -> dict[FlowType, FlowHandler]:
    """One handler per flow; a flow without a handler fails here, not mid-conversation"""
    handlers = {cls.flow: cls(deps) for cls in HANDLER_CLASSES}
    missing = [flow.value for flow in FlowType if flow not in handlers]
    if missing:
        raise TypeError(f"Flows without a handler: {missing}")
    return handlers


class FlowRouter:
    def __init__(self, db: AsyncSession, jobs: PostCommitJobs, deps: HandlerDeps | None = None):
        self.db = db
        self.deps = deps or HandlerDeps.build(db, jobs)
        self.store = SessionStore(db)
        self.handlers = build_handlers(self.deps)

    # ==================== Context ====================

    def _context(
        self,
        session: ConversationSession,
        flow: FlowType,
        user: Optional[User],
        scratch: FlowScratch | None = None,
        step: str | None = None,
    ) -> FlowContext:
        return FlowContext(
            phone=session.phone,
            session=session,
            flow=flow,
            step=step if step is not None else session.current_step,
            scratch=scratch if scratch is not None else self.store.scratch_of(session, flow),
            user=user,
        )

    # ==================== Entry point ====================

    async def route(self, message: IncomingMessage, session: ConversationSession) -> ConversationSession:
        """
        Route one message and persist the resulting transition.

        Raises:
            StaleSessionError: the session changed under us; the caller retries
        """
        user = await self.deps.users.get_by_phone(session.phone)

        if self.store.has_timed_out(session):
            logger.info(
                "Session timed out, resetting to main menu",
                extra_data={"flow": session.current_flow, "step": session.current_step}
            )
            await self.store.reset_to_main_menu(session)
            await self.deps.messenger.send_text(session.phone, EXPIRED_TEXT)

        flow = self.store.flow_of(session)
        if flow is None:
            logger.warning(
                "Unknown flow on session, restarting from main menu",
                extra_data={"flow": session.current_flow}
            )
            return await self.start_flow(session, FlowType.MAIN_MENU, user=user)

        with conversation_context(PhoneNumberValidator.mask(session.phone), flow.value, session.current_step):
            return await self._dispatch(message, session, flow, user)

    async def _dispatch(
        self,
        message: IncomingMessage,
        session: ConversationSession,
        flow: FlowType,
        user: Optional[User],
    ) -> ConversationSession:
        token = message.token
        idle = self.store.is_idle(session)

        # (1) ניווט גלובלי
        if token in MENU_KEYWORDS:
            return await self.start_flow(session, FlowType.MAIN_MENU, user=user)
        if token in HELP_KEYWORDS:
            await self.deps.messenger.send_buttons(session.phone, HELP_TEXT, [("main_menu", "🏠 Menu")])
            return session
        if token in CANCEL_KEYWORDS and not idle:
            logger.info("Flow cancelled by user")
            await self.deps.messenger.send_text(session.phone, "❌ Cancelled.")
            return await self.start_flow(session, FlowType.MAIN_MENU, user=user)

        # (2) כפתורי התראה וכפתורי קיצור
        match = ALERT_BUTTON_RE.match(token)
        if match:
            action, catch_id, alert_id = match.group(1), int(match.group(2)), int(match.group(3))
            browse: BrowseHandler = self.handlers[FlowType.FISH_BROWSE]
            ctx = self._context(session, flow, user)
            await browse.handle_alert_response(message, ctx, action, catch_id, alert_id)
            return session

        match = VIEW_CATCH_RE.match(token)
        if match:
            seed = BrowseScratch(selected_catch_id=int(match.group(1)))
            return await self.start_flow(session, FlowType.FISH_BROWSE, seed=seed, user=user, message=message)

        if message.is_interactive and not token.isdigit() and token in MENU_SELECTIONS:
            return await self.handle_menu_selection(token, session, user=user, message=message)

        # (3) קיצורי טקסט כשהמשתמש פנוי
        if idle and token in QUICK_ACTIONS:
            return await self.start_flow(session, QUICK_ACTIONS[token], user=user, message=message)

        # משתמש לא רשום (או שהושבת) לא ממשיך flow שדורש הרשמה
        if not UserService.is_registered(user) and flow != FlowType.REGISTRATION:
            target = FlowType.MAIN_MENU if flow in PUBLIC_FLOWS else flow
            return await self.start_flow(session, target, user=user, message=message)

        # (4) + (5)
        handler = self.handlers[flow]
        ctx = self._context(session, flow, user)
        if token == "retry":
            transition = await handler.handle_invalid_input(message, ctx)
        else:
            transition = await handler.handle(message, ctx)
        return await self._apply(session, ctx, transition, message)

    # ==================== Transitions ====================

    async def _apply(
        self,
        session: ConversationSession,
        ctx: FlowContext,
        transition: Transition,
        message: Optional[IncomingMessage],
        hops: int = 0,
    ) -> ConversationSession:
        user_id = ctx.user.id if ctx.user is not None else None

        if transition.kind in (TransitionKind.STAY, TransitionKind.ADVANCE):
            step = transition.step if transition.kind == TransitionKind.ADVANCE else ctx.step
            return await self.store.apply(session, ctx.flow, step, ctx.scratch, user_id=user_id)

        if transition.kind == TransitionKind.MAIN_MENU:
            return await self.store.apply(session, FlowType.MAIN_MENU, MainMenuStep.IDLE.value, user_id=user_id)

        if hops >= MAX_HANDOFF_HOPS:
            logger.error(
                "Handoff chain too long, falling back to main menu",
                extra_data={"from_flow": ctx.flow.value, "to_flow": transition.flow.value, "hops": hops}
            )
            return await self.store.apply(session, FlowType.MAIN_MENU, MainMenuStep.IDLE.value, user_id=user_id)

        return await self.start_flow(
            session, transition.flow, seed=transition.seed, user=ctx.user, message=message, hops=hops + 1
        )

    def _gate(self, flow: FlowType, seed: FlowScratch | None, user: Optional[User]) -> tuple[FlowType, FlowScratch | None]:
        if flow != FlowType.REGISTRATION and not UserService.is_registered(user):
            next_flow = None if flow == FlowType.MAIN_MENU else flow
            return FlowType.REGISTRATION, RegistrationScratch(next_flow=next_flow)
        return flow, seed

    async def start_flow(
        self,
        session: ConversationSession,
        flow: FlowType,
        seed: FlowScratch | None = None,
        user: Optional[User] = None,
        message: Optional[IncomingMessage] = None,
        hops: int = 0,
    ) -> ConversationSession:
        """
        Enter `flow` at its initial step with fresh scratch (or `seed`).

        Unregistered senders are sent to registration first, and seller-only
        flows without a seller profile go to seller registration.
        """
        target, seed = self._gate(flow, seed, user)
        if target in FISH_SELLER_FLOWS and user is not None:
            if await self.deps.catches.get_seller_for_user(user.id) is None:
                await self.deps.messenger.send_text(
                    session.phone, "🎣 First, let's set up your seller profile."
                )
                target, seed = FlowType.FISH_SELLER_REGISTER, None

        if target != flow:
            logger.info(
                "Flow redirected",
                extra_data={"requested": flow.value, "target": target.value}
            )

        scratch = seed if seed is not None else empty_scratch(target)
        ctx = self._context(session, target, user, scratch=scratch, step=initial_step(target))
        transition = await self.handlers[target].start(ctx, message)
        return await self._apply(session, ctx, transition, message, hops=hops)

    async def handle_menu_selection(
        self,
        token: str,
        session: ConversationSession,
        user: Optional[User] = None,
        message: Optional[IncomingMessage] = None,
    ) -> ConversationSession:
        """Cross-flow shortcut buttons; an unknown token shows the main menu"""
        flow = MENU_SELECTIONS.get(token, FlowType.MAIN_MENU)
        return await self.start_flow(session, flow, user=user, message=message)
