"""
Flow handler framework

A FlowHandler owns one flow's step table. Handlers never write the session's
flow/step themselves: every entry point returns a Transition and the router
applies it through SessionStore.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException, BusinessRuleException, ValidationException
from app.core.logging import get_logger
from app.db.models.conversation_session import ConversationSession
from app.db.models.user import User
from app.domain.messages import IncomingMessage
from app.domain.services.agreement_service import AgreementService
from app.domain.services.fish.alert_service import FishAlertService
from app.domain.services.fish.catch_service import FishCatchService
from app.domain.services.fish.matching_service import FishMatchingService
from app.domain.services.fish.subscription_service import FishSubscriptionService
from app.domain.services.job_service import JobService
from app.domain.services.messenger import OutboxMessenger
from app.domain.services.post_commit import PostCommitJobs
from app.domain.services.user_service import UserService
from app.state_machine.scratch import FlowScratch, empty_scratch
from app.state_machine.states import FLOW_STEPS, FlowType

logger = get_logger(__name__)


class TransitionKind(str, Enum):
    STAY = "stay"
    ADVANCE = "advance"
    HANDOFF = "handoff"
    MAIN_MENU = "main_menu"


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    step: Optional[str] = None
    flow: Optional[FlowType] = None
    seed: Optional[FlowScratch] = None

    @classmethod
    def stay(cls) -> "Transition":
        return cls(TransitionKind.STAY)

    @classmethod
    def advance(cls, step: Enum) -> "Transition":
        return cls(TransitionKind.ADVANCE, step=step.value)

    @classmethod
    def handoff(cls, flow: FlowType, seed: FlowScratch | None = None) -> "Transition":
        """Leave the current flow; `seed` becomes the new flow's scratch"""
        return cls(TransitionKind.HANDOFF, flow=flow, seed=seed)

    @classmethod
    def main_menu(cls) -> "Transition":
        return cls(TransitionKind.MAIN_MENU)


@dataclass
class HandlerDeps:
    """Everything a handler may touch, built once per routed message"""

    db: AsyncSession
    jobs: PostCommitJobs
    messenger: OutboxMessenger
    users: UserService
    catches: FishCatchService
    subscriptions: FishSubscriptionService
    matching: FishMatchingService
    alerts: FishAlertService
    agreements: AgreementService
    job_board: JobService

    @classmethod
    def build(cls, db: AsyncSession, jobs: PostCommitJobs) -> "HandlerDeps":
        messenger = OutboxMessenger(db, jobs)
        catches = FishCatchService(db, messenger=messenger, jobs=jobs)
        matching = FishMatchingService(db)
        return cls(
            db=db,
            jobs=jobs,
            messenger=messenger,
            users=UserService(db),
            catches=catches,
            subscriptions=FishSubscriptionService(db),
            matching=matching,
            alerts=FishAlertService(db, messenger, matching=matching, catches=catches),
            agreements=AgreementService(db, messenger),
            job_board=JobService(db),
        )


@dataclass
class FlowContext:
    """The session as one handler sees it"""

    phone: str
    session: ConversationSession
    flow: FlowType
    step: str
    scratch: FlowScratch
    user: Optional[User] = None


StepFn = Callable[[Optional[IncomingMessage], FlowContext], Awaitable[Transition]]


GENERIC_RETRY_TEXT = "😕 Something went wrong on our side. Please try again."


class FlowHandler:
    """
    Base class for one flow's state machine.

    Subclasses set `flow` and `Step` and return a table covering every Step
    member from `_step_handlers()`; a missing or extra entry fails at
    construction time.
    """

    flow: FlowType
    Step: type[Enum]

    def __init__(self, deps: HandlerDeps):
        self.deps = deps
        self.db = deps.db
        self.messenger = deps.messenger

        if FLOW_STEPS[self.flow] is not self.Step:
            raise TypeError(f"{type(self).__name__}.Step is not the step enum of flow '{self.flow.value}'")

        table = self._step_handlers()
        missing = [step.value for step in self.Step if step not in table]
        extra = [str(step) for step in table if not isinstance(step, self.Step)]
        if missing or extra:
            raise TypeError(
                f"{type(self).__name__} step table mismatch: missing={missing} extra={extra}"
            )
        self._steps: dict[Enum, StepFn] = table

    # ==================== Subclass API ====================

    def _step_handlers(self) -> dict[Enum, StepFn]:
        raise NotImplementedError

    async def _start(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        """Send the first prompt and enter the initial step"""
        initial = next(iter(self.Step))
        await self.prompt(ctx, initial)
        return Transition.advance(initial)

    async def prompt(self, ctx: FlowContext, step: Enum) -> None:
        """Ask the question of `step`"""
        raise NotImplementedError

    # ==================== Entry points ====================

    @property
    def steps(self) -> dict[Enum, StepFn]:
        return dict(self._steps)

    async def start(self, ctx: FlowContext, message: Optional[IncomingMessage] = None) -> Transition:
        return await self._guarded(self._start, message, ctx)

    async def handle(self, message: IncomingMessage, ctx: FlowContext) -> Transition:
        try:
            step = self.Step(ctx.step)
        except ValueError:
            logger.warning(
                "Session step not declared by flow, restarting it",
                extra_data={"flow": self.flow.value, "step": ctx.step}
            )
            ctx.step = next(iter(self.Step)).value
            return await self.start(ctx, message)
        return await self._guarded(self._steps[step], message, ctx)

    async def handle_invalid_input(
        self,
        message: Optional[IncomingMessage],
        ctx: FlowContext,
        hint: str | None = None,
    ) -> Transition:
        """Re-ask the current step without moving"""
        if hint:
            await self.messenger.send_text(ctx.phone, f"⚠️ {hint}")
        try:
            step = self.Step(ctx.step)
        except ValueError:
            step = next(iter(self.Step))

        jobs_mark = self.deps.jobs.mark()
        try:
            async with self.db.begin_nested():
                await self.prompt(ctx, step)
        except Exception as e:
            # scratch לא שלם לצעד הזה (למשל review בלי סכום) - מתחילים את ה-flow מחדש
            self.deps.jobs.rollback_to(jobs_mark)
            logger.error(
                "Could not re-ask step, restarting flow",
                extra_data={"flow": self.flow.value, "step": ctx.step, "error": str(e)},
                exc_info=True,
            )
            ctx.scratch = empty_scratch(self.flow)
            ctx.step = next(iter(self.Step)).value
            return await self.start(ctx, message)
        return Transition.stay()

    # ==================== Error boundary ====================

    async def _rewind(self, ctx: FlowContext, jobs_mark: int, scratch_before: FlowScratch) -> None:
        self.deps.jobs.rollback_to(jobs_mark)
        ctx.scratch = scratch_before
        await self.db.refresh(ctx.session)
        if ctx.user is not None:
            ctx.user = await self.deps.users.get_by_phone(ctx.phone)

    async def _guarded(
        self,
        fn: StepFn,
        message: Optional[IncomingMessage],
        ctx: FlowContext,
    ) -> Transition:
        """
        Run one step inside a savepoint.

        A failing step rolls back its writes and the jobs it recorded, and
        leaves the session at the same step.
        """
        jobs_mark = self.deps.jobs.mark()
        scratch_before = ctx.scratch.model_copy(deep=True)
        try:
            async with self.db.begin_nested():
                return await fn(message, ctx)
        except ValidationException as e:
            await self._rewind(ctx, jobs_mark, scratch_before)
            logger.info(
                "Step input rejected",
                extra_data={"flow": self.flow.value, "step": ctx.step, "error": e.message}
            )
            return await self.handle_invalid_input(message, ctx, hint=e.message)
        except BusinessRuleException as e:
            await self._rewind(ctx, jobs_mark, scratch_before)
            logger.warning(
                "Business rule blocked step",
                extra_data={"flow": self.flow.value, "step": ctx.step, "error_code": e.error_code.value}
            )
            await self._send_retry_prompt(ctx, f"⚠️ {e.message}")
            return Transition.stay()
        except AppException as e:
            await self._rewind(ctx, jobs_mark, scratch_before)
            logger.error(
                "Domain service failed in flow step",
                extra_data={
                    "flow": self.flow.value,
                    "step": ctx.step,
                    "error_code": e.error_code.value,
                    "error": e.message,
                }
            )
            await self._send_retry_prompt(ctx)
            return Transition.stay()
        except Exception as e:
            await self._rewind(ctx, jobs_mark, scratch_before)
            logger.error(
                "Unexpected error in flow step",
                extra_data={"flow": self.flow.value, "step": ctx.step, "error": str(e)},
                exc_info=True,
            )
            await self._send_retry_prompt(ctx)
            return Transition.stay()

    async def _send_retry_prompt(self, ctx: FlowContext, text: str = GENERIC_RETRY_TEXT) -> None:
        await self.messenger.send_buttons(
            ctx.phone,
            text,
            [("retry", "🔁 Try again"), ("main_menu", "🏠 Menu")],
        )

    # ==================== Helpers ====================

    @staticmethod
    def parse_int(message: Optional[IncomingMessage], prefix: str) -> int | None:
        """Read the numeric id out of a selection such as "fish_type_7" """
        if message is None:
            return None
        token = message.token
        if not token.startswith(prefix):
            return None
        try:
            return int(token[len(prefix):])
        except ValueError:
            return None
