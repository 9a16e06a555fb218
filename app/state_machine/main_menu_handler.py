"""
Main menu and registration flows
"""
from typing import Optional

from app.core.validation import NameValidator, TextSanitizer
from app.domain.messages import IncomingMessage
from app.state_machine.base import FlowContext, FlowHandler, Transition
from app.state_machine.states import FlowType, MainMenuStep, RegistrationStep

# מזהי בחירה בתפריט -> flow. משמשים גם ככפתורי קיצור מכל מקום בשיחה
MENU_SELECTIONS: dict[str, FlowType] = {
    "fish_browse": FlowType.FISH_BROWSE,
    "fish_subscribe": FlowType.FISH_SUBSCRIBE,
    "fish_my_alerts": FlowType.FISH_MANAGE_SUBSCRIPTION,
    "fish_sell": FlowType.FISH_POST_CATCH,
    "fish_stock": FlowType.FISH_STOCK_UPDATE,
    "fish_seller_register": FlowType.FISH_SELLER_REGISTER,
    "agreement_create": FlowType.AGREEMENT_CREATE,
    "job_post": FlowType.JOB_POST,
}

MENU_ROWS: list[tuple[str, str, str]] = [
    ("fish_browse", "🐟 Buy fresh fish", "Fresh catches near you"),
    ("fish_subscribe", "🔔 Fish alerts", "Get told when fish arrives"),
    ("fish_my_alerts", "⚙️ My alerts", "Pause, change or delete alerts"),
    ("fish_sell", "🎣 Sell fish", "Post today's catch"),
    ("fish_stock", "📦 Update stock", "Low stock or sold out"),
    ("agreement_create", "📝 Record agreement", "Money lent or received"),
    ("job_post", "🧰 Post a job", "Get help with a small task"),
]

# מספרים מהתפריט הטקסטואלי
for _number, (_row_id, _title, _desc) in enumerate(MENU_ROWS, start=1):
    MENU_SELECTIONS[str(_number)] = MENU_SELECTIONS[_row_id]


def resolve_menu_selection(token: str) -> FlowType | None:
    return MENU_SELECTIONS.get(token)


class MainMenuHandler(FlowHandler):
    flow = FlowType.MAIN_MENU
    Step = MainMenuStep

    def _step_handlers(self):
        return {
            MainMenuStep.IDLE: self._handle_idle,
        }

    async def prompt(self, ctx: FlowContext, step) -> None:
        name = ctx.user.name if ctx.user is not None and ctx.user.name else None
        greeting = f"Hi {name}! " if name else "Hi! "
        await self.messenger.send_list(
            ctx.phone,
            f"👋 {greeting}What would you like to do?",
            "Menu",
            MENU_ROWS,
            section_title="Nearbuy",
            footer="Type *menu* anytime to come back here",
        )

    async def _handle_idle(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        flow = resolve_menu_selection(message.token) if message is not None else None
        if flow is None:
            return await self.handle_invalid_input(message, ctx, "Please choose an option from the menu.")
        return Transition.handoff(flow)


class RegistrationHandler(FlowHandler):
    flow = FlowType.REGISTRATION
    Step = RegistrationStep

    def _step_handlers(self):
        return {
            RegistrationStep.ASK_NAME: self._handle_name,
            RegistrationStep.ASK_LOCATION: self._handle_location,
        }

    async def prompt(self, ctx: FlowContext, step) -> None:
        if step == RegistrationStep.ASK_NAME:
            await self.messenger.send_text(
                ctx.phone,
                "👋 Welcome to *Nearbuy*!\nLet's get you set up. What's your name?",
            )
        else:
            await self.messenger.request_location(
                ctx.phone,
                "📍 Share your location so we can show you what's nearby.",
            )
            await self.messenger.send_buttons(
                ctx.phone,
                "Or skip this for now.",
                [("skip_location", "⏭️ Skip")],
            )

    async def _handle_name(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        name = TextSanitizer.sanitize(message.text or "", max_length=100) if message else ""
        valid, error = NameValidator.validate(name)
        if not valid:
            return await self.handle_invalid_input(message, ctx, error)

        ctx.scratch.name = name
        await self.prompt(ctx, RegistrationStep.ASK_LOCATION)
        return Transition.advance(RegistrationStep.ASK_LOCATION)

    async def _handle_location(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        if not ctx.scratch.name:
            await self.prompt(ctx, RegistrationStep.ASK_NAME)
            return Transition.advance(RegistrationStep.ASK_NAME)

        if message is not None and message.is_location:
            ctx.user = await self.deps.users.register(
                ctx.phone,
                ctx.scratch.name,
                latitude=message.latitude,
                longitude=message.longitude,
                location_name=message.location_name,
            )
        elif message is not None and message.token in ("skip_location", "skip"):
            ctx.user = await self.deps.users.register(ctx.phone, ctx.scratch.name)
        else:
            return await self.handle_invalid_input(
                message, ctx, "Please share your location or tap Skip."
            )

        await self.messenger.send_text(ctx.phone, f"✅ Thanks {ctx.user.name}, you're registered!")
        if ctx.scratch.next_flow is not None:
            return Transition.handoff(ctx.scratch.next_flow)
        return Transition.main_menu()
