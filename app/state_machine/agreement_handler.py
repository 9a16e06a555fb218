"""
Agreement flow - record money given to or received from someone
"""
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from app.core.config import settings
from app.core.validation import AmountValidator, DateValidator, NameValidator, PhoneNumberValidator, TextSanitizer
from app.db.models.agreement import AgreementDirection, AgreementPurpose
from app.domain.messages import IncomingMessage
from app.domain.services.agreement_service import MAX_AGREEMENT_AMOUNT
from app.state_machine.base import FlowContext, FlowHandler, Transition
from app.state_machine.scratch import AgreementScratch
from app.state_machine.states import AgreementStep, FlowType

DIRECTIONS = {
    "dir_giving": AgreementDirection.GIVING,
    "dir_receiving": AgreementDirection.RECEIVING,
}

PURPOSE_ROWS = [
    (AgreementPurpose.LOAN, "💸 Loan", "Money lent to be repaid"),
    (AgreementPurpose.ADVANCE, "⏩ Advance", "Advance on wages or goods"),
    (AgreementPurpose.DEPOSIT, "🔐 Deposit", "Security or rent deposit"),
    (AgreementPurpose.BUSINESS, "🏪 Business", "Business payment"),
    (AgreementPurpose.OTHER, "📝 Other", None),
]


def local_today():
    return datetime.now(ZoneInfo(settings.ALERT_TIMEZONE)).date()


class AgreementHandler(FlowHandler):
    flow = FlowType.AGREEMENT_CREATE
    Step = AgreementStep

    def _step_handlers(self):
        return {
            AgreementStep.ASK_DIRECTION: self._handle_direction,
            AgreementStep.ASK_AMOUNT: self._handle_amount,
            AgreementStep.ASK_NAME: self._handle_name,
            AgreementStep.ASK_PHONE: self._handle_phone,
            AgreementStep.ASK_PURPOSE: self._handle_purpose,
            AgreementStep.ASK_DUE_DATE: self._handle_due_date,
            AgreementStep.REVIEW: self._handle_review,
        }

    async def prompt(self, ctx: FlowContext, step) -> None:
        scratch = ctx.scratch
        if step == AgreementStep.ASK_DIRECTION:
            await self.messenger.send_buttons(
                ctx.phone,
                "📝 *Record an agreement*\n\nAre you giving money or receiving it?",
                [("dir_giving", "💸 I'm giving"), ("dir_receiving", "💰 I'm receiving")],
            )
        elif step == AgreementStep.ASK_AMOUNT:
            await self.messenger.send_text(ctx.phone, "How much? Example: *5000*")
        elif step == AgreementStep.ASK_NAME:
            await self.messenger.send_text(ctx.phone, "What is the other person's name?")
        elif step == AgreementStep.ASK_PHONE:
            await self.messenger.send_text(
                ctx.phone,
                f"What is {scratch.counterparty_name}'s WhatsApp number? Example: *9847123456*",
            )
        elif step == AgreementStep.ASK_PURPOSE:
            await self.messenger.send_list(
                ctx.phone,
                "What is it for?",
                "Purpose",
                [(f"purpose_{purpose.value}", title, desc) for purpose, title, desc in PURPOSE_ROWS],
                section_title="Purpose",
            )
        elif step == AgreementStep.ASK_DUE_DATE:
            await self.messenger.send_buttons(
                ctx.phone,
                "📅 When should it be settled? Type a date like *31/12/2026*.",
                [("no_due_date", "No due date")],
            )
        else:
            direction = AgreementDirection(scratch.direction)
            verb = "You give" if direction == AgreementDirection.GIVING else "You receive"
            due = scratch.due_date.strftime("%d/%m/%Y") if scratch.due_date else "None"
            await self.messenger.send_buttons(
                ctx.phone,
                "*Review*\n\n"
                f"{verb} ₹{scratch.amount:,.2f}\n"
                f"👤 {scratch.counterparty_name} ({PhoneNumberValidator.mask(scratch.counterparty_phone)})\n"
                f"🏷️ {AgreementPurpose(scratch.purpose).value.title()}\n"
                f"📅 Due: {due}",
                [("confirm", "✅ Confirm"), ("edit", "✏️ Start over"), ("cancel", "❌ Cancel")],
            )

    async def _handle_direction(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        direction = DIRECTIONS.get(message.token if message else "")
        if direction is None:
            return await self.handle_invalid_input(message, ctx)
        ctx.scratch.direction = direction.value
        await self.prompt(ctx, AgreementStep.ASK_AMOUNT)
        return Transition.advance(AgreementStep.ASK_AMOUNT)

    async def _handle_amount(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        amount = AmountValidator.parse(message.text if message else "")
        if amount is None:
            return await self.handle_invalid_input(message, ctx, "Please send the amount as a number.")
        ok, error = AmountValidator.validate(amount, max_value=MAX_AGREEMENT_AMOUNT)
        if not ok:
            return await self.handle_invalid_input(message, ctx, error)
        ctx.scratch.amount = amount
        await self.prompt(ctx, AgreementStep.ASK_NAME)
        return Transition.advance(AgreementStep.ASK_NAME)

    async def _handle_name(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        name = TextSanitizer.sanitize(message.text or "", max_length=100) if message else ""
        ok, error = NameValidator.validate(name)
        if not ok:
            return await self.handle_invalid_input(message, ctx, error)
        ctx.scratch.counterparty_name = name
        await self.prompt(ctx, AgreementStep.ASK_PHONE)
        return Transition.advance(AgreementStep.ASK_PHONE)

    async def _handle_phone(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        raw = message.text if message else ""
        if not PhoneNumberValidator.validate(raw or ""):
            return await self.handle_invalid_input(message, ctx, "That doesn't look like a phone number.")
        phone = PhoneNumberValidator.normalize(raw)
        if phone == ctx.phone:
            return await self.handle_invalid_input(message, ctx, "Please enter the other person's number.")
        ctx.scratch.counterparty_phone = phone
        await self.prompt(ctx, AgreementStep.ASK_PURPOSE)
        return Transition.advance(AgreementStep.ASK_PURPOSE)

    async def _handle_purpose(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        try:
            purpose = AgreementPurpose(token[len("purpose_"):]) if token.startswith("purpose_") else None
        except ValueError:
            purpose = None
        if purpose is None:
            return await self.handle_invalid_input(message, ctx, "Please choose from the list.")
        ctx.scratch.purpose = purpose.value
        await self.prompt(ctx, AgreementStep.ASK_DUE_DATE)
        return Transition.advance(AgreementStep.ASK_DUE_DATE)

    async def _handle_due_date(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        if message is not None and message.token in ("no_due_date", "skip"):
            ctx.scratch.due_date = None
        else:
            due = DateValidator.parse_future(message.text if message else "", local_today())
            if due is None:
                return await self.handle_invalid_input(
                    message, ctx, "Please type a future date like 31/12/2026."
                )
            ctx.scratch.due_date = due
        await self.prompt(ctx, AgreementStep.REVIEW)
        return Transition.advance(AgreementStep.REVIEW)

    async def _handle_review(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        if token == "edit":
            ctx.scratch = AgreementScratch()
            await self.prompt(ctx, AgreementStep.ASK_DIRECTION)
            return Transition.advance(AgreementStep.ASK_DIRECTION)
        if token != "confirm":
            return await self.handle_invalid_input(message, ctx)

        scratch = ctx.scratch
        if None in (scratch.direction, scratch.amount, scratch.counterparty_phone, scratch.purpose):
            await self.prompt(ctx, AgreementStep.ASK_DIRECTION)
            return Transition.advance(AgreementStep.ASK_DIRECTION)

        agreement = await self.deps.agreements.create_agreement(
            ctx.user,
            direction=AgreementDirection(scratch.direction),
            amount=scratch.amount,
            counterparty_name=scratch.counterparty_name,
            counterparty_phone=scratch.counterparty_phone,
            purpose=AgreementPurpose(scratch.purpose),
            due_date=scratch.due_date,
        )
        await self.messenger.send_text(
            ctx.phone,
            f"✅ Agreement *{agreement.reference}* recorded.\n"
            f"We've asked {scratch.counterparty_name} to confirm it.",
        )
        return Transition.main_menu()
