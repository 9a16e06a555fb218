"""
Job posting flow
"""
from typing import Optional

from app.core.validation import AmountValidator, TextSanitizer
from app.db.models.job_post import JobCategory
from app.domain.messages import IncomingMessage
from app.domain.services.job_service import MAX_JOB_PAY
from app.state_machine.base import FlowContext, FlowHandler, Transition
from app.state_machine.scratch import JobPostScratch
from app.state_machine.states import FlowType, JobPostStep


class JobPostHandler(FlowHandler):
    flow = FlowType.JOB_POST
    Step = JobPostStep

    def _step_handlers(self):
        return {
            JobPostStep.SELECT_CATEGORY: self._handle_category,
            JobPostStep.ENTER_TITLE: self._handle_title,
            JobPostStep.ENTER_LOCATION: self._handle_location,
            JobPostStep.ENTER_PAY: self._handle_pay,
            JobPostStep.CONFIRM: self._handle_confirm,
        }

    async def prompt(self, ctx: FlowContext, step) -> None:
        scratch = ctx.scratch
        if step == JobPostStep.SELECT_CATEGORY:
            await self.messenger.send_list(
                ctx.phone,
                "🧰 *Post a job*\n\nWhat kind of help do you need?",
                "Category",
                [(f"job_cat_{category.value}", category.label, None) for category in JobCategory],
                section_title="Categories",
            )
        elif step == JobPostStep.ENTER_TITLE:
            await self.messenger.send_text(
                ctx.phone, "Describe the job in one line. Example: *Stand in the ration shop queue*"
            )
        elif step == JobPostStep.ENTER_LOCATION:
            await self.messenger.request_location(
                ctx.phone, "📍 Where is the job? Share a pin or type the place name."
            )
        elif step == JobPostStep.ENTER_PAY:
            await self.messenger.send_text(ctx.phone, "💰 How much will you pay? Example: *300*")
        else:
            await self.messenger.send_buttons(
                ctx.phone,
                "*Confirm job*\n\n"
                f"🧰 {JobCategory(scratch.category).label}\n"
                f"📝 {scratch.title}\n"
                f"📍 {scratch.location_name or 'Shared location'}\n"
                f"💰 ₹{scratch.pay_amount:g}",
                [("confirm", "✅ Post"), ("edit", "✏️ Start over"), ("cancel", "❌ Cancel")],
            )

    async def _handle_category(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        try:
            category = JobCategory(token[len("job_cat_"):]) if token.startswith("job_cat_") else None
        except ValueError:
            category = None
        if category is None:
            return await self.handle_invalid_input(message, ctx, "Please choose a category.")
        ctx.scratch.category = category.value
        await self.prompt(ctx, JobPostStep.ENTER_TITLE)
        return Transition.advance(JobPostStep.ENTER_TITLE)

    async def _handle_title(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        title = TextSanitizer.sanitize(message.text or "", max_length=120) if message else ""
        if len(title) < 3:
            return await self.handle_invalid_input(message, ctx, "Please describe the job in a few words.")
        ctx.scratch.title = title
        await self.prompt(ctx, JobPostStep.ENTER_LOCATION)
        return Transition.advance(JobPostStep.ENTER_LOCATION)

    async def _handle_location(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        if message is not None and message.is_location:
            ctx.scratch.latitude = message.latitude
            ctx.scratch.longitude = message.longitude
            ctx.scratch.location_name = message.location_name
        else:
            place = TextSanitizer.sanitize(message.text or "", max_length=200) if message else ""
            if len(place) < 2:
                return await self.handle_invalid_input(message, ctx, "Share a pin or type the place name.")
            ctx.scratch.location_name = place
        await self.prompt(ctx, JobPostStep.ENTER_PAY)
        return Transition.advance(JobPostStep.ENTER_PAY)

    async def _handle_pay(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        pay = AmountValidator.parse(message.text if message else "")
        if pay is None:
            return await self.handle_invalid_input(message, ctx, "Please send the pay as a number.")
        ok, error = AmountValidator.validate(pay, max_value=MAX_JOB_PAY)
        if not ok:
            return await self.handle_invalid_input(message, ctx, error)
        ctx.scratch.pay_amount = pay
        await self.prompt(ctx, JobPostStep.CONFIRM)
        return Transition.advance(JobPostStep.CONFIRM)

    async def _handle_confirm(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        if token == "edit":
            ctx.scratch = JobPostScratch()
            await self.prompt(ctx, JobPostStep.SELECT_CATEGORY)
            return Transition.advance(JobPostStep.SELECT_CATEGORY)
        if token != "confirm":
            return await self.handle_invalid_input(message, ctx)

        scratch = ctx.scratch
        if scratch.category is None or scratch.title is None or scratch.pay_amount is None:
            await self.prompt(ctx, JobPostStep.SELECT_CATEGORY)
            return Transition.advance(JobPostStep.SELECT_CATEGORY)

        job = await self.deps.job_board.create_job(
            ctx.user,
            category=JobCategory(scratch.category),
            title=scratch.title,
            pay_amount=scratch.pay_amount,
            location_name=scratch.location_name,
            latitude=scratch.latitude,
            longitude=scratch.longitude,
        )
        await self.messenger.send_text(
            ctx.phone, f"✅ Job #{job.id} posted. We'll let you know when someone takes it."
        )
        return Transition.main_menu()
