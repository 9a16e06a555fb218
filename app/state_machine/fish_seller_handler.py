"""
Fish seller flows: seller registration, posting a catch, stock updates
"""
from typing import Optional

from app.core.validation import AmountValidator, QuantityRangeValidator, TextSanitizer
from app.db.models.fish_catch import FishCatchStatus
from app.db.models.fish_seller import FishSeller
from app.domain.messages import IncomingMessage
from app.domain.services.fish.catch_service import MAX_PRICE_PER_KG
from app.state_machine.base import FlowContext, FlowHandler, Transition
from app.state_machine.scratch import CatchPostScratch
from app.state_machine.states import (
    CatchPostStep,
    FlowType,
    SellerRegisterStep,
    StockUpdateStep,
)

STATUS_CHOICES: dict[str, FishCatchStatus] = {
    "status_available": FishCatchStatus.AVAILABLE,
    "status_low_stock": FishCatchStatus.LOW_STOCK,
    "status_sold_out": FishCatchStatus.SOLD_OUT,
}


class SellerRegisterHandler(FlowHandler):
    """Business name -> shop location -> confirm"""

    flow = FlowType.FISH_SELLER_REGISTER
    Step = SellerRegisterStep

    def _step_handlers(self):
        return {
            SellerRegisterStep.ASK_BUSINESS_NAME: self._handle_business_name,
            SellerRegisterStep.ASK_LOCATION: self._handle_location,
            SellerRegisterStep.CONFIRM: self._handle_confirm,
        }

    async def prompt(self, ctx: FlowContext, step) -> None:
        if step == SellerRegisterStep.ASK_BUSINESS_NAME:
            await self.messenger.send_text(
                ctx.phone,
                "🎣 *Become a fish seller*\n\nWhat is the name of your stall or business?",
            )
        elif step == SellerRegisterStep.ASK_LOCATION:
            await self.messenger.request_location(
                ctx.phone,
                "📍 Share the location where customers can buy from you.",
            )
        else:
            scratch = ctx.scratch
            await self.messenger.send_buttons(
                ctx.phone,
                f"Please confirm:\n\n🏪 {scratch.business_name}\n📍 {scratch.location_name or 'Shared location'}",
                [("confirm", "✅ Confirm"), ("edit", "✏️ Edit"), ("cancel", "❌ Cancel")],
            )

    async def _handle_business_name(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        name = TextSanitizer.sanitize(message.text or "", max_length=120) if message else ""
        if len(name) < 2:
            return await self.handle_invalid_input(message, ctx, "Please type your business name.")
        ctx.scratch.business_name = name
        await self.prompt(ctx, SellerRegisterStep.ASK_LOCATION)
        return Transition.advance(SellerRegisterStep.ASK_LOCATION)

    async def _handle_location(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        if message is None or not message.is_location:
            return await self.handle_invalid_input(message, ctx, "Please share a location pin.")
        ctx.scratch.latitude = message.latitude
        ctx.scratch.longitude = message.longitude
        ctx.scratch.location_name = message.location_name
        await self.prompt(ctx, SellerRegisterStep.CONFIRM)
        return Transition.advance(SellerRegisterStep.CONFIRM)

    async def _handle_confirm(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        if token == "edit":
            await self.prompt(ctx, SellerRegisterStep.ASK_BUSINESS_NAME)
            return Transition.advance(SellerRegisterStep.ASK_BUSINESS_NAME)
        if token != "confirm":
            return await self.handle_invalid_input(message, ctx)

        scratch = ctx.scratch
        if not scratch.business_name or scratch.latitude is None:
            await self.prompt(ctx, SellerRegisterStep.ASK_BUSINESS_NAME)
            return Transition.advance(SellerRegisterStep.ASK_BUSINESS_NAME)

        seller = await self.deps.catches.register_seller(
            ctx.user,
            scratch.business_name,
            scratch.latitude,
            scratch.longitude,
            scratch.location_name,
        )
        await self.messenger.send_text(
            ctx.phone,
            f"✅ *{seller.business_name}* is now a fish seller on Nearbuy!\n"
            "Let's post your first catch.",
        )
        return Transition.handoff(FlowType.FISH_POST_CATCH)


class CatchPostHandler(FlowHandler):
    """
    Posting a catch: fish -> quantity -> price -> photo -> confirm.

    Confirming creates the catch and schedules alert matching after commit.
    """

    flow = FlowType.FISH_POST_CATCH
    Step = CatchPostStep

    def _step_handlers(self):
        return {
            CatchPostStep.SELECT_FISH: self._handle_select_fish,
            CatchPostStep.ENTER_QUANTITY: self._handle_quantity,
            CatchPostStep.ENTER_PRICE: self._handle_price,
            CatchPostStep.UPLOAD_PHOTO: self._handle_photo,
            CatchPostStep.CONFIRM: self._handle_confirm,
            CatchPostStep.ADD_ANOTHER: self._handle_add_another,
        }

    async def _seller(self, ctx: FlowContext) -> FishSeller | None:
        if ctx.user is None:
            return None
        return await self.deps.catches.get_seller_for_user(ctx.user.id)

    async def _start(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        if await self._seller(ctx) is None:
            return Transition.handoff(FlowType.FISH_SELLER_REGISTER)
        await self.prompt(ctx, CatchPostStep.SELECT_FISH)
        return Transition.advance(CatchPostStep.SELECT_FISH)

    async def prompt(self, ctx: FlowContext, step) -> None:
        scratch = ctx.scratch
        if step == CatchPostStep.SELECT_FISH:
            fish_types = await self.deps.catches.list_fish_types()
            await self.messenger.send_list(
                ctx.phone,
                "🐟 Which fish did you get today?",
                "Choose fish",
                [(f"fish_type_{ft.id}", ft.name_en, ft.name_local) for ft in fish_types[:10]],
                section_title="Fish",
            )
        elif step == CatchPostStep.ENTER_QUANTITY:
            await self.messenger.send_text(
                ctx.phone,
                f"⚖️ How much {scratch.fish_name or 'fish'} do you have?\nExample: *20* or *10-15* kg",
            )
        elif step == CatchPostStep.ENTER_PRICE:
            await self.messenger.send_text(ctx.phone, "💰 Price per kg? Example: *280*")
        elif step == CatchPostStep.UPLOAD_PHOTO:
            await self.messenger.send_buttons(
                ctx.phone,
                "📸 Send a photo of the catch. Posts with photos get more customers!",
                [("skip_photo", "⏭️ Skip photo")],
            )
        elif step == CatchPostStep.CONFIRM:
            seller = await self._seller(ctx)
            reach = 0
            if seller is not None and scratch.fish_type_id is not None:
                reach = await self.deps.matching.count_potential_subscribers(
                    seller.latitude, seller.longitude, scratch.fish_type_id
                )
            quantity = (
                f"{scratch.quantity_min}-{scratch.quantity_max} kg"
                if scratch.quantity_max else f"{scratch.quantity_min} kg"
            )
            await self.messenger.send_buttons(
                ctx.phone,
                f"*Confirm your catch*\n\n"
                f"🐟 {scratch.fish_name}\n"
                f"⚖️ {quantity}\n"
                f"💰 ₹{scratch.price_per_kg:g}/kg\n"
                f"📸 {'Photo added' if scratch.photo_media_id else 'No photo'}\n\n"
                f"🔔 About {reach} nearby subscriber(s) will be alerted.",
                [("post", "✅ Post"), ("edit", "✏️ Start over"), ("cancel", "❌ Cancel")],
            )
        else:
            await self.messenger.send_buttons(
                ctx.phone,
                "Post another catch?",
                [("add_another", "➕ Add another"), ("done", "✅ Done")],
            )

    async def _handle_select_fish(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        fish_type_id = self.parse_int(message, "fish_type_")
        fish_type = await self.deps.catches.get_fish_type(fish_type_id) if fish_type_id else None
        if fish_type is None or not fish_type.is_active:
            return await self.handle_invalid_input(message, ctx, "Please pick a fish from the list.")
        ctx.scratch.fish_type_id = fish_type.id
        ctx.scratch.fish_name = fish_type.display_name
        await self.prompt(ctx, CatchPostStep.ENTER_QUANTITY)
        return Transition.advance(CatchPostStep.ENTER_QUANTITY)

    async def _handle_quantity(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        parsed = QuantityRangeValidator.parse(message.text if message else "")
        if parsed is None:
            return await self.handle_invalid_input(message, ctx, "Please send a quantity like 20 or 10-15.")
        ctx.scratch.quantity_min, ctx.scratch.quantity_max = parsed
        await self.prompt(ctx, CatchPostStep.ENTER_PRICE)
        return Transition.advance(CatchPostStep.ENTER_PRICE)

    async def _handle_price(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        price = AmountValidator.parse(message.text if message else "")
        if price is None:
            return await self.handle_invalid_input(message, ctx, "Please send the price as a number.")
        ok, error = AmountValidator.validate(price, max_value=MAX_PRICE_PER_KG)
        if not ok:
            return await self.handle_invalid_input(message, ctx, error)
        ctx.scratch.price_per_kg = price
        await self.prompt(ctx, CatchPostStep.UPLOAD_PHOTO)
        return Transition.advance(CatchPostStep.UPLOAD_PHOTO)

    async def _handle_photo(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        if message is not None and message.is_media and message.media_id:
            ctx.scratch.photo_media_id = message.media_id
        elif message is None or message.token not in ("skip_photo", "skip"):
            return await self.handle_invalid_input(message, ctx, "Send a photo or tap Skip.")
        await self.prompt(ctx, CatchPostStep.CONFIRM)
        return Transition.advance(CatchPostStep.CONFIRM)

    async def _handle_confirm(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        if token == "edit":
            ctx.scratch = CatchPostScratch(posted_catch_ids=ctx.scratch.posted_catch_ids)
            await self.prompt(ctx, CatchPostStep.SELECT_FISH)
            return Transition.advance(CatchPostStep.SELECT_FISH)
        if token != "post":
            return await self.handle_invalid_input(message, ctx)

        seller = await self._seller(ctx)
        if seller is None:
            return Transition.handoff(FlowType.FISH_SELLER_REGISTER)

        scratch = ctx.scratch
        if scratch.fish_type_id is None or scratch.quantity_min is None or scratch.price_per_kg is None:
            await self.prompt(ctx, CatchPostStep.SELECT_FISH)
            return Transition.advance(CatchPostStep.SELECT_FISH)

        catch = await self.deps.catches.create_catch(
            seller,
            fish_type_id=scratch.fish_type_id,
            quantity_min=scratch.quantity_min,
            quantity_max=scratch.quantity_max,
            price_per_kg=scratch.price_per_kg,
            photo_media_id=scratch.photo_media_id,
        )
        ctx.scratch = CatchPostScratch(posted_catch_ids=[*scratch.posted_catch_ids, catch.id])
        await self.messenger.send_text(
            ctx.phone,
            f"✅ Your {scratch.fish_name} is live! Nearby customers are being alerted now.\n"
            f"It will expire automatically after a few hours.",
        )
        await self.prompt(ctx, CatchPostStep.ADD_ANOTHER)
        return Transition.advance(CatchPostStep.ADD_ANOTHER)

    async def _handle_add_another(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        if token == "add_another":
            ctx.scratch = CatchPostScratch(posted_catch_ids=ctx.scratch.posted_catch_ids)
            await self.prompt(ctx, CatchPostStep.SELECT_FISH)
            return Transition.advance(CatchPostStep.SELECT_FISH)
        if token == "done":
            await self.messenger.send_text(
                ctx.phone,
                f"👍 {len(ctx.scratch.posted_catch_ids)} catch(es) posted today. Good selling!",
            )
            return Transition.main_menu()
        return await self.handle_invalid_input(message, ctx)


class StockUpdateHandler(FlowHandler):
    """Pick an active catch -> new status -> confirm"""

    flow = FlowType.FISH_STOCK_UPDATE
    Step = StockUpdateStep

    def _step_handlers(self):
        return {
            StockUpdateStep.SELECT_CATCH: self._handle_select_catch,
            StockUpdateStep.SELECT_STATUS: self._handle_select_status,
            StockUpdateStep.CONFIRM: self._handle_confirm,
        }

    async def _active_catches(self, ctx: FlowContext):
        seller = await self.deps.catches.get_seller_for_user(ctx.user.id) if ctx.user else None
        if seller is None:
            return []
        return await self.deps.catches.get_seller_active_catches(seller)

    async def _start(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        if not await self._active_catches(ctx):
            await self.messenger.send_buttons(
                ctx.phone,
                "You have no active catches right now.",
                [("fish_sell", "🎣 Post a catch"), ("main_menu", "🏠 Menu")],
            )
            return Transition.main_menu()
        await self.prompt(ctx, StockUpdateStep.SELECT_CATCH)
        return Transition.advance(StockUpdateStep.SELECT_CATCH)

    async def prompt(self, ctx: FlowContext, step) -> None:
        if step == StockUpdateStep.SELECT_CATCH:
            catches = await self._active_catches(ctx)
            rows = []
            for catch in catches[:10]:
                fish_type = await self.deps.catches.get_fish_type(catch.fish_type_id)
                rows.append((
                    f"catch_{catch.id}",
                    fish_type.name_en if fish_type else f"Catch {catch.id}",
                    f"{FishCatchStatus(catch.status).label} • ₹{catch.price_per_kg:g}/kg • {catch.customers_coming} coming",
                ))
            await self.messenger.send_list(
                ctx.phone, "📦 Which catch do you want to update?", "My catches", rows,
                section_title="Active catches",
            )
        elif step == StockUpdateStep.SELECT_STATUS:
            await self.messenger.send_buttons(
                ctx.phone,
                "What's the stock now?",
                [
                    ("status_available", "✅ Available"),
                    ("status_low_stock", "⚠️ Low stock"),
                    ("status_sold_out", "❌ Sold out"),
                ],
            )
        else:
            new_status = FishCatchStatus(ctx.scratch.new_status)
            await self.messenger.send_buttons(
                ctx.phone,
                f"Mark this catch as {new_status.label}?",
                [("confirm", "✅ Yes"), ("cancel", "❌ Cancel")],
            )

    async def _handle_select_catch(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        catch_id = self.parse_int(message, "catch_")
        active_ids = {catch.id for catch in await self._active_catches(ctx)}
        if catch_id is None or catch_id not in active_ids:
            return await self.handle_invalid_input(message, ctx, "Please pick one of your catches.")
        ctx.scratch.catch_id = catch_id
        await self.prompt(ctx, StockUpdateStep.SELECT_STATUS)
        return Transition.advance(StockUpdateStep.SELECT_STATUS)

    async def _handle_select_status(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        status = STATUS_CHOICES.get(message.token if message else "")
        if status is None:
            return await self.handle_invalid_input(message, ctx)
        ctx.scratch.new_status = status.value
        await self.prompt(ctx, StockUpdateStep.CONFIRM)
        return Transition.advance(StockUpdateStep.CONFIRM)

    async def _handle_confirm(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        if (message.token if message else "") != "confirm":
            return await self.handle_invalid_input(message, ctx)
        if ctx.scratch.catch_id is None or ctx.scratch.new_status is None:
            await self.prompt(ctx, StockUpdateStep.SELECT_CATCH)
            return Transition.advance(StockUpdateStep.SELECT_CATCH)

        seller = await self.deps.catches.get_seller_for_user(ctx.user.id)
        catch = await self.deps.catches.get_catch(ctx.scratch.catch_id)
        if seller is None or catch.seller_id != seller.id:
            return Transition.main_menu()

        status = FishCatchStatus(ctx.scratch.new_status)
        await self.deps.catches.update_status(catch, status)
        text = f"✅ Updated: {status.label}"
        if status == FishCatchStatus.SOLD_OUT and catch.customers_coming:
            text += f"\nWe'll point the {catch.customers_coming} customer(s) on their way to other sellers."
        await self.messenger.send_text(ctx.phone, text)
        return Transition.main_menu()
