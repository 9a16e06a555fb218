"""
Fish buyer flows: alert subscriptions, managing them, browsing nearby catches

Alert buttons ("I'm coming", "Location") can be tapped long after the alert
was sent, from any flow; BrowseHandler.handle_alert_response answers them
without moving the session.
"""
from typing import Optional

from app.core.logging import get_logger
from app.db.models.fish_catch import FishCatch, FishCatchStatus
from app.db.models.fish_seller import FishSeller
from app.db.models.fish_subscription import AlertFrequency
from app.db.models.fish_type import FishType
from app.domain.messages import IncomingMessage
from app.domain.services.fish.alert_service import ACTION_COMING, ACTION_LOCATION
from app.domain.services.fish.catch_service import NearbyCatch
from app.domain.services.fish.subscription_service import validate_radius
from app.state_machine.base import FlowContext, FlowHandler, Transition
from app.state_machine.scratch import SubscribeScratch
from app.state_machine.states import (
    BrowseStep,
    FlowType,
    ManageSubscriptionStep,
    SubscribeStep,
)

logger = get_logger(__name__)

RADIUS_BUTTONS = [("radius_2", "2 km"), ("radius_5", "5 km"), ("radius_10", "10 km")]


def parse_radius_input(message: Optional[IncomingMessage]) -> int | None:
    """
    Radius from a radius_N button or typed digits ("7", "7 km").

    Returns the raw number; bounds are checked by validate_radius.
    """
    if message is None:
        return None
    token = message.token
    if token.startswith("radius_"):
        token = token[len("radius_"):]
    token = token.replace("km", "").strip()
    if not token.isdigit():
        return None
    return int(token)


def _subscription_title(subscription) -> str:
    return subscription.location_label or f"Alert #{subscription.id}"


class SubscribeHandler(FlowHandler):
    """Location -> radius -> fish types -> frequency -> confirm"""

    flow = FlowType.FISH_SUBSCRIBE
    Step = SubscribeStep

    def _step_handlers(self):
        return {
            SubscribeStep.SELECT_LOCATION: self._handle_location,
            SubscribeStep.SET_RADIUS: self._handle_radius,
            SubscribeStep.SELECT_FISH_TYPES: self._handle_fish_types,
            SubscribeStep.SELECT_FISH: self._handle_select_fish,
            SubscribeStep.SET_FREQUENCY: self._handle_frequency,
            SubscribeStep.CONFIRM: self._handle_confirm,
        }

    async def prompt(self, ctx: FlowContext, step) -> None:
        scratch = ctx.scratch
        if step == SubscribeStep.SELECT_LOCATION:
            await self.messenger.request_location(
                ctx.phone,
                "🔔 *Fresh fish alerts*\n\nShare the location you want alerts around.",
            )
            if ctx.user is not None and ctx.user.has_location:
                await self.messenger.send_buttons(
                    ctx.phone,
                    f"Or use your saved location: {ctx.user.location_name or 'saved pin'}",
                    [("use_saved_location", "📍 Use saved")],
                )
        elif step == SubscribeStep.SET_RADIUS:
            await self.messenger.send_buttons(
                ctx.phone,
                "📏 How far are you willing to go?\nTap a button or type a number of km (1-50).",
                RADIUS_BUTTONS,
            )
        elif step == SubscribeStep.SELECT_FISH_TYPES:
            await self.messenger.send_buttons(
                ctx.phone,
                "🐟 Which fish do you want alerts for?",
                [("fish_all", "All fish"), ("fish_choose", "Choose fish")],
            )
        elif step == SubscribeStep.SELECT_FISH:
            fish_types = await self.deps.catches.list_fish_types()
            chosen = set(scratch.fish_type_ids)
            rows = [
                (f"fish_type_{ft.id}", ft.name_en, ft.name_local)
                for ft in fish_types
                if ft.id not in chosen
            ][:9]
            if chosen:
                rows.append(("fish_done", "✅ Done", f"{len(chosen)} selected"))
            await self.messenger.send_list(ctx.phone, "Pick a fish:", "Fish", rows, section_title="Fish")
        elif step == SubscribeStep.SET_FREQUENCY:
            await self.messenger.send_list(
                ctx.phone,
                "⏰ When should we alert you?",
                "Frequency",
                [(f"freq_{freq.value}", freq.label, None) for freq in AlertFrequency],
                section_title="Alert timing",
            )
        else:
            if scratch.all_fish_types:
                fish_text = "All fish"
            else:
                names = []
                for fish_type_id in scratch.fish_type_ids:
                    fish_type = await self.deps.catches.get_fish_type(fish_type_id)
                    if fish_type is not None:
                        names.append(fish_type.name_en)
                fish_text = ", ".join(names) or "All fish"
            frequency = AlertFrequency(scratch.frequency or AlertFrequency.IMMEDIATE.value)
            await self.messenger.send_buttons(
                ctx.phone,
                "*Confirm your alert*\n\n"
                f"📍 {scratch.location_label or 'Shared location'}\n"
                f"📏 Within {scratch.radius_km} km\n"
                f"🐟 {fish_text}\n"
                f"⏰ {frequency.label}",
                [("confirm", "✅ Confirm"), ("edit", "✏️ Start over"), ("cancel", "❌ Cancel")],
            )

    async def _handle_location(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        scratch = ctx.scratch
        if message is not None and message.is_location:
            scratch.latitude = message.latitude
            scratch.longitude = message.longitude
            scratch.location_label = message.location_name
            if ctx.user is not None and not ctx.user.has_location:
                await self.deps.users.update_location(
                    ctx.user, message.latitude, message.longitude, message.location_name
                )
        elif (
            message is not None
            and message.token == "use_saved_location"
            and ctx.user is not None
            and ctx.user.has_location
        ):
            scratch.latitude = ctx.user.latitude
            scratch.longitude = ctx.user.longitude
            scratch.location_label = ctx.user.location_name
        else:
            return await self.handle_invalid_input(message, ctx, "Please share a location pin.")

        await self.prompt(ctx, SubscribeStep.SET_RADIUS)
        return Transition.advance(SubscribeStep.SET_RADIUS)

    async def _handle_radius(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        radius = parse_radius_input(message)
        if radius is None:
            return await self.handle_invalid_input(message, ctx, "Please send a distance in km, e.g. 5.")
        # InvalidRadiusError מוחזר כקלט שגוי על ידי ה-guard
        ctx.scratch.radius_km = validate_radius(radius)
        await self.prompt(ctx, SubscribeStep.SELECT_FISH_TYPES)
        return Transition.advance(SubscribeStep.SELECT_FISH_TYPES)

    async def _handle_fish_types(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        if token == "fish_all":
            ctx.scratch.all_fish_types = True
            ctx.scratch.fish_type_ids = []
            await self.prompt(ctx, SubscribeStep.SET_FREQUENCY)
            return Transition.advance(SubscribeStep.SET_FREQUENCY)
        if token == "fish_choose":
            ctx.scratch.all_fish_types = False
            ctx.scratch.fish_type_ids = []
            await self.prompt(ctx, SubscribeStep.SELECT_FISH)
            return Transition.advance(SubscribeStep.SELECT_FISH)
        return await self.handle_invalid_input(message, ctx)

    async def _handle_select_fish(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        if token == "fish_more":
            await self.prompt(ctx, SubscribeStep.SELECT_FISH)
            return Transition.stay()
        if token == "fish_done":
            if not ctx.scratch.fish_type_ids:
                return await self.handle_invalid_input(message, ctx, "Pick at least one fish.")
            await self.prompt(ctx, SubscribeStep.SET_FREQUENCY)
            return Transition.advance(SubscribeStep.SET_FREQUENCY)

        fish_type_id = self.parse_int(message, "fish_type_")
        fish_type = await self.deps.catches.get_fish_type(fish_type_id) if fish_type_id else None
        if fish_type is None:
            return await self.handle_invalid_input(message, ctx, "Please pick a fish from the list.")
        if fish_type.id not in ctx.scratch.fish_type_ids:
            ctx.scratch.fish_type_ids = [*ctx.scratch.fish_type_ids, fish_type.id]
        await self.messenger.send_buttons(
            ctx.phone,
            f"Added {fish_type.display_name}. Add another fish?",
            [("fish_more", "➕ Add more"), ("fish_done", "✅ Done")],
        )
        return Transition.stay()

    async def _handle_frequency(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        try:
            frequency = AlertFrequency(token[len("freq_"):]) if token.startswith("freq_") else None
        except ValueError:
            frequency = None
        if frequency is None:
            return await self.handle_invalid_input(message, ctx, "Please choose from the list.")
        ctx.scratch.frequency = frequency.value
        await self.prompt(ctx, SubscribeStep.CONFIRM)
        return Transition.advance(SubscribeStep.CONFIRM)

    async def _handle_confirm(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        if token == "edit":
            ctx.scratch = SubscribeScratch()
            await self.prompt(ctx, SubscribeStep.SELECT_LOCATION)
            return Transition.advance(SubscribeStep.SELECT_LOCATION)
        if token != "confirm":
            return await self.handle_invalid_input(message, ctx)

        scratch = ctx.scratch
        if scratch.latitude is None or scratch.radius_km is None:
            await self.prompt(ctx, SubscribeStep.SELECT_LOCATION)
            return Transition.advance(SubscribeStep.SELECT_LOCATION)

        subscription = await self.deps.subscriptions.create_subscription(
            ctx.user,
            scratch.latitude,
            scratch.longitude,
            radius_km=scratch.radius_km,
            fish_type_ids=scratch.fish_type_ids,
            all_fish_types=scratch.all_fish_types,
            frequency=AlertFrequency(scratch.frequency or AlertFrequency.IMMEDIATE.value),
            location_label=scratch.location_label,
        )
        await self.messenger.send_text(
            ctx.phone,
            f"✅ Alert set! We'll message you when fresh fish lands within {subscription.radius_km} km.\n"
            "Manage it anytime from *My alerts* in the menu.",
        )
        return Transition.main_menu()


class ManageSubscriptionHandler(FlowHandler):
    flow = FlowType.FISH_MANAGE_SUBSCRIPTION
    Step = ManageSubscriptionStep

    def _step_handlers(self):
        return {
            ManageSubscriptionStep.SELECT_SUBSCRIPTION: self._handle_select,
            ManageSubscriptionStep.SELECT_ACTION: self._handle_action,
            ManageSubscriptionStep.SET_RADIUS: self._handle_radius,
        }

    async def _start(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        if not await self.deps.subscriptions.list_for_user(ctx.user.id):
            await self.messenger.send_buttons(
                ctx.phone,
                "You don't have any fish alerts yet.",
                [("fish_subscribe", "🔔 Create alert"), ("main_menu", "🏠 Menu")],
            )
            return Transition.main_menu()
        await self.prompt(ctx, ManageSubscriptionStep.SELECT_SUBSCRIPTION)
        return Transition.advance(ManageSubscriptionStep.SELECT_SUBSCRIPTION)

    async def prompt(self, ctx: FlowContext, step) -> None:
        if step == ManageSubscriptionStep.SELECT_SUBSCRIPTION:
            subscriptions = await self.deps.subscriptions.list_for_user(ctx.user.id)
            rows = []
            for sub in subscriptions[:10]:
                paused = " • paused" if sub.is_paused else ""
                rows.append((
                    f"sub_{sub.id}",
                    _subscription_title(sub),
                    f"{sub.radius_km} km • {AlertFrequency(sub.alert_frequency).label}{paused}",
                ))
            await self.messenger.send_list(
                ctx.phone, "⚙️ Your fish alerts:", "My alerts", rows, section_title="Alerts"
            )
        elif step == ManageSubscriptionStep.SELECT_ACTION:
            subscription = await self.deps.subscriptions.get_for_user(ctx.scratch.subscription_id, ctx.user.id)
            toggle = ("sub_toggle", "▶️ Resume") if subscription.is_paused else ("sub_toggle", "⏸️ Pause")
            await self.messenger.send_buttons(
                ctx.phone,
                f"*{_subscription_title(subscription)}*\n"
                f"📏 {subscription.radius_km} km\n"
                f"📨 {subscription.alerts_received} alerts received",
                [toggle, ("sub_radius", "📏 Change radius"), ("sub_delete", "🗑️ Delete")],
            )
        else:
            await self.messenger.send_buttons(
                ctx.phone,
                "📏 New radius? Tap a button or type km (1-50).",
                RADIUS_BUTTONS,
            )

    async def _handle_select(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        subscription_id = self.parse_int(message, "sub_")
        owned = {sub.id for sub in await self.deps.subscriptions.list_for_user(ctx.user.id)}
        if subscription_id is None or subscription_id not in owned:
            return await self.handle_invalid_input(message, ctx, "Please pick one of your alerts.")
        ctx.scratch.subscription_id = subscription_id
        await self.prompt(ctx, ManageSubscriptionStep.SELECT_ACTION)
        return Transition.advance(ManageSubscriptionStep.SELECT_ACTION)

    async def _handle_action(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        subscription = await self.deps.subscriptions.get_for_user(ctx.scratch.subscription_id, ctx.user.id)

        if token == "sub_toggle":
            if subscription.is_paused:
                await self.deps.subscriptions.resume(subscription)
                await self.messenger.send_text(ctx.phone, "▶️ Alert resumed.")
            else:
                await self.deps.subscriptions.pause(subscription)
                await self.messenger.send_text(ctx.phone, "⏸️ Alert paused. Resume it anytime from My alerts.")
            return Transition.main_menu()
        if token == "sub_radius":
            await self.prompt(ctx, ManageSubscriptionStep.SET_RADIUS)
            return Transition.advance(ManageSubscriptionStep.SET_RADIUS)
        if token == "sub_delete":
            await self.deps.subscriptions.delete(subscription)
            await self.messenger.send_text(ctx.phone, "🗑️ Alert deleted.")
            return Transition.main_menu()
        return await self.handle_invalid_input(message, ctx)

    async def _handle_radius(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        radius = parse_radius_input(message)
        if radius is None:
            return await self.handle_invalid_input(message, ctx, "Please send a distance in km, e.g. 5.")
        subscription = await self.deps.subscriptions.get_for_user(ctx.scratch.subscription_id, ctx.user.id)
        await self.deps.subscriptions.update_radius(subscription, radius)
        await self.messenger.send_text(ctx.phone, f"✅ Radius updated to {subscription.radius_km} km.")
        return Transition.main_menu()


class BrowseHandler(FlowHandler):
    """Nearby active catches -> detail -> "I'm coming" / location pin"""

    flow = FlowType.FISH_BROWSE
    Step = BrowseStep

    def _step_handlers(self):
        return {
            BrowseStep.LOCATION: self._handle_location,
            BrowseStep.BROWSE: self._handle_browse,
            BrowseStep.DETAIL: self._handle_detail,
        }

    async def _search(self, ctx: FlowContext) -> list[NearbyCatch]:
        scratch = ctx.scratch
        nearby = await self.deps.catches.browse_nearby(
            scratch.latitude, scratch.longitude, radius_km=scratch.radius_km
        )
        scratch.catch_ids = [n.catch.id for n in nearby]
        return nearby

    async def _show_results(self, ctx: FlowContext) -> Transition:
        if not await self._search(ctx):
            await self.messenger.send_buttons(
                ctx.phone,
                "😕 No fresh fish near you right now.\nWant an alert when some arrives?",
                [("fish_subscribe", "🔔 Get alerts"), ("main_menu", "🏠 Menu")],
            )
            return Transition.main_menu()
        await self.prompt(ctx, BrowseStep.BROWSE)
        return Transition.advance(BrowseStep.BROWSE)

    async def _start(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        if ctx.scratch.selected_catch_id is not None:
            return await self._open_detail(ctx, ctx.scratch.selected_catch_id)
        if ctx.user is not None and ctx.user.has_location:
            ctx.scratch.latitude = ctx.user.latitude
            ctx.scratch.longitude = ctx.user.longitude
            return await self._show_results(ctx)
        await self.prompt(ctx, BrowseStep.LOCATION)
        return Transition.advance(BrowseStep.LOCATION)

    async def _catch_details(self, catch_id: int) -> tuple[FishCatch, FishType | None, FishSeller | None]:
        catch = await self.deps.catches.get_catch(catch_id)
        fish_type = await self.deps.catches.get_fish_type(catch.fish_type_id)
        seller = await self.db.get(FishSeller, catch.seller_id)
        return catch, fish_type, seller

    async def prompt(self, ctx: FlowContext, step) -> None:
        if step == BrowseStep.LOCATION:
            await self.messenger.request_location(ctx.phone, "📍 Share your location to see fish nearby.")
        elif step == BrowseStep.BROWSE:
            nearby = await self._search(ctx)
            rows = []
            for item in nearby:
                fish_type = await self.deps.catches.get_fish_type(item.catch.fish_type_id)
                rows.append((
                    f"catch_{item.catch.id}",
                    fish_type.name_en if fish_type else f"Catch {item.catch.id}",
                    f"₹{item.catch.price_per_kg:g}/kg • {item.distance_km:.1f} km • "
                    f"{FishCatchStatus(item.catch.status).label}",
                ))
            await self.messenger.send_list(
                ctx.phone,
                f"🐟 {len(rows)} fresh catch(es) near you:",
                "See catches",
                rows,
                section_title="Nearest first",
            )
        else:
            catch, fish_type, seller = await self._catch_details(ctx.scratch.selected_catch_id)
            body = (
                f"*{fish_type.display_name if fish_type else 'Fresh fish'}*\n"
                f"🏪 {seller.business_name if seller else 'Seller'}\n"
                f"⚖️ {catch.quantity_display}\n"
                f"💰 ₹{catch.price_per_kg:g}/kg\n"
                f"{FishCatchStatus(catch.status).label}\n"
                f"👥 {catch.customers_coming} customer(s) coming"
            )
            if catch.photo_media_id:
                await self.messenger.send_image(ctx.phone, catch.photo_media_id)
            await self.messenger.send_buttons(
                ctx.phone,
                body,
                [("browse_coming", "🏃 I'm coming"), ("browse_location", "📍 Location"), ("browse_back", "⬅️ Back")],
            )

    async def _open_detail(self, ctx: FlowContext, catch_id: int) -> Transition:
        catch = await self.deps.catches.get_catch(catch_id)
        if not catch.is_active:
            await self.messenger.send_buttons(
                ctx.phone,
                "😔 That catch is no longer available.",
                [("fish_browse", "🐟 Browse fish"), ("main_menu", "🏠 Menu")],
            )
            return Transition.main_menu()
        catch.view_count = (catch.view_count or 0) + 1
        ctx.scratch.selected_catch_id = catch.id
        await self.prompt(ctx, BrowseStep.DETAIL)
        return Transition.advance(BrowseStep.DETAIL)

    async def _handle_location(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        if message is None or not message.is_location:
            return await self.handle_invalid_input(message, ctx, "Please share a location pin.")
        ctx.scratch.latitude = message.latitude
        ctx.scratch.longitude = message.longitude
        if ctx.user is not None and not ctx.user.has_location:
            await self.deps.users.update_location(
                ctx.user, message.latitude, message.longitude, message.location_name
            )
        return await self._show_results(ctx)

    async def _handle_browse(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        catch_id = self.parse_int(message, "catch_")
        if catch_id is None or catch_id not in ctx.scratch.catch_ids:
            return await self.handle_invalid_input(message, ctx, "Please pick a catch from the list.")
        return await self._open_detail(ctx, catch_id)

    async def _send_pin(self, ctx: FlowContext, catch: FishCatch, seller: FishSeller | None) -> None:
        if not catch.has_location:
            await self.messenger.send_text(ctx.phone, "📍 The seller has not shared a location.")
            return
        await self.messenger.send_location(
            ctx.phone,
            catch.latitude,
            catch.longitude,
            name=seller.business_name if seller else None,
            address=catch.location_name,
        )

    async def _handle_detail(self, message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
        token = message.token if message else ""
        if token == "browse_back":
            if ctx.scratch.latitude is None:
                await self.prompt(ctx, BrowseStep.LOCATION)
                return Transition.advance(BrowseStep.LOCATION)
            return await self._show_results(ctx)
        if token not in ("browse_coming", "browse_location"):
            return await self.handle_invalid_input(message, ctx)

        catch, _fish_type, seller = await self._catch_details(ctx.scratch.selected_catch_id)
        if token == "browse_location":
            await self._send_pin(ctx, catch, seller)
            return Transition.stay()

        if not catch.is_active:
            return await self._open_detail(ctx, catch.id)
        first = await self.deps.catches.record_coming_response(
            catch, ctx.user, latitude=ctx.scratch.latitude, longitude=ctx.scratch.longitude
        )
        await self.messenger.send_text(
            ctx.phone,
            "✅ The seller knows you're on the way!" if first else "👍 You already told the seller you're coming.",
        )
        await self._send_pin(ctx, catch, seller)
        return Transition.main_menu()

    # ==================== Alert buttons ====================

    async def handle_alert_response(
        self,
        message: IncomingMessage,
        ctx: FlowContext,
        action: str,
        catch_id: int,
        alert_id: int,
    ) -> Transition:
        """Answer a tap on an alert's buttons; the session stays where it is"""

        async def respond(message: Optional[IncomingMessage], ctx: FlowContext) -> Transition:
            alert = None
            if ctx.user is not None:
                alert = await self.deps.alerts.get_alert_for_user(alert_id, catch_id, ctx.user.id)
            if alert is None:
                logger.warning(
                    "Alert button does not belong to sender",
                    extra_data={"alert_id": alert_id, "catch_id": catch_id}
                )
                await self.messenger.send_text(ctx.phone, "This alert is no longer valid.")
                return Transition.stay()

            await self.deps.alerts.handle_alert_click(alert, action)
            catch, _fish_type, seller = await self._catch_details(catch_id)
            if not catch.is_active:
                await self.messenger.send_buttons(
                    ctx.phone,
                    "😔 Sorry, this catch is no longer available.",
                    [("fish_browse", "🐟 Browse fish"), ("main_menu", "🏠 Menu")],
                )
                return Transition.stay()

            if action == ACTION_COMING:
                first = await self.deps.catches.record_coming_response(catch, ctx.user, alert_id=alert.id)
                await self.messenger.send_text(
                    ctx.phone,
                    "✅ The seller knows you're on the way!"
                    if first else "👍 You already told the seller you're coming.",
                )
            await self._send_pin(ctx, catch, seller)
            return Transition.stay()

        if action not in (ACTION_COMING, ACTION_LOCATION):
            return Transition.stay()
        return await self._guarded(respond, message, ctx)
