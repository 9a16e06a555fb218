"""
Fish Alert Service - proximity alerts for fresh catches

Event path: process_new_catch() creates one FishAlert per matched
subscription; immediate subscribers are messaged right away, the rest get a
`scheduled_for` time. Scheduled path: send_digests() groups due pending
alerts per subscription into one list message. Both paths write the same
FishAlert lifecycle.

Nothing here commits: the calling task commits and then releases the
post-commit delivery jobs.
"""
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.fish_alert import FishAlert, FishAlertStatus
from app.db.models.fish_catch import FishCatch
from app.db.models.fish_catch_response import FishCatchResponse
from app.db.models.fish_seller import FishSeller
from app.db.models.fish_subscription import AlertFrequency, FishSubscription
from app.db.models.fish_type import FishType
from app.db.models.outbox_message import OutboxMessageType
from app.db.models.user import User
from app.domain.messages import MAX_LIST_ROWS
from app.domain.services.fish.catch_service import FishCatchService, NearbyCatch
from app.domain.services.fish.matching_service import FishMatchingService
from app.domain.services.messenger import OutboxMessenger

logger = get_logger(__name__)

ACTION_COMING = "coming"
ACTION_LOCATION = "location"


@dataclass
class AlertBatchResult:
    total_subscribers: int = 0
    sent: int = 0
    failed: int = 0
    scheduled: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DigestResult:
    subscriptions: int = 0
    alerts_sent: int = 0
    alerts_failed: int = 0
    messages: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SoldOutResult:
    responders: int = 0
    alternatives_sent: int = 0
    fallback_sent: int = 0
    alternative_catch_ids: dict[int, list[int]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


# ==================== Scheduling ====================


def _at(local: datetime, hour: int) -> datetime:
    return local.replace(hour=hour, minute=0, second=0, microsecond=0)


def calculate_scheduled_time(frequency: AlertFrequency, now: datetime) -> datetime | None:
    """
    When an alert for a subscriber with `frequency` should go out.

    `now` is naive UTC; windows are evaluated in ALERT_TIMEZONE. Returns None
    when the alert should be sent immediately, otherwise naive UTC.
    """
    frequency = AlertFrequency(frequency)
    if frequency.is_immediate:
        return None

    tz = ZoneInfo(settings.ALERT_TIMEZONE)
    local = now.replace(tzinfo=timezone.utc).astimezone(tz)
    hour = local.hour

    if frequency == AlertFrequency.MORNING_ONLY:
        if 6 <= hour < 8:
            return None
        target = _at(local, 6) if hour < 6 else _at(local + timedelta(days=1), 6)

    elif frequency == AlertFrequency.TWICE_DAILY:
        if 6 <= hour < 7 or 16 <= hour < 17:
            return None
        if hour < 6:
            target = _at(local, 6)
        elif hour < 16:
            target = _at(local, 16)
        else:
            target = _at(local + timedelta(days=1), 6)

    else:
        # weekly digest: יום ראשון הבא (תמיד אחרי היום) ב-08:00
        days_ahead = (6 - local.weekday()) % 7 or 7
        target = _at(local + timedelta(days=days_ahead), 8)

    return target.astimezone(timezone.utc).replace(tzinfo=None)


# ==================== Message composition ====================


def alert_buttons(catch_id: int, alert_id: int) -> list[tuple[str, str]]:
    return [
        (f"fish_coming_{catch_id}_{alert_id}", "🏃 I'm coming"),
        (f"fish_location_{catch_id}_{alert_id}", "📍 Location"),
    ]


def format_alert_body(catch: FishCatch, fish_type: FishType, seller: FishSeller | None, distance_km: float) -> str:
    lines = [
        f"🐟 *Fresh {fish_type.display_name} just arrived!*",
        "",
        f"💰 ₹{catch.price_per_kg:g}/kg",
        f"⚖️ {catch.quantity_display}",
        f"📍 {distance_km:.1f} km away",
    ]
    if seller is not None:
        lines.append(f"🏪 {seller.business_name}")
    if catch.customers_coming:
        lines.append(f"🔥 {catch.customers_coming} customer(s) already on the way")
    return "\n".join(lines)


class FishAlertService:
    def __init__(
        self,
        db: AsyncSession,
        messenger: OutboxMessenger | None,
        matching: FishMatchingService | None = None,
        catches: FishCatchService | None = None,
    ):
        self.db = db
        self.messenger = messenger
        self.matching = matching or FishMatchingService(db)
        self.catches = catches or FishCatchService(
            db, messenger=messenger, jobs=messenger.jobs if messenger is not None else None
        )

    # ==================== New catch ====================

    async def process_new_catch(self, catch: FishCatch, now: datetime | None = None) -> AlertBatchResult:
        """Match a fresh catch against subscriptions and create its alerts"""
        now = now or utcnow()
        result = AlertBatchResult()

        if not catch.is_active:
            logger.warning("Catch not active, skipping alerts", extra_data={"catch_id": catch.id})
            return result

        matches = await self.matching.find_matching_subscriptions(catch, now=now)
        if not matches:
            logger.info("No matching subscribers", extra_data={"catch_id": catch.id})
            return result

        existing = await self.db.execute(
            select(FishAlert.subscription_id).where(FishAlert.catch_id == catch.id)
        )
        already_alerted = set(existing.scalars().all())

        fish_type = await self.db.get(FishType, catch.fish_type_id)
        seller = await self.db.get(FishSeller, catch.seller_id)

        for match in matches:
            subscription = match.subscription
            if subscription.id in already_alerted:
                continue

            scheduled_for = calculate_scheduled_time(subscription.alert_frequency, now)
            try:
                async with self.db.begin_nested():
                    alert = FishAlert(
                        catch_id=catch.id,
                        subscription_id=subscription.id,
                        user_id=subscription.user_id,
                        status=FishAlertStatus.PENDING,
                        distance_km=round(match.distance_km, 3),
                        scheduled_for=scheduled_for,
                        created_at=now,
                    )
                    self.db.add(alert)
            except IntegrityError:
                # עיבוד מקביל של אותה דגה כבר יצר את ההתראה
                continue

            result.total_subscribers += 1
            if scheduled_for is not None:
                result.scheduled += 1
                continue

            if await self.send_alert(alert, catch, fish_type, seller, subscription, now):
                result.sent += 1
            else:
                result.failed += 1

        catch.alerts_sent = (catch.alerts_sent or 0) + result.sent
        await self.db.flush()

        logger.info(
            "Alerts created for catch",
            extra_data={"catch_id": catch.id, **result.to_dict()}
        )
        return result

    async def send_alert(
        self,
        alert: FishAlert,
        catch: FishCatch,
        fish_type: FishType,
        seller: FishSeller | None,
        subscription: FishSubscription,
        now: datetime,
    ) -> bool:
        """Queue the alert message; sent_at is stamped when the send is queued"""
        user = await self.db.get(User, alert.user_id)
        if user is None or not user.is_active:
            alert.mark_failed(now, "Subscriber inactive")
            return False

        body = format_alert_body(catch, fish_type, seller, alert.distance_km)
        if catch.photo_media_id:
            await self.messenger.send_image(
                user.phone_number,
                catch.photo_media_id,
                caption=f"{fish_type.display_name} • ₹{catch.price_per_kg:g}/kg",
                message_type=OutboxMessageType.FISH_ALERT,
            )
        row = await self.messenger.send_buttons(
            user.phone_number,
            body,
            alert_buttons(catch.id, alert.id),
            footer="Reply 'unsubscribe' to stop alerts",
            message_type=OutboxMessageType.FISH_ALERT,
        )
        alert.mark_sent(now, outbox_message_id=row.id)
        subscription.alerts_received = (subscription.alerts_received or 0) + 1
        subscription.last_alert_at = now
        return True

    # ==================== Digest sweep ====================

    async def send_digests(self, now: datetime | None = None) -> DigestResult:
        """
        Flush pending alerts due within the advance window, one message per subscription.

        The sweep runs every 15 minutes, so an alert for 06:00 goes out with
        the first run at or after 06:00 minus FISH_ALERT_ADVANCE_MINUTES.
        """
        now = now or utcnow()
        due_by = now + timedelta(minutes=settings.FISH_ALERT_ADVANCE_MINUTES)
        result = DigestResult()

        due = await self.db.execute(
            select(FishAlert)
            .where(
                FishAlert.status == FishAlertStatus.PENDING,
                FishAlert.failed_at.is_(None),
                FishAlert.scheduled_for.is_not(None),
                FishAlert.scheduled_for <= due_by,
            )
            .order_by(FishAlert.subscription_id, FishAlert.distance_km, FishAlert.id)
        )
        by_subscription: dict[int, list[FishAlert]] = defaultdict(list)
        for alert in due.scalars().all():
            by_subscription[alert.subscription_id].append(alert)

        for subscription_id, alerts in by_subscription.items():
            subscription = await self.db.get(FishSubscription, subscription_id)
            user = await self.db.get(User, alerts[0].user_id)
            if subscription is None or not subscription.is_active or user is None or not user.is_active:
                for alert in alerts:
                    alert.mark_failed(now, "Subscription inactive")
                result.alerts_failed += len(alerts)
                continue

            deliverable: list[tuple[FishAlert, FishCatch, FishType]] = []
            for alert in alerts:
                catch = await self.db.get(FishCatch, alert.catch_id)
                if catch is None or not catch.is_active:
                    alert.mark_failed(now, "Catch no longer available")
                    result.alerts_failed += 1
                    continue
                fish_type = await self.db.get(FishType, catch.fish_type_id)
                deliverable.append((alert, catch, fish_type))

            if not deliverable:
                continue

            result.subscriptions += 1
            for start in range(0, len(deliverable), MAX_LIST_ROWS):
                chunk = deliverable[start:start + MAX_LIST_ROWS]
                row = await self.messenger.send_list(
                    user.phone_number,
                    f"🐟 *{len(deliverable)} fresh catch(es) near {subscription.location_label or 'you'}*\n"
                    "Tap one to see where it is.",
                    "View catches",
                    [
                        (
                            f"fish_location_{catch.id}_{alert.id}",
                            fish_type.name_en if fish_type else f"Catch {catch.id}",
                            f"₹{catch.price_per_kg:g}/kg • {alert.distance_km:.1f} km",
                        )
                        for alert, catch, fish_type in chunk
                    ],
                    section_title="Fresh catches",
                    message_type=OutboxMessageType.FISH_DIGEST,
                )
                result.messages += 1
                for alert, catch, _ in chunk:
                    alert.mark_sent(now, outbox_message_id=row.id)
                    catch.alerts_sent = (catch.alerts_sent or 0) + 1
                    result.alerts_sent += 1

            subscription.alerts_received = (subscription.alerts_received or 0) + len(deliverable)
            subscription.last_alert_at = now

        await self.db.flush()
        if result.alerts_sent or result.alerts_failed:
            logger.info("Digest sweep finished", extra_data=result.to_dict())
        return result

    # ==================== Engagement ====================

    async def get_alert_for_user(self, alert_id: int, catch_id: int, user_id: int) -> FishAlert | None:
        alert = await self.db.get(FishAlert, alert_id)
        if alert is None or alert.catch_id != catch_id or alert.user_id != user_id:
            return None
        return alert

    async def handle_alert_click(self, alert: FishAlert, action: str, now: datetime | None = None) -> bool:
        """Record the first click on an alert; later clicks are ignored"""
        now = now or utcnow()
        if not alert.mark_clicked(now, action):
            return False
        subscription = await self.db.get(FishSubscription, alert.subscription_id)
        if subscription is not None:
            subscription.alerts_clicked = (subscription.alerts_clicked or 0) + 1
        await self.db.flush()
        return True

    # ==================== Sold out ====================

    async def _origin_for(self, response: FishCatchResponse, catch: FishCatch) -> tuple[float | None, float | None, float]:
        """Where to search alternatives from, and how far"""
        radius = settings.FISH_DEFAULT_SEARCH_RADIUS_KM
        if response.alert_id is not None:
            alert = await self.db.get(FishAlert, response.alert_id)
            subscription = await self.db.get(FishSubscription, alert.subscription_id) if alert else None
            if subscription is not None:
                return subscription.latitude, subscription.longitude, float(subscription.radius_km)
        if response.latitude is not None and response.longitude is not None:
            return response.latitude, response.longitude, radius
        return catch.latitude, catch.longitude, radius

    async def notify_sold_out(self, catch: FishCatch, now: datetime | None = None) -> SoldOutResult:
        """
        Tell everyone who answered "coming" that the catch sold out, with up to
        FISH_MAX_ALTERNATIVES nearest alternatives or a subscribe fallback.

        Each responder is told once.
        """
        now = now or utcnow()
        result = SoldOutResult()

        responses = await self.db.execute(
            select(FishCatchResponse)
            .where(
                FishCatchResponse.catch_id == catch.id,
                FishCatchResponse.response_type == ACTION_COMING,
                FishCatchResponse.alternatives_sent_at.is_(None),
            )
            .order_by(FishCatchResponse.id)
        )
        fish_type = await self.db.get(FishType, catch.fish_type_id)
        fish_name = fish_type.display_name if fish_type else "This catch"

        for response in responses.scalars().all():
            user = await self.db.get(User, response.user_id)
            if user is None or not user.is_active:
                continue
            result.responders += 1

            latitude, longitude, radius = await self._origin_for(response, catch)
            alternatives: list[NearbyCatch] = []
            if latitude is not None and longitude is not None:
                alternatives = await self.catches.find_alternatives(
                    catch.fish_type_id,
                    latitude,
                    longitude,
                    exclude_catch_id=catch.id,
                    limit=settings.FISH_MAX_ALTERNATIVES,
                    radius_km=radius,
                )

            if alternatives:
                rows = []
                for nearby in alternatives:
                    seller = await self.db.get(FishSeller, nearby.catch.seller_id)
                    rows.append((
                        f"fish_view_{nearby.catch.id}",
                        seller.business_name if seller else f"Catch {nearby.catch.id}",
                        f"₹{nearby.catch.price_per_kg:g}/kg • {nearby.distance_km:.1f} km",
                    ))
                await self.messenger.send_list(
                    user.phone_number,
                    f"😔 {fish_name} just sold out.\nThe same fish is still available nearby:",
                    "See alternatives",
                    rows,
                    section_title="Nearest first",
                    message_type=OutboxMessageType.SOLD_OUT_ALTERNATIVES,
                )
                result.alternatives_sent += 1
                result.alternative_catch_ids[user.id] = [n.catch.id for n in alternatives]
            else:
                await self.messenger.send_buttons(
                    user.phone_number,
                    f"😔 {fish_name} just sold out and nothing similar is available nearby right now.\n"
                    "Get an alert the moment fresh fish arrives?",
                    [("fish_subscribe", "🔔 Get alerts"), ("main_menu", "🏠 Menu")],
                    message_type=OutboxMessageType.SOLD_OUT_ALTERNATIVES,
                )
                result.fallback_sent += 1

            response.alternatives_sent_at = now

        await self.db.flush()
        logger.info(
            "Sold-out notifications queued",
            extra_data={
                "catch_id": catch.id,
                "responders": result.responders,
                "alternatives_sent": result.alternatives_sent,
                "fallback_sent": result.fallback_sent,
            }
        )
        return result

    # ==================== Delivery receipts ====================

    async def apply_delivery_status(
        self,
        outbox_message_id: int,
        status: str,
        error: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Propagate a provider status (delivered / failed) to the alerts sent in that message"""
        now = now or utcnow()
        result = await self.db.execute(
            select(FishAlert).where(FishAlert.outbox_message_id == outbox_message_id)
        )
        updated = 0
        for alert in result.scalars().all():
            if status in ("delivered", "read"):
                changed = alert.mark_delivered(now)
            elif status == "failed":
                changed = alert.mark_failed(now, error or "Delivery failed")
            else:
                changed = False
            if changed:
                updated += 1
        if updated:
            await self.db.flush()
            logger.info(
                "Alert delivery status applied",
                extra_data={"outbox_id": outbox_message_id, "status": status, "alerts": updated}
            )
        return updated

