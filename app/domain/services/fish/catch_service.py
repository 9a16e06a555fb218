"""
Fish Catch Service - seller profiles, catch listings and stock status
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    BusinessRuleException,
    CatchNotAvailableError,
    ErrorCode,
    NotFoundException,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import AmountValidator, QuantityRangeValidator, TextSanitizer
from app.db.database import utcnow
from app.db.models.fish_catch import FishCatch, FishCatchStatus
from app.db.models.fish_catch_response import FishCatchResponse
from app.db.models.fish_seller import FishSeller
from app.db.models.fish_type import FishType
from app.db.models.outbox_message import OutboxMessageType
from app.db.models.user import User
from app.domain.services.fish.geo import bounding_box, haversine_km
from app.domain.services.messenger import OutboxMessenger
from app.domain.services.post_commit import PostCommitJobs

logger = get_logger(__name__)

MAX_PRICE_PER_KG = 10_000.0


@dataclass
class NearbyCatch:
    catch: FishCatch
    distance_km: float


def local_day_start(now: datetime) -> datetime:
    """Start of the current day in ALERT_TIMEZONE, as naive UTC"""
    tz = ZoneInfo(settings.ALERT_TIMEZONE)
    local = now.replace(tzinfo=timezone.utc).astimezone(tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)


class FishCatchService:
    def __init__(
        self,
        db: AsyncSession,
        messenger: OutboxMessenger | None = None,
        jobs: PostCommitJobs | None = None,
    ):
        self.db = db
        self.messenger = messenger
        self.jobs = jobs

    # ==================== Catalogue ====================

    async def list_fish_types(self) -> list[FishType]:
        result = await self.db.execute(
            select(FishType)
            .where(FishType.is_active.is_(True))
            .order_by(FishType.sort_order, FishType.id)
        )
        return list(result.scalars().all())

    async def get_fish_type(self, fish_type_id: int) -> FishType | None:
        return await self.db.get(FishType, fish_type_id)

    # ==================== Sellers ====================

    async def get_seller_for_user(self, user_id: int) -> FishSeller | None:
        result = await self.db.execute(
            select(FishSeller).where(FishSeller.user_id == user_id, FishSeller.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def register_seller(
        self,
        user: User,
        business_name: str,
        latitude: float | None,
        longitude: float | None,
        location_name: str | None = None,
    ) -> FishSeller:
        business_name = TextSanitizer.sanitize(business_name, max_length=120)
        if len(business_name) < 2:
            raise ValidationException("Business name is too short", field="business_name")

        existing = await self.db.execute(select(FishSeller).where(FishSeller.user_id == user.id))
        seller = existing.scalar_one_or_none()
        if seller is None:
            seller = FishSeller(user_id=user.id, business_name=business_name)
            self.db.add(seller)
        seller.business_name = business_name
        seller.latitude = latitude
        seller.longitude = longitude
        seller.location_name = location_name
        seller.is_active = True
        await self.db.flush()

        logger.info("Fish seller registered", extra_data={"seller_id": seller.id, "user_id": user.id})
        return seller

    # ==================== Catches ====================

    async def get_catch(self, catch_id: int) -> FishCatch:
        catch = await self.db.get(FishCatch, catch_id)
        if catch is None:
            raise NotFoundException("FishCatch", catch_id, ErrorCode.CATCH_NOT_FOUND)
        return catch

    async def count_today(self, seller: FishSeller, now: datetime | None = None) -> int:
        day_start = local_day_start(now or utcnow())
        result = await self.db.execute(
            select(func.count(FishCatch.id)).where(
                FishCatch.seller_id == seller.id,
                FishCatch.created_at >= day_start,
            )
        )
        return result.scalar_one()

    async def create_catch(
        self,
        seller: FishSeller,
        fish_type_id: int,
        quantity_min: int,
        quantity_max: int | None,
        price_per_kg: float,
        photo_media_id: str | None = None,
        now: datetime | None = None,
    ) -> FishCatch:
        """
        Create a listing at the seller's location and schedule alert matching.

        Raises:
            ValidationException: bad price, quantity or fish type
            BusinessRuleException: seller reached the daily posting limit
        """
        now = now or utcnow()

        ok, error = AmountValidator.validate(price_per_kg, max_value=MAX_PRICE_PER_KG)
        if not ok:
            raise ValidationException(error, field="price_per_kg")

        if quantity_min < 1 or quantity_min > QuantityRangeValidator.MAX_KG:
            raise ValidationException("Invalid quantity", field="quantity")
        if quantity_max is not None and (quantity_max < quantity_min or quantity_max > QuantityRangeValidator.MAX_KG):
            raise ValidationException("Invalid quantity range", field="quantity")

        fish_type = await self.get_fish_type(fish_type_id)
        if fish_type is None or not fish_type.is_active:
            raise ValidationException("Invalid fish type", field="fish_type_id")

        if await self.count_today(seller, now) >= settings.FISH_MAX_CATCHES_PER_DAY:
            raise BusinessRuleException(
                f"Daily limit reached (max {settings.FISH_MAX_CATCHES_PER_DAY} catches)",
                error_code=ErrorCode.CATCH_DAILY_LIMIT,
                details={"seller_id": seller.id},
            )

        catch = FishCatch(
            seller_id=seller.id,
            fish_type_id=fish_type.id,
            quantity_kg_min=quantity_min,
            quantity_kg_max=quantity_max,
            price_per_kg=float(price_per_kg),
            photo_media_id=photo_media_id,
            latitude=seller.latitude,
            longitude=seller.longitude,
            location_name=seller.location_name,
            status=FishCatchStatus.AVAILABLE,
            created_at=now,
            expires_at=now + timedelta(hours=settings.FISH_CATCH_EXPIRY_HOURS),
        )
        self.db.add(catch)
        seller.total_catches = (seller.total_catches or 0) + 1
        await self.db.flush()

        if not catch.has_location:
            logger.warning(
                "Catch posted without coordinates, it will not reach subscribers",
                extra_data={"catch_id": catch.id, "seller_id": seller.id}
            )

        if self.jobs is not None:
            self.jobs.process_new_catch(catch.id)

        logger.info(
            "Fish catch created",
            extra_data={
                "catch_id": catch.id,
                "seller_id": seller.id,
                "fish_type": fish_type.name_en,
                "price": catch.price_per_kg,
            }
        )
        return catch

    async def get_seller_active_catches(self, seller: FishSeller) -> list[FishCatch]:
        result = await self.db.execute(
            select(FishCatch)
            .where(
                FishCatch.seller_id == seller.id,
                FishCatch.status.in_([FishCatchStatus.AVAILABLE, FishCatchStatus.LOW_STOCK]),
            )
            .order_by(FishCatch.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        catch: FishCatch,
        new_status: FishCatchStatus,
        now: datetime | None = None,
    ) -> FishCatch:
        """
        Sellers may move an active catch between available / low stock / sold out.

        Sold out is terminal and schedules the sold-out notification job.
        """
        if not catch.is_active:
            raise CatchNotAvailableError(catch.id, FishCatchStatus(catch.status).value)
        if new_status == FishCatchStatus.EXPIRED:
            raise ValidationException("Catches expire automatically", field="status")
        if FishCatchStatus(catch.status) == new_status:
            return catch

        catch.status = new_status
        if new_status == FishCatchStatus.SOLD_OUT:
            catch.sold_out_at = now or utcnow()
            if self.jobs is not None:
                self.jobs.catch_sold_out(catch.id)
        await self.db.flush()

        logger.info(
            "Catch status updated",
            extra_data={"catch_id": catch.id, "status": new_status.value}
        )
        return catch

    async def expire_stale(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        result = await self.db.execute(
            update(FishCatch)
            .where(
                FishCatch.status.in_([FishCatchStatus.AVAILABLE, FishCatchStatus.LOW_STOCK]),
                FishCatch.expires_at <= now,
            )
            .values(status=FishCatchStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("Expired stale catches", extra_data={"count": result.rowcount})
        return result.rowcount

    # ==================== Nearby search ====================

    async def _active_nearby(
        self,
        latitude: float,
        longitude: float,
        radius_km: float,
        fish_type_id: int | None = None,
        exclude_catch_id: int | None = None,
    ) -> list[NearbyCatch]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(latitude, longitude, radius_km + 0.5)
        query = select(FishCatch).where(
            FishCatch.status.in_([FishCatchStatus.AVAILABLE, FishCatchStatus.LOW_STOCK]),
            FishCatch.latitude.between(min_lat, max_lat),
            FishCatch.longitude.between(min_lon, max_lon),
        )
        if fish_type_id is not None:
            query = query.where(FishCatch.fish_type_id == fish_type_id)
        if exclude_catch_id is not None:
            query = query.where(FishCatch.id != exclude_catch_id)

        found: list[NearbyCatch] = []
        for catch in (await self.db.execute(query)).scalars().all():
            distance = haversine_km(latitude, longitude, catch.latitude, catch.longitude)
            if distance <= radius_km:
                found.append(NearbyCatch(catch, distance))
        found.sort(key=lambda n: (n.distance_km, n.catch.id))
        return found

    async def browse_nearby(
        self,
        latitude: float,
        longitude: float,
        radius_km: float | None = None,
        fish_type_id: int | None = None,
        limit: int = 10,
    ) -> list[NearbyCatch]:
        radius_km = radius_km or settings.FISH_DEFAULT_SEARCH_RADIUS_KM
        nearby = await self._active_nearby(latitude, longitude, radius_km, fish_type_id)
        return nearby[:limit]

    async def find_alternatives(
        self,
        fish_type_id: int,
        latitude: float,
        longitude: float,
        exclude_catch_id: int | None = None,
        limit: int | None = None,
        radius_km: float | None = None,
    ) -> list[NearbyCatch]:
        """Active catches of the same fish type, nearest first"""
        nearby = await self._active_nearby(
            latitude,
            longitude,
            radius_km or settings.FISH_DEFAULT_SEARCH_RADIUS_KM,
            fish_type_id=fish_type_id,
            exclude_catch_id=exclude_catch_id,
        )
        return nearby[: limit or settings.FISH_MAX_ALTERNATIVES]

    # ==================== Responses ====================

    async def record_coming_response(
        self,
        catch: FishCatch,
        user: User,
        alert_id: int | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
    ) -> bool:
        """
        Record "I'm coming" once per user and catch.

        Returns:
            True when this is the user's first response for the catch
        """
        if not catch.is_active:
            raise CatchNotAvailableError(catch.id, FishCatchStatus(catch.status).value)

        try:
            async with self.db.begin_nested():
                self.db.add(FishCatchResponse(
                    catch_id=catch.id,
                    user_id=user.id,
                    alert_id=alert_id,
                    response_type="coming",
                    latitude=latitude if latitude is not None else user.latitude,
                    longitude=longitude if longitude is not None else user.longitude,
                ))
        except IntegrityError:
            return False

        catch.customers_coming = (catch.customers_coming or 0) + 1
        await self.db.flush()

        if self.messenger is not None:
            seller = await self.db.get(FishSeller, catch.seller_id)
            seller_user = await self.db.get(User, seller.user_id) if seller else None
            if seller_user is not None:
                fish_type = await self.get_fish_type(catch.fish_type_id)
                fish_name = fish_type.display_name if fish_type else "your catch"
                await self.messenger.send_text(
                    seller_user.phone_number,
                    f"🏃 {user.name or 'A customer'} is coming for {fish_name}!\n"
                    f"{catch.customers_coming} customer(s) on the way so far.",
                    message_type=OutboxMessageType.SELLER_NOTIFICATION,
                )
        return True
