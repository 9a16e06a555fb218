"""
Fish Subscription Service - standing requests for nearby catch alerts
"""
from datetime import datetime

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    BusinessRuleException,
    ErrorCode,
    InvalidRadiusError,
    NotFoundException,
    ValidationException,
)
from app.core.logging import get_logger
from app.db.models.fish_subscription import AlertFrequency, FishSubscription
from app.db.models.fish_type import FishType
from app.db.models.user import User

logger = get_logger(__name__)


def validate_radius(radius_km) -> int:
    if radius_km is None or isinstance(radius_km, bool):
        raise InvalidRadiusError(radius_km, settings.FISH_MIN_RADIUS_KM, settings.FISH_MAX_RADIUS_KM)
    try:
        value = int(radius_km)
    except (TypeError, ValueError):
        raise InvalidRadiusError(radius_km, settings.FISH_MIN_RADIUS_KM, settings.FISH_MAX_RADIUS_KM)
    if value != radius_km or not (settings.FISH_MIN_RADIUS_KM <= value <= settings.FISH_MAX_RADIUS_KM):
        raise InvalidRadiusError(radius_km, settings.FISH_MIN_RADIUS_KM, settings.FISH_MAX_RADIUS_KM)
    return value


class FishSubscriptionService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def count_active(self, user_id: int) -> int:
        result = await self.db.execute(
            select(func.count(FishSubscription.id)).where(
                FishSubscription.user_id == user_id,
                FishSubscription.is_active.is_(True),
            )
        )
        return result.scalar_one()

    async def _valid_fish_type_ids(self, fish_type_ids: list[int]) -> list[int]:
        if not fish_type_ids:
            return []
        result = await self.db.execute(
            select(FishType.id).where(FishType.id.in_(fish_type_ids), FishType.is_active.is_(True))
        )
        return sorted(result.scalars().all())

    async def create_subscription(
        self,
        user: User,
        latitude: float | None,
        longitude: float | None,
        radius_km: int | None = None,
        fish_type_ids: list[int] | None = None,
        all_fish_types: bool = True,
        frequency: AlertFrequency = AlertFrequency.IMMEDIATE,
        location_label: str | None = None,
    ) -> FishSubscription:
        """
        Raises:
            ValidationException: no location, or radius outside the allowed bounds
            BusinessRuleException: user already has the maximum number of subscriptions
        """
        if latitude is None or longitude is None:
            raise ValidationException("A location is required for alerts", field="location")

        radius = validate_radius(
            radius_km if radius_km is not None else settings.FISH_DEFAULT_SUBSCRIPTION_RADIUS_KM
        )

        if await self.count_active(user.id) >= settings.FISH_MAX_SUBSCRIPTIONS_PER_USER:
            raise BusinessRuleException(
                f"You can have at most {settings.FISH_MAX_SUBSCRIPTIONS_PER_USER} alert subscriptions",
                error_code=ErrorCode.SUBSCRIPTION_LIMIT,
                details={"user_id": user.id},
            )

        type_ids: list[int] = []
        if not all_fish_types:
            type_ids = await self._valid_fish_type_ids(fish_type_ids or [])
            if not type_ids:
                # אף סוג תקין לא נבחר - מנוי לכל הסוגים
                all_fish_types = True

        subscription = FishSubscription(
            user_id=user.id,
            latitude=latitude,
            longitude=longitude,
            location_label=location_label,
            radius_km=radius,
            all_fish_types=all_fish_types,
            fish_type_ids=type_ids,
            alert_frequency=frequency,
            is_active=True,
            is_paused=False,
            blocked_seller_ids=[],
        )
        self.db.add(subscription)
        await self.db.flush()

        logger.info(
            "Fish subscription created",
            extra_data={
                "subscription_id": subscription.id,
                "user_id": user.id,
                "radius_km": radius,
                "all_fish_types": all_fish_types,
                "frequency": frequency.value,
            }
        )
        return subscription

    async def list_for_user(self, user_id: int) -> list[FishSubscription]:
        result = await self.db.execute(
            select(FishSubscription)
            .where(FishSubscription.user_id == user_id, FishSubscription.is_active.is_(True))
            .order_by(FishSubscription.created_at, FishSubscription.id)
        )
        return list(result.scalars().all())

    async def get_for_user(self, subscription_id: int, user_id: int) -> FishSubscription:
        subscription = await self.db.get(FishSubscription, subscription_id)
        if subscription is None or subscription.user_id != user_id or not subscription.is_active:
            raise NotFoundException("FishSubscription", subscription_id)
        return subscription

    async def update_radius(self, subscription: FishSubscription, radius_km) -> FishSubscription:
        subscription.radius_km = validate_radius(radius_km)
        await self.db.flush()
        return subscription

    async def pause(self, subscription: FishSubscription, until: datetime | None = None) -> FishSubscription:
        subscription.is_paused = True
        subscription.paused_until = until
        await self.db.flush()
        logger.info("Fish subscription paused", extra_data={"subscription_id": subscription.id})
        return subscription

    async def resume(self, subscription: FishSubscription) -> FishSubscription:
        subscription.is_paused = False
        subscription.paused_until = None
        await self.db.flush()
        return subscription

    async def delete(self, subscription: FishSubscription) -> None:
        subscription.is_active = False
        await self.db.flush()
        logger.info("Fish subscription deleted", extra_data={"subscription_id": subscription.id})
