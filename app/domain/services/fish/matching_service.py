"""
Fish Matching Service - which subscriptions does a catch reach?

A bounding box on the largest allowed radius narrows the SQL query; the exact
decision is the haversine distance against each subscription's own radius.
"""
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.fish_catch import FishCatch
from app.db.models.fish_seller import FishSeller
from app.db.models.fish_subscription import FishSubscription
from app.domain.services.fish.geo import bounding_box, haversine_km

logger = get_logger(__name__)

# מרווח לקופסת הסינון כדי ששגיאות עיגול לא יפילו מנוי שנמצא בדיוק על הגבול
_BOX_PADDING_KM = 0.5


@dataclass
class SubscriptionMatch:
    subscription: FishSubscription
    distance_km: float


class FishMatchingService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _candidates(self, latitude: float, longitude: float) -> list[FishSubscription]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(
            latitude, longitude, settings.FISH_MAX_RADIUS_KM + _BOX_PADDING_KM
        )
        result = await self.db.execute(
            select(FishSubscription).where(
                FishSubscription.is_active.is_(True),
                FishSubscription.latitude.between(min_lat, max_lat),
                FishSubscription.longitude.between(min_lon, max_lon),
            )
        )
        return list(result.scalars().all())

    @staticmethod
    def subscription_matches(
        subscription: FishSubscription,
        distance_km: float,
        fish_type_id: int,
        seller_id: int | None,
        now: datetime,
    ) -> bool:
        """Radius is inclusive: a catch exactly on the edge matches"""
        if not subscription.is_active or subscription.is_paused_at(now):
            return False
        if distance_km > subscription.radius_km:
            return False
        if not subscription.matches_fish_type(fish_type_id):
            return False
        if seller_id is not None and seller_id in (subscription.blocked_seller_ids or []):
            return False
        return True

    async def find_matching_subscriptions(
        self,
        catch: FishCatch,
        now: datetime | None = None,
    ) -> list[SubscriptionMatch]:
        """
        Active, unpaused subscriptions that should hear about `catch`, nearest first.

        A catch without coordinates matches nothing.
        """
        if not catch.has_location:
            logger.warning(
                "Catch has no coordinates, no subscriptions matched",
                extra_data={"catch_id": catch.id, "seller_id": catch.seller_id}
            )
            return []

        now = now or utcnow()
        seller = await self.db.get(FishSeller, catch.seller_id)
        seller_user_id = seller.user_id if seller else None

        matches: list[SubscriptionMatch] = []
        for subscription in await self._candidates(catch.latitude, catch.longitude):
            # המוכר לא מקבל התראה על הדגה של עצמו
            if seller_user_id is not None and subscription.user_id == seller_user_id:
                continue
            distance = haversine_km(
                subscription.latitude, subscription.longitude, catch.latitude, catch.longitude
            )
            if self.subscription_matches(subscription, distance, catch.fish_type_id, catch.seller_id, now):
                matches.append(SubscriptionMatch(subscription, distance))

        matches.sort(key=lambda m: (m.distance_km, m.subscription.id))
        logger.info(
            "Matched subscriptions for catch",
            extra_data={"catch_id": catch.id, "matches": len(matches)}
        )
        return matches

    async def count_potential_subscribers(
        self,
        latitude: float | None,
        longitude: float | None,
        fish_type_id: int,
        now: datetime | None = None,
    ) -> int:
        """How many subscribers a catch posted here would reach (shown to sellers)"""
        if latitude is None or longitude is None:
            return 0
        now = now or utcnow()
        count = 0
        for subscription in await self._candidates(latitude, longitude):
            distance = haversine_km(subscription.latitude, subscription.longitude, latitude, longitude)
            if self.subscription_matches(subscription, distance, fish_type_id, None, now):
                count += 1
        return count
