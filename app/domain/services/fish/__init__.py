"""
Fresh fish marketplace: catches, subscriptions and proximity alerts
"""
from app.domain.services.fish.alert_service import (
    AlertBatchResult,
    DigestResult,
    FishAlertService,
    SoldOutResult,
    calculate_scheduled_time,
)
from app.domain.services.fish.catch_service import FishCatchService, NearbyCatch
from app.domain.services.fish.geo import EARTH_RADIUS_KM, bounding_box, haversine_km
from app.domain.services.fish.matching_service import FishMatchingService, SubscriptionMatch
from app.domain.services.fish.subscription_service import FishSubscriptionService

__all__ = [
    "AlertBatchResult",
    "DigestResult",
    "FishAlertService",
    "SoldOutResult",
    "calculate_scheduled_time",
    "FishCatchService",
    "NearbyCatch",
    "EARTH_RADIUS_KM",
    "bounding_box",
    "haversine_km",
    "FishMatchingService",
    "SubscriptionMatch",
    "FishSubscriptionService",
]
