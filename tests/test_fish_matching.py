"""
בדיקות למנוע ההתאמה של התראות דגים.

מכסה:
- מרחק haversine: אפס, ~111 ק"מ למעלת רוחב, סימטריה (hypothesis)
- רדיוס כולל: דגה בדיוק על הגבול מותאמת, מעט מעבר לא
- רדיוס לא שלם (2.5) נדחה גם ברמת המודל
- סינון לפי סוג דג, מנוי מושהה, מנוי של המוכר עצמו
- דגה בלי קואורדינטות לא מותאמת לאף מנוי
- תזמון התראות לפי תדירות (אזור זמן Asia/Kolkata)
"""
import math
from datetime import datetime, timedelta

import pytest
from hypothesis import given, settings as h_settings
from hypothesis.strategies import floats

from app.core.exceptions import InvalidRadiusError
from app.db.models.fish_subscription import AlertFrequency, FishSubscription
from app.domain.services.fish.alert_service import calculate_scheduled_time
from app.domain.services.fish.geo import KM_PER_DEGREE_LAT, bounding_box, haversine_km
from app.domain.services.fish.matching_service import FishMatchingService
from app.domain.services.fish.subscription_service import validate_radius

LATITUDES = floats(min_value=-89.0, max_value=89.0, allow_nan=False, allow_infinity=False)
LONGITUDES = floats(min_value=-179.0, max_value=179.0, allow_nan=False, allow_infinity=False)


def _subscription(**overrides) -> FishSubscription:
    fields = dict(
        user_id=1,
        latitude=9.93,
        longitude=76.26,
        radius_km=5,
        all_fish_types=True,
        fish_type_ids=[],
        is_active=True,
        is_paused=False,
        blocked_seller_ids=[],
    )
    fields.update(overrides)
    return FishSubscription(**fields)


# ============================================================================
# TestHaversine - חישוב מרחק
# ============================================================================


class TestHaversine:

    @pytest.mark.unit
    def test_same_point_is_zero(self) -> None:
        assert haversine_km(9.93, 76.26, 9.93, 76.26) == 0.0

    @pytest.mark.unit
    def test_one_degree_of_latitude(self) -> None:
        assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)
        assert KM_PER_DEGREE_LAT == pytest.approx(111.19, abs=0.01)

    @pytest.mark.unit
    def test_kochi_example_distance(self) -> None:
        """(9.93, 76.26) → (9.95, 76.27) - בערך 2.5 ק"מ"""
        assert haversine_km(9.93, 76.26, 9.95, 76.27) == pytest.approx(2.48, abs=0.05)

    @pytest.mark.unit
    @given(lat1=LATITUDES, lon1=LONGITUDES, lat2=LATITUDES, lon2=LONGITUDES)
    @h_settings(max_examples=200)
    def test_symmetric_and_bounded(self, lat1, lon1, lat2, lon2) -> None:
        forward = haversine_km(lat1, lon1, lat2, lon2)
        backward = haversine_km(lat2, lon2, lat1, lon1)
        assert forward == pytest.approx(backward, abs=1e-9)
        assert 0.0 <= forward <= math.pi * 6371.0 + 1e-6

    @pytest.mark.unit
    @given(lat=LATITUDES, lon=LONGITUDES, radius=floats(min_value=1.0, max_value=50.0))
    @h_settings(max_examples=100)
    def test_bounding_box_contains_circle(self, lat, lon, radius) -> None:
        """נקודה ברדיוס מדויק צפונה/דרומה נמצאת בתוך הקופסה"""
        min_lat, max_lat, min_lon, max_lon = bounding_box(lat, lon, radius)
        north = lat + radius / KM_PER_DEGREE_LAT
        assert min_lat <= lat <= max_lat
        assert min_lon <= lon <= max_lon
        assert north <= max_lat + 1e-9


# ============================================================================
# TestRadiusRule - רדיוס כולל ותחום 1-50
# ============================================================================


class TestRadiusRule:

    @pytest.mark.unit
    def test_distance_equal_to_radius_matches(self) -> None:
        sub = _subscription(radius_km=5)
        assert FishMatchingService.subscription_matches(sub, 5.0, 1, None, datetime(2026, 1, 1))

    @pytest.mark.unit
    def test_distance_just_beyond_radius_does_not_match(self) -> None:
        sub = _subscription(radius_km=5)
        assert not FishMatchingService.subscription_matches(sub, 5.0001, 1, None, datetime(2026, 1, 1))

    @pytest.mark.unit
    @pytest.mark.parametrize("radius", [1, 5, 50])
    def test_radius_bounds_accepted(self, radius: int) -> None:
        assert validate_radius(radius) == radius
        assert _subscription(radius_km=radius).radius_km == radius

    @pytest.mark.unit
    @pytest.mark.parametrize("radius", [0, 51, -3, None])
    def test_radius_out_of_bounds_rejected(self, radius) -> None:
        with pytest.raises(InvalidRadiusError):
            _subscription(radius_km=radius)

    @pytest.mark.unit
    @pytest.mark.parametrize("radius", [2.5, 49.9, "5", float("nan")])
    def test_non_integer_radius_rejected_not_truncated(self, radius) -> None:
        with pytest.raises(InvalidRadiusError):
            validate_radius(radius)
        with pytest.raises(InvalidRadiusError):
            _subscription(radius_km=radius)

    @pytest.mark.unit
    def test_whole_float_radius_stored_as_int(self) -> None:
        sub = _subscription(radius_km=10.0)
        assert sub.radius_km == 10
        assert isinstance(sub.radius_km, int)

    @pytest.mark.unit
    def test_type_filter(self) -> None:
        sub = _subscription(all_fish_types=False, fish_type_ids=[3, 7])
        now = datetime(2026, 1, 1)
        assert FishMatchingService.subscription_matches(sub, 1.0, 7, None, now)
        assert not FishMatchingService.subscription_matches(sub, 1.0, 4, None, now)

    @pytest.mark.unit
    def test_paused_until_future_is_skipped(self) -> None:
        now = datetime(2026, 1, 1, 12, 0)
        sub = _subscription(is_paused=True, paused_until=now + timedelta(hours=1))
        assert not FishMatchingService.subscription_matches(sub, 1.0, 1, None, now)
        # ההשהיה נגמרה
        assert FishMatchingService.subscription_matches(sub, 1.0, 1, None, now + timedelta(hours=2))

    @pytest.mark.unit
    def test_blocked_seller_is_skipped(self) -> None:
        sub = _subscription(blocked_seller_ids=[42])
        assert not FishMatchingService.subscription_matches(sub, 1.0, 1, 42, datetime(2026, 1, 1))


# ============================================================================
# TestFindMatchingSubscriptions - שאילתת התאמה מול DB
# ============================================================================


class TestFindMatchingSubscriptions:

    @pytest.mark.unit
    async def test_nearest_first_and_radius_applied(
        self, db_session, user_factory, seller_factory, fish_type_factory, catch_factory, subscription_factory
    ) -> None:
        sardine = await fish_type_factory()
        seller = await seller_factory(latitude=9.95, longitude=76.27)
        catch = await catch_factory(seller, sardine)

        near = await subscription_factory(await user_factory(), latitude=9.951, longitude=76.271, radius_km=5)
        far = await subscription_factory(await user_factory(), latitude=9.93, longitude=76.26, radius_km=5)
        too_small = await subscription_factory(await user_factory(), latitude=9.93, longitude=76.26, radius_km=2)

        matches = await FishMatchingService(db_session).find_matching_subscriptions(catch)

        assert [m.subscription.id for m in matches] == [near.id, far.id]
        assert too_small.id not in {m.subscription.id for m in matches}
        assert matches[0].distance_km < matches[1].distance_km

    @pytest.mark.unit
    async def test_type_filter_and_pause(
        self, db_session, user_factory, seller_factory, fish_type_factory, catch_factory, subscription_factory
    ) -> None:
        sardine = await fish_type_factory("Sardine", "Mathi")
        pomfret = await fish_type_factory("Pomfret", "Avoli")
        catch = await catch_factory(await seller_factory(), sardine)

        wants_pomfret = await subscription_factory(await user_factory(), fish_type_ids=[pomfret.id])
        paused = await subscription_factory(await user_factory())
        paused.is_paused = True
        await db_session.commit()
        wants_sardine = await subscription_factory(await user_factory(), fish_type_ids=[sardine.id])

        matches = await FishMatchingService(db_session).find_matching_subscriptions(catch)

        ids = {m.subscription.id for m in matches}
        assert ids == {wants_sardine.id}
        assert wants_pomfret.id not in ids
        assert paused.id not in ids

    @pytest.mark.unit
    async def test_seller_does_not_get_own_catch(
        self, db_session, user_factory, seller_factory, fish_type_factory, catch_factory, subscription_factory
    ) -> None:
        seller_user = await user_factory(name="Seller")
        seller = await seller_factory(user=seller_user)
        catch = await catch_factory(seller, await fish_type_factory())
        await subscription_factory(seller_user)

        assert await FishMatchingService(db_session).find_matching_subscriptions(catch) == []

    @pytest.mark.unit
    async def test_catch_without_coordinates_matches_nothing(
        self, db_session, user_factory, seller_factory, fish_type_factory, catch_factory, subscription_factory
    ) -> None:
        seller = await seller_factory(latitude=None, longitude=None)
        catch = await catch_factory(seller, await fish_type_factory())
        await subscription_factory(await user_factory())

        assert not catch.has_location
        assert await FishMatchingService(db_session).find_matching_subscriptions(catch) == []

    @pytest.mark.unit
    async def test_count_potential_subscribers(
        self, db_session, user_factory, fish_type_factory, subscription_factory
    ) -> None:
        sardine = await fish_type_factory()
        await subscription_factory(await user_factory(), radius_km=5)
        await subscription_factory(await user_factory(), radius_km=2)

        service = FishMatchingService(db_session)
        assert await service.count_potential_subscribers(9.95, 76.27, sardine.id) == 1
        assert await service.count_potential_subscribers(None, None, sardine.id) == 0


# ============================================================================
# TestScheduling - חלונות זמן לפי תדירות
# ============================================================================


class TestScheduling:
    """`now` הוא UTC נאיבי; IST = UTC+5:30"""

    @pytest.mark.unit
    def test_immediate_is_sent_now(self) -> None:
        assert calculate_scheduled_time(AlertFrequency.IMMEDIATE, datetime(2026, 10, 19, 12, 0)) is None

    @pytest.mark.unit
    def test_morning_inside_window(self) -> None:
        # 01:00 UTC = 06:30 IST
        assert calculate_scheduled_time(AlertFrequency.MORNING_ONLY, datetime(2026, 10, 19, 1, 0)) is None

    @pytest.mark.unit
    def test_morning_after_window_goes_to_next_day(self) -> None:
        # 03:00 UTC = 08:30 IST → מחר 06:00 IST = 00:30 UTC
        scheduled = calculate_scheduled_time(AlertFrequency.MORNING_ONLY, datetime(2026, 10, 19, 3, 0))
        assert scheduled == datetime(2026, 10, 20, 0, 30)

    @pytest.mark.unit
    def test_morning_before_window_same_day(self) -> None:
        # 22:00 UTC = 03:30 IST של היום הבא → 06:00 IST = 00:30 UTC
        scheduled = calculate_scheduled_time(AlertFrequency.MORNING_ONLY, datetime(2026, 10, 18, 22, 0))
        assert scheduled == datetime(2026, 10, 19, 0, 30)

    @pytest.mark.unit
    def test_twice_daily_midday_goes_to_afternoon(self) -> None:
        # 05:00 UTC = 10:30 IST → 16:00 IST = 10:30 UTC
        scheduled = calculate_scheduled_time(AlertFrequency.TWICE_DAILY, datetime(2026, 10, 19, 5, 0))
        assert scheduled == datetime(2026, 10, 19, 10, 30)

    @pytest.mark.unit
    def test_twice_daily_afternoon_window(self) -> None:
        # 11:00 UTC = 16:30 IST
        assert calculate_scheduled_time(AlertFrequency.TWICE_DAILY, datetime(2026, 10, 19, 11, 0)) is None

    @pytest.mark.unit
    def test_weekly_goes_to_next_sunday(self) -> None:
        # יום שני 2026-10-19 → יום ראשון 2026-10-25 08:00 IST = 02:30 UTC
        scheduled = calculate_scheduled_time(AlertFrequency.WEEKLY_DIGEST, datetime(2026, 10, 19, 6, 0))
        assert scheduled == datetime(2026, 10, 25, 2, 30)

    @pytest.mark.unit
    def test_weekly_on_sunday_goes_to_following_week(self) -> None:
        scheduled = calculate_scheduled_time(AlertFrequency.WEEKLY_DIGEST, datetime(2026, 10, 25, 6, 0))
        assert scheduled == datetime(2026, 11, 1, 2, 30)
