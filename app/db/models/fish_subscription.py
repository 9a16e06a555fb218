"""
Fish Subscription Model - a standing request for nearby catch alerts
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Float, ForeignKey, JSON, Enum as SQLEnum,
    CheckConstraint,
)
from sqlalchemy import event
from sqlalchemy.orm import validates

from app.core.config import settings
from app.core.exceptions import InvalidRadiusError, ValidationException
from app.db.database import Base, utcnow


class AlertFrequency(str, enum.Enum):
    IMMEDIATE = "immediate"
    MORNING_ONLY = "morning_only"
    TWICE_DAILY = "twice_daily"
    WEEKLY_DIGEST = "weekly_digest"

    @property
    def is_immediate(self) -> bool:
        return self is AlertFrequency.IMMEDIATE

    @property
    def label(self) -> str:
        return {
            AlertFrequency.IMMEDIATE: "🔔 Immediately",
            AlertFrequency.MORNING_ONLY: "☀️ Mornings (6-8 AM)",
            AlertFrequency.TWICE_DAILY: "📅 Twice daily",
            AlertFrequency.WEEKLY_DIGEST: "🗓️ Weekly digest",
        }[self]


class FishSubscription(Base):
    """
    Radius is validated on assignment (1-50 km) and by a CHECK constraint,
    so matching never has to filter out invalid rows. An empty type list is
    accepted only together with all_fish_types=True (checked at flush).
    """

    __tablename__ = "fish_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location_label = Column(String(200), nullable=True)
    radius_km = Column(Integer, nullable=False, default=5)

    all_fish_types = Column(Boolean, nullable=False, default=True)
    fish_type_ids = Column(JSON, nullable=False, default=list)

    alert_frequency = Column(
        SQLEnum(AlertFrequency, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=AlertFrequency.IMMEDIATE,
    )

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_paused = Column(Boolean, nullable=False, default=False)
    paused_until = Column(DateTime, nullable=True)
    blocked_seller_ids = Column(JSON, nullable=False, default=list)

    alerts_received = Column(Integer, nullable=False, default=0)
    alerts_clicked = Column(Integer, nullable=False, default=0)
    last_alert_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("radius_km >= 1 AND radius_km <= 50", name="ck_fish_subscriptions_radius"),
    )

    @validates("radius_km")
    def validate_radius(self, key, value):
        # מספר שלם בלבד - 2.5 נדחה ולא נחתך ל-2
        if (
            not isinstance(value, (int, float))
            or isinstance(value, bool)
            or not (settings.FISH_MIN_RADIUS_KM <= value <= settings.FISH_MAX_RADIUS_KM)
            or value != int(value)
        ):
            raise InvalidRadiusError(value, settings.FISH_MIN_RADIUS_KM, settings.FISH_MAX_RADIUS_KM)
        return int(value)

    @validates("fish_type_ids")
    def validate_fish_type_ids(self, key, value):
        return sorted({int(v) for v in (value or [])})

    def matches_fish_type(self, fish_type_id: int) -> bool:
        return bool(self.all_fish_types) or fish_type_id in (self.fish_type_ids or [])

    def is_paused_at(self, now) -> bool:
        """paused with no end date, or paused until a moment still in the future"""
        if not self.is_paused:
            return False
        return self.paused_until is None or self.paused_until > now


@event.listens_for(FishSubscription, "before_insert")
@event.listens_for(FishSubscription, "before_update")
def _check_type_filter(mapper, connection, target: FishSubscription) -> None:
    """רשימת סוגים ריקה תקינה רק עם all_fish_types"""
    if target.all_fish_types is False and not target.fish_type_ids:
        raise ValidationException("Select at least one fish type", field="fish_type_ids")
