"""
Fish Catch Model - a seller's listing, the subject of proximity alerts
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Float, ForeignKey, Enum as SQLEnum, Index, CheckConstraint,
)

from app.db.database import Base, utcnow


class FishCatchStatus(str, enum.Enum):
    AVAILABLE = "available"
    LOW_STOCK = "low_stock"
    SOLD_OUT = "sold_out"
    EXPIRED = "expired"

    @property
    def is_active(self) -> bool:
        return self in (FishCatchStatus.AVAILABLE, FishCatchStatus.LOW_STOCK)

    @property
    def label(self) -> str:
        return {
            FishCatchStatus.AVAILABLE: "✅ Available",
            FishCatchStatus.LOW_STOCK: "⚠️ Low stock",
            FishCatchStatus.SOLD_OUT: "❌ Sold out",
            FishCatchStatus.EXPIRED: "⌛ Expired",
        }[self]


class FishCatch(Base):
    __tablename__ = "fish_catches"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(Integer, ForeignKey("fish_sellers.id"), nullable=False, index=True)
    fish_type_id = Column(Integer, ForeignKey("fish_types.id"), nullable=False, index=True)

    quantity_kg_min = Column(Integer, nullable=False)
    quantity_kg_max = Column(Integer, nullable=True)
    price_per_kg = Column(Float, nullable=False)
    photo_media_id = Column(String(200), nullable=True)

    # תפיסה בלי קואורדינטות לא מתאימה לאף מנוי
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    location_name = Column(String(200), nullable=True)

    status = Column(
        SQLEnum(FishCatchStatus, values_callable=lambda x: [e.value for e in x]),
        default=FishCatchStatus.AVAILABLE,
        nullable=False,
        index=True,
    )

    customers_coming = Column(Integer, default=0, nullable=False)
    alerts_sent = Column(Integer, default=0, nullable=False)
    view_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    sold_out_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("price_per_kg > 0", name="ck_fish_catches_price_positive"),
        Index("ix_fish_catches_type_status", "fish_type_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return FishCatchStatus(self.status).is_active

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def quantity_display(self) -> str:
        if self.quantity_kg_max:
            return f"{self.quantity_kg_min}-{self.quantity_kg_max} kg"
        return f"{self.quantity_kg_min} kg"
