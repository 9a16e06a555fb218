"""
Fish Seller Model - seller profile attached to a user
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float, ForeignKey

from app.db.database import Base, utcnow


class FishSeller(Base):
    __tablename__ = "fish_sellers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    business_name = Column(String(120), nullable=False)

    # מיקום קבוע של הדוכן/סירה - התפיסות מתפרסמות ממנו
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    location_name = Column(String(200), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    total_catches = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
