"""
User Model - Registered WhatsApp users (buyers, sellers, job posters)
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float

from app.db.database import Base, utcnow


class User(Base):
    """A registered sender; location is the default centre for nearby searches"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # wa_id - ספרות בלבד כולל קידומת מדינה
    phone_number = Column(String(20), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    location_name = Column(String(200), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None
