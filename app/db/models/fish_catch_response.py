"""
Fish Catch Response Model - a customer's "I'm coming" on a catch
"""
from sqlalchemy import Column, Integer, String, DateTime, Float, ForeignKey, UniqueConstraint

from app.db.database import Base, utcnow


class FishCatchResponse(Base):
    __tablename__ = "fish_catch_responses"

    id = Column(Integer, primary_key=True, index=True)
    catch_id = Column(Integer, ForeignKey("fish_catches.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    alert_id = Column(Integer, ForeignKey("fish_alerts.id"), nullable=True)
    response_type = Column(String(20), nullable=False, default="coming")

    # מיקום הלקוח בזמן התגובה - מרכז החיפוש לחלופות כשהתפיסה אוזלת
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # חלופות נשלחו כבר (sold-out) - לא שולחים פעמיים
    alternatives_sent_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("catch_id", "user_id", "response_type", name="uq_fish_catch_responses_user"),
    )
