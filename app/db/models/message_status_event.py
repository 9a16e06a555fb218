"""
Message Status Event Model - failed delivery receipts kept for observability
"""
from sqlalchemy import Column, Integer, String, DateTime

from app.db.database import Base, utcnow


class MessageStatusEvent(Base):
    __tablename__ = "message_status_events"

    id = Column(Integer, primary_key=True, index=True)
    provider_message_id = Column(String(200), index=True, nullable=False)
    recipient_phone = Column(String(20), nullable=True)
    status = Column(String(20), nullable=False)
    error_code = Column(String(20), nullable=True)
    error_title = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow)
