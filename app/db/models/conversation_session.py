"""
Conversation Session Model - which flow and step a sender is in
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON

from app.db.database import Base, utcnow


class ConversationSession(Base):
    """
    One row per sender phone.

    Flow/step are written only through SessionStore.apply(), which bumps
    `version` with a compare-and-swap so concurrent deliveries for the same
    sender cannot silently overwrite each other's transition.
    """

    __tablename__ = "conversation_sessions"

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String(20), unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    current_flow = Column(String(50), nullable=False, default="main_menu")
    current_step = Column(String(50), nullable=False, default="idle")

    # scratch של ה-flow הנוכחי בלבד: {"flow": <flow>, ...fields}
    temp_data = Column(JSON, default=dict)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_activity_at = Column(DateTime, default=utcnow)
