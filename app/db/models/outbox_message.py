"""
Outbox Message Model - Transactional Outbox Pattern

Every outbound send is written here in the same transaction as the state
change that caused it, then delivered by a worker under the rate limiters.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON

from app.db.database import Base, utcnow


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessageType(str, enum.Enum):
    REPLY = "reply"
    SELLER_NOTIFICATION = "seller_notification"
    COUNTERPARTY_NOTIFICATION = "counterparty_notification"
    FISH_ALERT = "fish_alert"
    FISH_DIGEST = "fish_digest"
    SOLD_OUT_ALTERNATIVES = "sold_out_alternatives"


# סוגי הודעות שנספרים מול תקציב ה-burst (broadcast) ולא רק מול המגבלה הגלובלית
BROADCAST_MESSAGE_TYPES = frozenset({
    OutboxMessageType.FISH_ALERT.value,
    OutboxMessageType.FISH_DIGEST.value,
    OutboxMessageType.SOLD_OUT_ALTERNATIVES.value,
})


class OutboxMessage(Base):
    """Pending sends with retry tracking"""

    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)

    recipient_phone = Column(String(20), nullable=False, index=True)
    message_type = Column(String(50), nullable=False, default=OutboxMessageType.REPLY.value)
    message_content = Column(JSON, nullable=False)

    status = Column(SQLEnum(MessageStatus), default=MessageStatus.PENDING, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=3)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True, index=True)

    # מזהה ההודעה אצל הספק - לקישור קבלות מסירה (statuses) חזרה לשורה
    provider_message_id = Column(String(200), nullable=True, index=True)

    last_error = Column(String(1000), nullable=True)

    @property
    def is_broadcast(self) -> bool:
        return self.message_type in BROADCAST_MESSAGE_TYPES
