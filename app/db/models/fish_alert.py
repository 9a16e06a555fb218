"""
Fish Alert Model - one notification per (catch, subscription) match
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Float, ForeignKey, Enum as SQLEnum, UniqueConstraint, Index,
)

from app.db.database import Base, utcnow


class FishAlertStatus(str, enum.Enum):
    PENDING = "pending"        # ממתין ל-digest
    SENT = "sent"
    DELIVERED = "delivered"
    CLICKED = "clicked"
    FAILED = "failed"


class FishAlert(Base):
    """
    Notification state for one matched subscription.

    Each timestamp is set at most once. `failed_at` is terminal until
    reset_for_retry() clears it together with `sent_at`.
    """

    __tablename__ = "fish_alerts"

    id = Column(Integer, primary_key=True, index=True)
    catch_id = Column(Integer, ForeignKey("fish_catches.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("fish_subscriptions.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    status = Column(
        SQLEnum(FishAlertStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=FishAlertStatus.PENDING,
    )
    distance_km = Column(Float, nullable=False)
    scheduled_for = Column(DateTime, nullable=True)

    outbox_message_id = Column(Integer, ForeignKey("outbox_messages.id"), nullable=True, index=True)

    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    clicked_at = Column(DateTime, nullable=True)
    click_action = Column(String(30), nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("catch_id", "subscription_id", name="uq_fish_alerts_catch_subscription"),
        Index("ix_fish_alerts_status_scheduled", "status", "scheduled_for"),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == FishAlertStatus.PENDING and self.failed_at is None

    @property
    def is_terminal(self) -> bool:
        return self.failed_at is not None or (
            self.delivered_at is not None and self.clicked_at is not None
        )

    def _stamp(self, now):
        # created_at מתמלא רק ב-flush; חותמת לעולם לא מוקדמת מהיצירה
        if self.created_at is not None and now < self.created_at:
            return self.created_at
        return now

    def mark_sent(self, now, outbox_message_id: int | None = None) -> bool:
        if self.sent_at is not None or self.failed_at is not None:
            return False
        self.sent_at = self._stamp(now)
        self.status = FishAlertStatus.SENT
        if outbox_message_id is not None:
            self.outbox_message_id = outbox_message_id
        return True

    def mark_delivered(self, now) -> bool:
        if self.delivered_at is not None or self.failed_at is not None:
            return False
        self.delivered_at = self._stamp(now)
        if self.status != FishAlertStatus.CLICKED:
            self.status = FishAlertStatus.DELIVERED
        return True

    def mark_clicked(self, now, action: str) -> bool:
        if self.clicked_at is not None:
            return False
        self.clicked_at = self._stamp(now)
        self.click_action = action
        self.status = FishAlertStatus.CLICKED
        return True

    def mark_failed(self, now, reason: str) -> bool:
        if self.failed_at is not None:
            return False
        self.failed_at = self._stamp(now)
        self.failure_reason = reason[:500]
        self.status = FishAlertStatus.FAILED
        return True

    def reset_for_retry(self) -> None:
        """The only way out of FAILED: failed_at and sent_at are cleared together"""
        self.failed_at = None
        self.sent_at = None
        self.failure_reason = None
        self.status = FishAlertStatus.PENDING
