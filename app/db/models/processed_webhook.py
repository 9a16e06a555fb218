"""
Processed Webhook Model - durable tier of the dedup gate.

A row is written the moment a provider message id is accepted, before any
side effect runs. Rows are never updated back to "unseen"; a cleanup task
removes them after the retention window.
"""
import enum

from sqlalchemy import Column, String, DateTime, Index

from app.db.database import Base, utcnow


class ProcessingStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessedWebhook(Base):
    """רשומת idempotency - הודעה שהתקבלה מ-webhook"""

    __tablename__ = "processed_webhooks"

    message_id = Column(String(200), primary_key=True)
    status = Column(String(20), nullable=False, default=ProcessingStatus.PROCESSING.value)
    processed_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)

    __table_args__ = (
        Index("ix_processed_webhooks_processed_at", "processed_at"),
    )
