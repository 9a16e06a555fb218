"""
Database Models
"""
from app.db.models.user import User
from app.db.models.conversation_session import ConversationSession
from app.db.models.processed_webhook import ProcessedWebhook
from app.db.models.message_status_event import MessageStatusEvent
from app.db.models.outbox_message import OutboxMessage
from app.db.models.fish_type import FishType
from app.db.models.fish_seller import FishSeller
from app.db.models.fish_catch import FishCatch
from app.db.models.fish_subscription import FishSubscription
from app.db.models.fish_alert import FishAlert
from app.db.models.fish_catch_response import FishCatchResponse
from app.db.models.agreement import Agreement
from app.db.models.job_post import JobPost

__all__ = [
    "User",
    "ConversationSession",
    "ProcessedWebhook",
    "MessageStatusEvent",
    "OutboxMessage",
    "FishType",
    "FishSeller",
    "FishCatch",
    "FishSubscription",
    "FishAlert",
    "FishCatchResponse",
    "Agreement",
    "JobPost",
]
