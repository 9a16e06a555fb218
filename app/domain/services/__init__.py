"""
Domain Services
"""
from app.domain.services.dedup_service import DedupGate, DedupResult
from app.domain.services.outbox_service import OutboxService
from app.domain.services.post_commit import JobPublisher, PostCommitJobs
from app.domain.services.messenger import OutboxMessenger

__all__ = [
    "DedupGate",
    "DedupResult",
    "OutboxService",
    "JobPublisher",
    "PostCommitJobs",
    "OutboxMessenger",
]
