"""
Dispatch Decision - inline vs worker processing of an accepted message
"""
import enum
from typing import Optional

from app.core.logging import get_logger
from app.db.models.conversation_session import ConversationSession
from app.domain.messages import IncomingMessage
from app.state_machine.states import COMPLEX_FLOWS, FlowType

logger = get_logger(__name__)


class DispatchMode(str, enum.Enum):
    SYNC = "sync"
    ASYNC = "async"


class DispatchService:
    @staticmethod
    def decide(message: IncomingMessage, session: Optional[ConversationSession]) -> DispatchMode:
        """
        Media needs a download round-trip and complex flows touch several
        services, so both go to the worker; everything else runs inline.
        """
        if message.is_media:
            return DispatchMode.ASYNC
        if session is not None and FlowType.parse(session.current_flow) in COMPLEX_FLOWS:
            return DispatchMode.ASYNC
        return DispatchMode.SYNC
