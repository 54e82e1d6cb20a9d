"""
Scheduled messaging logic.

Contains the domain models, the dispatch scheduler, coach-facing scheduling
operations and the conversation recorder.
"""

from .models import (
    Conversation,
    DispatchReport,
    DueMessage,
    MessageStatus,
    Recipient,
    ScheduledMessage,
    SendFailureReason,
    SendOutcome,
)
from .errors import (
    ConcurrencyError,
    ErrorKind,
    MessagingError,
    NotFoundError,
    PersistenceError,
    ProviderError,
)
from .dispatcher import DispatchScheduler, MessageSender, run_forever
from .scheduling import SchedulingService
from .conversations import ConversationRecorder

__all__ = [
    "Conversation",
    "DispatchReport",
    "DueMessage",
    "MessageStatus",
    "Recipient",
    "ScheduledMessage",
    "SendFailureReason",
    "SendOutcome",
    "ConcurrencyError",
    "ErrorKind",
    "MessagingError",
    "NotFoundError",
    "PersistenceError",
    "ProviderError",
    "DispatchScheduler",
    "MessageSender",
    "run_forever",
    "SchedulingService",
    "ConversationRecorder",
]
