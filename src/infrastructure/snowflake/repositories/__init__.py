"""
Repository pattern implementations for Snowflake.

Repositories translate between domain models and database representations.
"""

from .conversations import ConversationRepository, DirectoryRepository
from .scheduled_messages import ScheduledMessageRepository

__all__ = [
    "ConversationRepository",
    "DirectoryRepository",
    "ScheduledMessageRepository",
]
