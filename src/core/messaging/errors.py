"""
Error taxonomy for the messaging subsystem.

Infrastructure code translates driver and provider exceptions into these
types at its boundary, so the dispatcher and the API can branch on `kind`
instead of inspecting raw Snowflake or Twilio errors.
"""

from enum import Enum
from typing import Optional

from .models import SendFailureReason


class ErrorKind(Enum):
    PERSISTENCE = "persistence"
    PROVIDER = "provider"
    NOT_FOUND = "not_found"
    CONCURRENCY = "concurrency"


class MessagingError(Exception):
    """Base class for messaging failures."""
    kind: ErrorKind


class PersistenceError(MessagingError):
    """A query or connection against the relational store failed."""
    kind = ErrorKind.PERSISTENCE


class ProviderError(MessagingError):
    """The messaging provider rejected or could not take a message."""
    kind = ErrorKind.PROVIDER

    def __init__(
        self,
        message: str,
        reason: SendFailureReason = SendFailureReason.PROVIDER_ERROR,
    ) -> None:
        super().__init__(message)
        self.reason = reason


class NotFoundError(MessagingError):
    """A referenced scheduled message, patient, coach or recipient is missing."""
    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str, entity: Optional[str] = None) -> None:
        super().__init__(message)
        self.entity = entity


class ConcurrencyError(MessagingError):
    """The row is held by a dispatcher or no longer in the expected state."""
    kind = ErrorKind.CONCURRENCY
