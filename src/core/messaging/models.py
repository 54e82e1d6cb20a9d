"""
Domain models for scheduled coach-to-patient messaging.

These models represent the core business concepts. They have no dependencies
on external frameworks, databases, or the messaging provider, so the dispatch
logic can be exercised with plain in-memory objects.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4


# Twilio concatenates long SMS bodies up to this many characters.
MAX_BODY_LENGTH = 1600


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are assumed UTC)."""
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MessageStatus(Enum):
    """
    Lifecycle of a scheduled message.

    CLAIMED is the in-flight marker a dispatcher sets before calling the
    provider. Only PENDING rows are ever returned by the due query.
    """
    PENDING = "pending"
    CLAIMED = "claimed"
    SENT = "sent"
    FAILED = "failed"


class SendFailureReason(Enum):
    """Why the provider did not accept a message."""
    INVALID_NUMBER = "invalid_number"
    PROVIDER_ERROR = "provider_error"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"


@dataclass
class ScheduledMessage:
    """
    A message a coach wants delivered to a patient at or after `send_at`.

    Once a dispatcher claims it, the row belongs to that dispatcher until
    the send attempt resolves.
    """
    patient_id: str
    coach_id: str
    recipient_phone: str
    body: str
    send_at: datetime
    id: UUID = field(default_factory=uuid4)
    status: MessageStatus = MessageStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    last_error: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    provider_message_id: Optional[str] = None
    sent_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.body or not self.body.strip():
            raise ValueError("Message body cannot be empty")
        if len(self.body) > MAX_BODY_LENGTH:
            raise ValueError(
                f"Message body exceeds {MAX_BODY_LENGTH} characters"
            )
        if self.attempts < 0:
            raise ValueError("attempts cannot be negative")
        self.send_at = ensure_utc(self.send_at)
        self.created_at = ensure_utc(self.created_at)
        if self.claimed_at is not None:
            self.claimed_at = ensure_utc(self.claimed_at)
        if self.sent_at is not None:
            self.sent_at = ensure_utc(self.sent_at)

    def is_due(self, now: datetime) -> bool:
        return self.status == MessageStatus.PENDING and self.send_at <= ensure_utc(now)


@dataclass(frozen=True)
class Recipient:
    """Contact details of the patient a message is addressed to."""
    patient_id: str
    user_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class DueMessage:
    """A due scheduled message joined with its recipient's current contact info."""
    message: ScheduledMessage
    recipient: Optional[Recipient] = None

    @property
    def resolved_phone(self) -> Optional[str]:
        """
        Phone number to deliver to.

        The patient's current phone wins over the number captured when the
        message was scheduled. No recipient means nothing to resolve.
        """
        if self.recipient is None:
            return None
        phone = (self.recipient.phone or self.message.recipient_phone or "").strip()
        return phone or None


@dataclass
class Conversation:
    """A coach-patient thread. Created once per pairing, never mutated."""
    coach_id: str
    patient_id: str
    conversation_id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SendOutcome:
    """Result of a single provider call."""
    success: bool
    provider_message_id: Optional[str] = None
    reason: Optional[SendFailureReason] = None
    detail: str = ""

    @classmethod
    def succeeded(cls, provider_message_id: str) -> "SendOutcome":
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, reason: SendFailureReason, detail: str = "") -> "SendOutcome":
        return cls(success=False, reason=reason, detail=detail)

    @property
    def retryable(self) -> bool:
        """Invalid destinations will not fix themselves on the next cycle."""
        return not self.success and self.reason != SendFailureReason.INVALID_NUMBER

    @property
    def error_text(self) -> str:
        if self.success:
            return ""
        reason = self.reason.value if self.reason else "unknown"
        return f"{reason}: {self.detail}" if self.detail else reason


@dataclass
class DispatchReport:
    """Summary of one dispatch run."""
    run_id: UUID = field(default_factory=uuid4)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    due: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    expired: int = 0
    contended: int = 0
    stale_claims: int = 0
    errors: int = 0
    aborted: bool = False
    error: Optional[str] = None

    @property
    def attempted(self) -> int:
        """Messages for which the provider was actually called."""
        return self.sent + self.retried + self.failed

    def to_dict(self) -> dict:
        return {
            "run_id": str(self.run_id),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "due": self.due,
            "sent": self.sent,
            "retried": self.retried,
            "failed": self.failed,
            "skipped": self.skipped,
            "expired": self.expired,
            "contended": self.contended,
            "stale_claims": self.stale_claims,
            "errors": self.errors,
            "aborted": self.aborted,
            "error": self.error,
        }
