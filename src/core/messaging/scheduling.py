"""
Coach-facing operations on scheduled messages.

Creating, listing, rescheduling and cancelling messages before the
dispatcher picks them up. Changes are only allowed while a message is still
pending; once a dispatcher has claimed it, the row is no longer the coach's
to edit.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Protocol
from uuid import UUID

from .errors import ConcurrencyError
from .models import MessageStatus, ScheduledMessage, ensure_utc, utcnow


logger = logging.getLogger(__name__)


class SchedulingGateway(Protocol):
    def insert_scheduled(self, message: ScheduledMessage) -> None: ...
    def get_scheduled(self, message_id: UUID) -> ScheduledMessage: ...
    def get_scheduled_by_patient_id(self, patient_id: str) -> list[ScheduledMessage]: ...
    def update_scheduled(
        self,
        message_id: UUID,
        patch: dict,
        only_if_status: Optional[MessageStatus] = None,
    ) -> bool: ...
    def delete_scheduled(
        self,
        message_id: UUID,
        only_if_status: Optional[MessageStatus] = None,
    ) -> bool: ...


class SchedulingService:
    """Schedules coach messages for later delivery."""

    def __init__(
        self,
        gateway: SchedulingGateway,
        max_backdate: timedelta = timedelta(minutes=5),
    ) -> None:
        self._gateway = gateway
        self._max_backdate = max_backdate

    def schedule_message(
        self,
        patient_id: str,
        coach_id: str,
        recipient_phone: str,
        body: str,
        send_at: datetime,
        now: Optional[datetime] = None,
    ) -> ScheduledMessage:
        """
        Persist a new pending message.

        A send time slightly in the past is accepted (clock skew between the
        coach's device and the server); anything older is almost certainly a
        mistake and is rejected.
        """
        now = ensure_utc(now or utcnow())
        send_at = ensure_utc(send_at)
        if send_at < now - self._max_backdate:
            raise ValueError("send_at is too far in the past")

        message = ScheduledMessage(
            patient_id=patient_id,
            coach_id=coach_id,
            recipient_phone=recipient_phone,
            body=body,
            send_at=send_at,
            created_at=now,
        )
        self._gateway.insert_scheduled(message)

        logger.info(
            "Scheduled message created",
            extra={
                "message_id": str(message.id),
                "patient_id": patient_id,
                "coach_id": coach_id,
                "send_at": send_at.isoformat(),
            }
        )
        return message

    def list_for_patient(self, patient_id: str) -> list[ScheduledMessage]:
        messages = self._gateway.get_scheduled_by_patient_id(patient_id)
        return sorted(messages, key=lambda m: m.send_at)

    def reschedule(
        self,
        message_id: UUID,
        send_at: Optional[datetime] = None,
        body: Optional[str] = None,
    ) -> ScheduledMessage:
        """Change the send time and/or body of a pending message."""
        current = self._gateway.get_scheduled(message_id)

        patch: dict = {}
        if send_at is not None:
            patch["send_at"] = ensure_utc(send_at)
        if body is not None:
            patch["body"] = body
        if not patch:
            return current

        # Re-run model validation on the edited values before touching the row.
        updated = ScheduledMessage(
            patient_id=current.patient_id,
            coach_id=current.coach_id,
            recipient_phone=current.recipient_phone,
            body=patch.get("body", current.body),
            send_at=patch.get("send_at", current.send_at),
            id=current.id,
            status=current.status,
            created_at=current.created_at,
            attempts=current.attempts,
            last_error=current.last_error,
        )

        if not self._gateway.update_scheduled(
            message_id, patch, only_if_status=MessageStatus.PENDING
        ):
            raise ConcurrencyError(
                f"Scheduled message {message_id} is no longer pending"
            )

        logger.info(
            "Scheduled message updated",
            extra={"message_id": str(message_id), "fields": sorted(patch)}
        )
        return updated

    def cancel(self, message_id: UUID) -> None:
        """Remove a pending message before it is sent."""
        if self._gateway.delete_scheduled(message_id, only_if_status=MessageStatus.PENDING):
            logger.info("Scheduled message cancelled", extra={"message_id": str(message_id)})
            return

        # Distinguish "never existed" from "already in flight or done".
        current = self._gateway.get_scheduled(message_id)
        raise ConcurrencyError(
            f"Scheduled message {message_id} is {current.status.value} and cannot be cancelled"
        )
