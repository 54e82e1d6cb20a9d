"""
Snowflake repository for scheduled messages.

This module implements the repository pattern for the scheduled_messages
table. The repository:
1. Translates between ScheduledMessage and database rows
2. Encapsulates all SQL queries, one statement per operation
3. Wraps driver errors in PersistenceError

Table layout:
    scheduled_messages(message_id, patient_id, coach_id, recipient_phone,
                       body, send_at, status, created_at, attempts,
                       last_error, claimed_by, claimed_at,
                       provider_message_id, sent_at)
    patients(patient_id, user_id, ...)
    users(user_id, user_name, user_phone, ...)

State changes that race with other dispatchers (claim, release, cancel,
expiry) are conditional updates; the affected row count says who won.
"""

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from src.core.messaging.errors import NotFoundError, PersistenceError
from src.core.messaging.models import (
    DueMessage,
    MessageStatus,
    Recipient,
    ScheduledMessage,
    ensure_utc,
)

from ..client import SnowflakeConnection


logger = logging.getLogger(__name__)


MESSAGE_COLUMNS = (
    "message_id",
    "patient_id",
    "coach_id",
    "recipient_phone",
    "body",
    "send_at",
    "status",
    "created_at",
    "attempts",
    "last_error",
    "claimed_by",
    "claimed_at",
    "provider_message_id",
    "sent_at",
)

# Columns a caller may change through update_scheduled.
UPDATABLE_COLUMNS = frozenset({
    "patient_id",
    "coach_id",
    "recipient_phone",
    "body",
    "send_at",
    "attempts",
    "last_error",
})

_SELECT_MESSAGE = "SELECT {} FROM scheduled_messages".format(", ".join(MESSAGE_COLUMNS))


class ScheduledMessageRepository:
    """
    Repository for scheduled message persistence.

    Each method corresponds to a use case:
    - insert_scheduled / get_scheduled / get_scheduled_by_patient_id
    - update_scheduled / delete_scheduled for coach edits
    - list_due_scheduled / claim_scheduled / release_claim / mark_sent /
      mark_failed / expire_stale_claims for the dispatcher
    """

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    def insert_scheduled(self, message: ScheduledMessage) -> None:
        """Persist a new scheduled message."""
        self._write("""
            INSERT INTO scheduled_messages (
                message_id, patient_id, coach_id, recipient_phone, body,
                send_at, status, created_at, attempts, last_error
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            str(message.id), message.patient_id, message.coach_id,
            message.recipient_phone, message.body, message.send_at,
            message.status.value, message.created_at, message.attempts,
            message.last_error,
        ), "insert_scheduled")

    def get_scheduled(self, message_id: UUID) -> ScheduledMessage:
        """Load one scheduled message; NotFoundError if it doesn't exist."""
        rows = self._read(
            f"{_SELECT_MESSAGE} WHERE message_id = %s",
            (str(message_id),),
            "get_scheduled",
        )
        if not rows:
            raise NotFoundError(
                f"Scheduled message {message_id} not found",
                entity="scheduled_message",
            )
        return self._build_message(rows[0])

    def get_scheduled_by_patient_id(self, patient_id: str) -> list[ScheduledMessage]:
        """All scheduled messages addressed to a patient, earliest first."""
        rows = self._read(
            f"{_SELECT_MESSAGE} WHERE patient_id = %s ORDER BY send_at",
            (patient_id,),
            "get_scheduled_by_patient_id",
        )
        return [self._build_message(row) for row in rows]

    def list_due_scheduled(self, now: datetime) -> list[DueMessage]:
        """
        Pending messages whose send time has passed, joined with the recipient.

        LEFT JOINs keep rows whose patient or user disappeared, so the
        dispatcher can see them and stop retrying them.
        """
        rows = self._read("""
            SELECT
                m.message_id,
                m.patient_id,
                m.coach_id,
                m.recipient_phone,
                m.body,
                m.send_at,
                m.status,
                m.created_at,
                m.attempts,
                m.last_error,
                m.claimed_by,
                m.claimed_at,
                m.provider_message_id,
                m.sent_at,
                p.patient_id AS recipient_patient_id,
                u.user_id,
                u.user_name,
                u.user_phone
            FROM scheduled_messages m
            LEFT JOIN patients p ON p.patient_id = m.patient_id
            LEFT JOIN users u ON u.user_id = p.user_id
            WHERE m.status = %s
              AND m.send_at <= %s
            ORDER BY m.send_at, m.message_id
        """, (MessageStatus.PENDING.value, ensure_utc(now)), "list_due_scheduled")

        due = []
        for row in rows:
            try:
                message = self._build_message(row)
            except ValueError as e:
                self._fail_unreadable(row[0], e)
                continue

            recipient = None
            if row[14]:
                recipient = Recipient(
                    patient_id=row[14],
                    user_id=row[15],
                    name=row[16],
                    phone=row[17],
                )
            due.append(DueMessage(message=message, recipient=recipient))
        return due

    def update_scheduled(
        self,
        message_id: UUID,
        patch: dict[str, Any],
        only_if_status: Optional[MessageStatus] = None,
    ) -> bool:
        """
        Apply a partial update. Returns False when no row matched.

        With `only_if_status`, the update only lands while the row is still
        in that status.
        """
        unknown = set(patch) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")
        if not patch:
            return False

        columns = sorted(patch)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        values: list[Any] = [
            ensure_utc(patch[c]) if isinstance(patch[c], datetime) else patch[c]
            for c in columns
        ]

        query = f"UPDATE scheduled_messages SET {assignments} WHERE message_id = %s"
        values.append(str(message_id))
        if only_if_status is not None:
            query += " AND status = %s"
            values.append(only_if_status.value)

        return self._write(query, tuple(values), "update_scheduled") > 0

    def delete_scheduled(
        self,
        message_id: UUID,
        only_if_status: Optional[MessageStatus] = None,
    ) -> bool:
        """Delete a scheduled message. Returns False when no row matched."""
        query = "DELETE FROM scheduled_messages WHERE message_id = %s"
        params: tuple = (str(message_id),)
        if only_if_status is not None:
            query += " AND status = %s"
            params += (only_if_status.value,)
        return self._write(query, params, "delete_scheduled") > 0

    def claim_scheduled(self, message_id: UUID, worker_id: str, now: datetime) -> bool:
        """
        Take ownership of a due message before sending it.

        Only one dispatcher can move a row out of pending, so at most one
        of them gets True for any given row.
        """
        claimed = self._write("""
            UPDATE scheduled_messages
            SET status = %s, claimed_by = %s, claimed_at = %s
            WHERE message_id = %s
              AND status = %s
              AND send_at <= %s
        """, (
            MessageStatus.CLAIMED.value, worker_id, ensure_utc(now),
            str(message_id), MessageStatus.PENDING.value, ensure_utc(now),
        ), "claim_scheduled")
        return claimed > 0

    def release_claim(self, message_id: UUID, worker_id: str, error: str) -> bool:
        """Return a claimed message to pending after a retryable failure."""
        released = self._write("""
            UPDATE scheduled_messages
            SET status = %s, claimed_by = NULL, claimed_at = NULL,
                attempts = attempts + 1, last_error = %s
            WHERE message_id = %s
              AND status = %s
              AND claimed_by = %s
        """, (
            MessageStatus.PENDING.value, error, str(message_id),
            MessageStatus.CLAIMED.value, worker_id,
        ), "release_claim")
        return released > 0

    def mark_sent(self, message_id: UUID, provider_message_id: str, sent_at: datetime) -> bool:
        """Record delivery on a claimed row (used when sent rows are kept)."""
        marked = self._write("""
            UPDATE scheduled_messages
            SET status = %s, provider_message_id = %s, sent_at = %s,
                claimed_by = NULL, claimed_at = NULL
            WHERE message_id = %s
              AND status = %s
        """, (
            MessageStatus.SENT.value, provider_message_id, ensure_utc(sent_at),
            str(message_id), MessageStatus.CLAIMED.value,
        ), "mark_sent")
        return marked > 0

    def mark_failed(
        self,
        message_id: UUID,
        error: str,
        only_if_status: Optional[MessageStatus] = None,
    ) -> bool:
        """
        Move a pending or claimed message to the terminal failed state.

        With `only_if_status`, the row is only failed while it is still in
        that status, so a dispatcher cannot fail a row another one claimed.
        """
        query = """
            UPDATE scheduled_messages
            SET status = %s, last_error = %s, claimed_by = NULL, claimed_at = NULL
            WHERE message_id = %s
        """
        params: tuple = (MessageStatus.FAILED.value, error, str(message_id))
        if only_if_status is not None:
            query += "  AND status = %s"
            params += (only_if_status.value,)
        else:
            query += "  AND status IN (%s, %s)"
            params += (MessageStatus.PENDING.value, MessageStatus.CLAIMED.value)
        return self._write(query, params, "mark_failed") > 0

    def expire_stale_claims(self, cutoff: datetime) -> int:
        """
        Fail claims taken before `cutoff`.

        Their dispatcher died somewhere between claiming and reconciling,
        possibly after the provider accepted the message.
        """
        expired = self._write("""
            UPDATE scheduled_messages
            SET status = %s, last_error = %s, claimed_by = NULL, claimed_at = NULL
            WHERE status = %s
              AND claimed_at < %s
        """, (
            MessageStatus.FAILED.value, "claim_expired",
            MessageStatus.CLAIMED.value, ensure_utc(cutoff),
        ), "expire_stale_claims")

        if expired:
            logger.warning(
                "Expired stale scheduled message claims",
                extra={"count": expired, "cutoff": ensure_utc(cutoff).isoformat()}
            )
        return expired

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    def _read(self, query: str, params: tuple, operation: str) -> list:
        cursor = self._conn.cursor()
        try:
            cursor.execute(query, params)
            return cursor.fetchall()
        except Exception as e:
            logger.error(
                "Scheduled message query failed",
                extra={"operation": operation, "error": str(e)}
            )
            raise PersistenceError(f"{operation} failed: {e}") from e
        finally:
            cursor.close()

    def _write(self, query: str, params: tuple, operation: str) -> int:
        cursor = self._conn.cursor()
        try:
            cursor.execute(query, params)
            affected = cursor.rowcount or 0
            self._conn.commit()
            return affected
        except Exception as e:
            logger.error(
                "Scheduled message write failed",
                extra={"operation": operation, "error": str(e)}
            )
            try:
                self._conn.rollback()
            except Exception:
                logger.warning("Rollback failed", extra={"operation": operation})
            raise PersistenceError(f"{operation} failed: {e}") from e
        finally:
            cursor.close()

    def _fail_unreadable(self, message_id: Any, error: ValueError) -> None:
        """
        Fail a pending row that cannot be turned into a ScheduledMessage.

        Left pending it would be fetched and skipped on every run.
        """
        logger.error(
            "Failing unreadable scheduled message row",
            extra={"message_id": str(message_id), "error": str(error)}
        )
        try:
            self.mark_failed(message_id, "unreadable_row", only_if_status=MessageStatus.PENDING)
        except PersistenceError as e:
            # Retried on the next fetch.
            logger.error(
                "Could not fail unreadable scheduled message row",
                extra={"message_id": str(message_id), "error": str(e)}
            )

    def _build_message(self, row) -> ScheduledMessage:
        """Construct a ScheduledMessage from the MESSAGE_COLUMNS prefix of a row."""
        return ScheduledMessage(
            id=UUID(str(row[0])),
            patient_id=row[1],
            coach_id=row[2],
            recipient_phone=row[3] or "",
            body=row[4],
            send_at=row[5],
            status=MessageStatus(row[6]),
            created_at=row[7],
            attempts=row[8] or 0,
            last_error=row[9],
            claimed_by=row[10],
            claimed_at=row[11],
            provider_message_id=row[12],
            sent_at=row[13],
        )
