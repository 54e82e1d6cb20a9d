"""
Snowflake repositories for conversations and the patient/coach directory.

Conversations are append-only: one row per coach-patient pairing.
The directory side is read-only; patients, users and coaches are owned by
the registration flows.
"""

import logging
from typing import Optional
from uuid import UUID

from src.core.messaging.errors import PersistenceError
from src.core.messaging.models import Conversation, Recipient

from ..client import SnowflakeConnection


logger = logging.getLogger(__name__)


class ConversationRepository:
    """Persistence for coach-patient conversations."""

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    def insert_conversation(self, conversation: Conversation) -> UUID:
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                INSERT INTO conversations (conversation_id, coach_id, patient_id, created_at)
                VALUES (%s, %s, %s, %s)
            """, (
                str(conversation.conversation_id),
                conversation.coach_id,
                conversation.patient_id,
                conversation.created_at,
            ))
            self._conn.commit()
            return conversation.conversation_id
        except Exception as e:
            logger.error(
                "Failed to insert conversation",
                extra={
                    "coach_id": conversation.coach_id,
                    "patient_id": conversation.patient_id,
                    "error": str(e),
                }
            )
            raise PersistenceError(f"insert_conversation failed: {e}") from e
        finally:
            cursor.close()

    def find_conversation(self, coach_id: str, patient_id: str) -> Optional[Conversation]:
        """The earliest conversation for a pairing, if any."""
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                SELECT conversation_id, coach_id, patient_id, created_at
                FROM conversations
                WHERE coach_id = %s
                  AND patient_id = %s
                ORDER BY created_at
                LIMIT 1
            """, (coach_id, patient_id))
            row = cursor.fetchone()
        except Exception as e:
            raise PersistenceError(f"find_conversation failed: {e}") from e
        finally:
            cursor.close()

        if not row:
            return None
        return Conversation(
            conversation_id=UUID(str(row[0])),
            coach_id=row[1],
            patient_id=row[2],
            created_at=row[3],
        )


class DirectoryRepository:
    """Read-only lookups over patients, users and coaches."""

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    def find_patient_by_phone(self, phone: str) -> Optional[Recipient]:
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                SELECT p.patient_id, u.user_id, u.user_name, u.user_phone
                FROM users u
                INNER JOIN patients p ON p.user_id = u.user_id
                WHERE u.user_phone = %s
                LIMIT 1
            """, (phone,))
            row = cursor.fetchone()
        except Exception as e:
            raise PersistenceError(f"find_patient_by_phone failed: {e}") from e
        finally:
            cursor.close()

        if not row:
            return None
        return Recipient(patient_id=row[0], user_id=row[1], name=row[2], phone=row[3])

    def get_coach(self, coach_id: str) -> Optional[dict]:
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                SELECT coach_id, coach_name, email, user_id
                FROM coaches
                WHERE coach_id = %s
            """, (coach_id,))
            row = cursor.fetchone()
        except Exception as e:
            raise PersistenceError(f"get_coach failed: {e}") from e
        finally:
            cursor.close()

        if not row:
            return None
        return {
            "coach_id": row[0],
            "coach_name": row[1],
            "email": row[2],
            "user_id": row[3],
        }

    def ping(self) -> None:
        """Cheapest possible round trip, for readiness checks."""
        cursor = self._conn.cursor()
        try:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        except Exception as e:
            raise PersistenceError(f"ping failed: {e}") from e
        finally:
            cursor.close()
