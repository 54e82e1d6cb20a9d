"""
Conversation bookkeeping for coach-patient threads.

A conversation row is the key message threading hangs off. The message
bodies themselves live in the provider's own history; we only record which
coach talks to which patient, once per pairing.
"""

import logging
from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

from .errors import NotFoundError
from .models import Conversation, Recipient, utcnow


logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    def insert_conversation(self, conversation: Conversation) -> UUID: ...
    def find_conversation(self, coach_id: str, patient_id: str) -> Optional[Conversation]: ...


class Directory(Protocol):
    """Read-only lookups into patients, users and coaches."""

    def find_patient_by_phone(self, phone: str) -> Optional[Recipient]: ...
    def get_coach(self, coach_id: str) -> Optional[dict]: ...


class ConversationRecorder:
    """Creates and resolves coach-patient conversations."""

    def __init__(self, store: ConversationStore, directory: Optional[Directory] = None) -> None:
        self._store = store
        self._directory = directory

    def create_conversation(
        self,
        coach_id: str,
        patient_id: str,
        now: Optional[datetime] = None,
    ) -> UUID:
        """Insert a new conversation and return its generated id."""
        if not coach_id or not patient_id:
            raise ValueError("coach_id and patient_id are required")

        conversation = Conversation(
            coach_id=coach_id,
            patient_id=patient_id,
            created_at=now or utcnow(),
        )
        conversation_id = self._store.insert_conversation(conversation)

        logger.info(
            "Conversation created",
            extra={
                "conversation_id": str(conversation_id),
                "coach_id": coach_id,
                "patient_id": patient_id,
            }
        )
        return conversation_id

    def ensure_conversation(self, coach_id: str, patient_id: str) -> UUID:
        """Return the pairing's conversation id, creating it on first contact."""
        existing = self._store.find_conversation(coach_id, patient_id)
        if existing is not None:
            return existing.conversation_id
        return self.create_conversation(coach_id, patient_id)

    def conversation_for_sender(self, phone: str, coach_id: str) -> UUID:
        """
        Resolve an inbound sender to the conversation with their coach.

        Raises NotFoundError when the phone matches no patient or the coach
        does not exist.
        """
        if self._directory is None:
            raise RuntimeError("ConversationRecorder was created without a directory")

        patient = self._directory.find_patient_by_phone(phone)
        if patient is None:
            raise NotFoundError(f"No patient with phone {phone}", entity="patient")

        if self._directory.get_coach(coach_id) is None:
            raise NotFoundError(f"Coach {coach_id} not found", entity="coach")

        return self.ensure_conversation(coach_id, patient.patient_id)
