"""
Shared fixtures for the messaging unit tests.

Everything runs against the in-memory Snowflake mock and the mock
message sender; no test touches the network.
"""

from datetime import datetime, timedelta, timezone

import pytest

from src.core.messaging.models import ScheduledMessage
from src.infrastructure.snowflake.client import MockSnowflakeConnection
from src.infrastructure.snowflake.repositories import ScheduledMessageRepository
from src.infrastructure.twilio.client import MockMessageSender


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

PATIENT_ID = "patient-1"
PATIENT_PHONE = "+15550001111"
COACH_ID = "coach-1"


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def connection() -> MockSnowflakeConnection:
    """
    Mock database with one coach and one patient whose user has a phone.
    """
    conn = MockSnowflakeConnection()
    conn._add_row("users", {
        "user_id": "user-1",
        "user_name": "Ana Lima",
        "user_phone": PATIENT_PHONE,
    })
    conn._add_row("patients", {"patient_id": PATIENT_ID, "user_id": "user-1"})
    conn._add_row("users", {
        "user_id": "user-coach",
        "user_name": "Coach Carter",
        "user_phone": "+15550009999",
    })
    conn._add_row("coaches", {
        "coach_id": COACH_ID,
        "coach_name": "Coach Carter",
        "email": "carter@example.com",
        "user_id": "user-coach",
    })
    return conn


@pytest.fixture
def repository(connection) -> ScheduledMessageRepository:
    return ScheduledMessageRepository(connection)


@pytest.fixture
def sender() -> MockMessageSender:
    return MockMessageSender()


@pytest.fixture
def make_message():
    """Factory for scheduled messages addressed to the seeded patient."""
    def _make(send_at: datetime, body: str = "Remember your exercises today", **overrides):
        fields = {
            "patient_id": PATIENT_ID,
            "coach_id": COACH_ID,
            "recipient_phone": "+15550002222",
            "body": body,
            "send_at": send_at,
            "created_at": send_at - timedelta(days=1),
        }
        fields.update(overrides)
        return ScheduledMessage(**fields)
    return _make
