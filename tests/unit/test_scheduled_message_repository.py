"""
Unit tests for the scheduled message repository.

Runs the repository's SQL against the in-memory Snowflake mock, so these
cover both the row mapping and the conditional updates the claim protocol
relies on.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from src.core.messaging.errors import NotFoundError, PersistenceError
from src.core.messaging.models import MessageStatus

from conftest import NOW, PATIENT_ID, PATIENT_PHONE


def _add_raw_row(connection, **overrides):
    """Write a row directly, bypassing the model's validation."""
    row = {
        "message_id": str(uuid4()),
        "patient_id": PATIENT_ID,
        "coach_id": "coach-1",
        "recipient_phone": PATIENT_PHONE,
        "body": "Stretch before bed",
        "send_at": NOW - timedelta(minutes=5),
        "status": "pending",
        "created_at": NOW - timedelta(days=1),
        "attempts": 0,
        "last_error": None,
        "claimed_by": None,
        "claimed_at": None,
        "provider_message_id": None,
        "sent_at": None,
    }
    row.update(overrides)
    connection._add_row("scheduled_messages", row)
    return row


class TestReadWrite:

    def test_inserted_message_can_be_loaded(self, repository, make_message):
        message = make_message(NOW + timedelta(hours=1))
        repository.insert_scheduled(message)

        stored = repository.get_scheduled(message.id)

        assert stored == message

    def test_missing_message_raises_not_found(self, repository):
        with pytest.raises(NotFoundError) as exc_info:
            repository.get_scheduled(uuid4())
        assert exc_info.value.entity == "scheduled_message"

    def test_lists_patient_messages_by_send_time(self, repository, make_message):
        later = make_message(NOW + timedelta(days=2))
        sooner = make_message(NOW + timedelta(days=1))
        other = make_message(NOW, patient_id="patient-9")
        for message in (later, sooner, other):
            repository.insert_scheduled(message)

        listed = repository.get_scheduled_by_patient_id(PATIENT_ID)

        assert [m.id for m in listed] == [sooner.id, later.id]

    def test_update_applies_partial_patch(self, repository, make_message):
        message = make_message(NOW + timedelta(hours=1))
        repository.insert_scheduled(message)

        assert repository.update_scheduled(message.id, {"body": "Moved to Friday"})
        assert repository.get_scheduled(message.id).body == "Moved to Friday"

    def test_update_rejects_unknown_columns(self, repository, make_message):
        message = make_message(NOW)
        repository.insert_scheduled(message)

        with pytest.raises(ValueError, match="status"):
            repository.update_scheduled(message.id, {"status": "sent"})

    def test_update_with_status_guard(self, repository, make_message):
        message = make_message(NOW - timedelta(minutes=1))
        repository.insert_scheduled(message)
        repository.claim_scheduled(message.id, "worker:1", NOW)

        updated = repository.update_scheduled(
            message.id, {"body": "Too late"}, only_if_status=MessageStatus.PENDING
        )

        assert not updated
        assert repository.get_scheduled(message.id).body == message.body

    def test_delete_reports_whether_a_row_matched(self, repository, make_message):
        message = make_message(NOW)
        repository.insert_scheduled(message)

        assert repository.delete_scheduled(message.id)
        assert not repository.delete_scheduled(message.id)


class TestDueQuery:

    def test_returns_pending_rows_at_or_before_now(self, repository, make_message):
        due = make_message(NOW)
        future = make_message(NOW + timedelta(seconds=1))
        repository.insert_scheduled(due)
        repository.insert_scheduled(future)

        result = repository.list_due_scheduled(NOW)

        assert [d.message.id for d in result] == [due.id]

    def test_joins_current_recipient_details(self, repository, make_message):
        repository.insert_scheduled(make_message(NOW))

        [due] = repository.list_due_scheduled(NOW)

        assert due.recipient.patient_id == PATIENT_ID
        assert due.recipient.name == "Ana Lima"
        assert due.resolved_phone == PATIENT_PHONE

    def test_keeps_rows_whose_patient_is_gone(self, repository, make_message):
        repository.insert_scheduled(make_message(NOW, patient_id="patient-gone"))

        [due] = repository.list_due_scheduled(NOW)

        assert due.recipient is None

    def test_excludes_claimed_and_finished_rows(self, repository, make_message):
        claimed = make_message(NOW - timedelta(minutes=3))
        failed = make_message(NOW - timedelta(minutes=2))
        repository.insert_scheduled(claimed)
        repository.insert_scheduled(failed)
        repository.claim_scheduled(claimed.id, "worker:1", NOW)
        repository.mark_failed(failed.id, "invalid_number")

        assert repository.list_due_scheduled(NOW) == []

    @pytest.mark.parametrize("overrides", [
        {"body": ""},
        {"body": "x" * 1601},
        {"attempts": -1},
    ])
    def test_unreadable_rows_are_failed_not_returned(
        self, connection, repository, make_message, overrides
    ):
        bad = _add_raw_row(connection, **overrides)
        good = make_message(NOW - timedelta(minutes=1))
        repository.insert_scheduled(good)

        due = repository.list_due_scheduled(NOW)

        assert [d.message.id for d in due] == [good.id]
        [row] = [r for r in connection._rows("scheduled_messages")
                 if r["message_id"] == bad["message_id"]]
        assert row["status"] == "failed"
        assert row["last_error"] == "unreadable_row"
        assert repository.list_due_scheduled(NOW) == due

    def test_unreadable_row_is_retried_when_failing_it_errors(self, connection, repository):
        _add_raw_row(connection, body="")
        connection.fail_next("UPDATE scheduled_messages")

        assert repository.list_due_scheduled(NOW) == []
        assert connection._rows("scheduled_messages")[0]["status"] == "pending"

        repository.list_due_scheduled(NOW)
        assert connection._rows("scheduled_messages")[0]["status"] == "failed"


class TestClaims:
    """Conditional updates that let several dispatchers share the table."""

    def test_only_one_claim_wins(self, repository, make_message):
        message = make_message(NOW - timedelta(minutes=1))
        repository.insert_scheduled(message)

        assert repository.claim_scheduled(message.id, "worker:1", NOW)
        assert not repository.claim_scheduled(message.id, "worker:2", NOW)

        stored = repository.get_scheduled(message.id)
        assert stored.status == MessageStatus.CLAIMED
        assert stored.claimed_by == "worker:1"
        assert stored.claimed_at == NOW

    def test_cannot_claim_before_send_time(self, repository, make_message):
        message = make_message(NOW + timedelta(minutes=1))
        repository.insert_scheduled(message)

        assert not repository.claim_scheduled(message.id, "worker:1", NOW)

    def test_release_returns_row_to_pending(self, repository, make_message):
        message = make_message(NOW - timedelta(minutes=1))
        repository.insert_scheduled(message)
        repository.claim_scheduled(message.id, "worker:1", NOW)

        assert repository.release_claim(message.id, "worker:1", "timeout")

        stored = repository.get_scheduled(message.id)
        assert stored.status == MessageStatus.PENDING
        assert stored.attempts == 1
        assert stored.last_error == "timeout"
        assert stored.claimed_by is None

    def test_only_the_claim_holder_can_release(self, repository, make_message):
        message = make_message(NOW - timedelta(minutes=1))
        repository.insert_scheduled(message)
        repository.claim_scheduled(message.id, "worker:1", NOW)

        assert not repository.release_claim(message.id, "worker:2", "timeout")
        assert repository.get_scheduled(message.id).status == MessageStatus.CLAIMED

    def test_mark_sent_requires_a_claim(self, repository, make_message):
        message = make_message(NOW - timedelta(minutes=1))
        repository.insert_scheduled(message)

        assert not repository.mark_sent(message.id, "SM1", NOW)

        repository.claim_scheduled(message.id, "worker:1", NOW)
        assert repository.mark_sent(message.id, "SM1", NOW)
        assert repository.get_scheduled(message.id).provider_message_id == "SM1"

    def test_mark_failed_does_not_touch_sent_rows(self, repository, make_message):
        message = make_message(NOW - timedelta(minutes=1))
        repository.insert_scheduled(message)
        repository.claim_scheduled(message.id, "worker:1", NOW)
        repository.mark_sent(message.id, "SM1", NOW)

        assert not repository.mark_failed(message.id, "late failure")
        assert repository.get_scheduled(message.id).status == MessageStatus.SENT

    def test_mark_failed_status_guard(self, repository, make_message):
        message = make_message(NOW - timedelta(minutes=1))
        repository.insert_scheduled(message)
        repository.claim_scheduled(message.id, "worker:1", NOW)

        assert not repository.mark_failed(
            message.id, "expired", only_if_status=MessageStatus.PENDING
        )
        assert repository.get_scheduled(message.id).status == MessageStatus.CLAIMED

        assert repository.mark_failed(
            message.id, "invalid_number", only_if_status=MessageStatus.CLAIMED
        )
        stored = repository.get_scheduled(message.id)
        assert stored.status == MessageStatus.FAILED
        assert stored.claimed_by is None

    def test_expires_only_claims_older_than_cutoff(self, repository, make_message):
        old = make_message(NOW - timedelta(hours=2))
        fresh = make_message(NOW - timedelta(hours=2))
        repository.insert_scheduled(old)
        repository.insert_scheduled(fresh)
        repository.claim_scheduled(old.id, "worker:1", NOW - timedelta(hours=1))
        repository.claim_scheduled(fresh.id, "worker:2", NOW - timedelta(minutes=1))

        assert repository.expire_stale_claims(NOW - timedelta(minutes=10)) == 1
        assert repository.get_scheduled(old.id).status == MessageStatus.FAILED
        assert repository.get_scheduled(fresh.id).status == MessageStatus.CLAIMED


class TestDriverErrors:

    def test_read_failure_becomes_persistence_error(self, connection, repository):
        connection.fail_next("FROM scheduled_messages")

        with pytest.raises(PersistenceError, match="get_scheduled_by_patient_id"):
            repository.get_scheduled_by_patient_id(PATIENT_ID)

    def test_write_failure_becomes_persistence_error(self, connection, repository, make_message):
        connection.fail_next("INSERT INTO scheduled_messages")

        with pytest.raises(PersistenceError, match="insert_scheduled"):
            repository.insert_scheduled(make_message(NOW))

        assert connection._rows("scheduled_messages") == []

    def test_writes_are_committed(self, connection, repository, make_message):
        before = connection.commits
        repository.insert_scheduled(make_message(NOW))
        assert connection.commits == before + 1
