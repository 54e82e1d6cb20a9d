"""
Unit tests for the Twilio message sender.

The Twilio REST client is replaced with a small fake, so these tests check
our request shape and error mapping without network access.
"""

from types import SimpleNamespace

import pytest
import requests
from twilio.base.exceptions import TwilioRestException

from src.core.messaging.models import SendFailureReason, SendOutcome
from src.infrastructure.twilio.client import (
    MockMessageSender,
    TwilioConfig,
    TwilioMessageSender,
    create_message_sender,
)


class FakeMessages:
    def __init__(self, error: Exception = None):
        self.calls: list[dict] = []
        self._error = error

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        return SimpleNamespace(sid="SM0123456789", status="queued")


def _sender(error: Exception = None, **config) -> tuple[TwilioMessageSender, FakeMessages]:
    messages = FakeMessages(error)
    settings = {
        "account_sid": "AC123",
        "auth_token": "secret",
        "from_number": "+15550000000",
    }
    settings.update(config)
    client = SimpleNamespace(messages=messages)
    return TwilioMessageSender(TwilioConfig(**settings), client=client), messages


def _rest_error(status: int, code: int) -> TwilioRestException:
    return TwilioRestException(status, "/Messages.json", msg="rejected", code=code)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestTwilioConfig:

    def test_requires_credentials(self):
        with pytest.raises(ValueError, match="account SID"):
            TwilioConfig(account_sid="", auth_token="secret", from_number="+1555")

    def test_requires_a_sender_identity(self):
        with pytest.raises(ValueError, match="from_number"):
            TwilioConfig(account_sid="AC123", auth_token="secret")

    def test_requires_positive_timeout(self):
        with pytest.raises(ValueError, match="timeout"):
            TwilioConfig(
                account_sid="AC123",
                auth_token="secret",
                from_number="+1555",
                timeout_seconds=0,
            )

    def test_http_timeout_is_applied_to_the_client(self):
        config = TwilioConfig(
            account_sid="AC123",
            auth_token="secret",
            from_number="+15550000000",
            timeout_seconds=4.5,
        )
        sender = TwilioMessageSender(config)
        assert sender._client.http_client.timeout == 4.5


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------

class TestSend:

    def test_success_returns_provider_id(self):
        sender, messages = _sender()

        outcome = sender.send("+15550001111", "Hello")

        assert outcome == SendOutcome.succeeded("SM0123456789")
        assert messages.calls == [
            {"to": "+15550001111", "body": "Hello", "from_": "+15550000000"}
        ]

    def test_messaging_service_takes_precedence(self):
        sender, messages = _sender(messaging_service_sid="MG999")

        sender.send("+15550001111", "Hello")

        assert messages.calls[0]["messaging_service_sid"] == "MG999"
        assert "from_" not in messages.calls[0]

    def test_one_provider_call_per_send(self):
        sender, messages = _sender(error=_rest_error(500, 20500))

        sender.send("+15550001111", "Hello")

        assert len(messages.calls) == 1


class TestErrorMapping:
    """Twilio errors become outcomes; nothing is raised to the dispatcher."""

    @pytest.mark.parametrize("code", [21211, 21408, 21610, 21612, 21614])
    def test_unusable_destinations_are_invalid_numbers(self, code):
        sender, _ = _sender(error=_rest_error(400, code))

        outcome = sender.send("+15550001111", "Hello")

        assert outcome.reason == SendFailureReason.INVALID_NUMBER
        assert not outcome.retryable
        assert outcome.detail.startswith(str(code))

    def test_http_429_is_rate_limited(self):
        sender, _ = _sender(error=_rest_error(429, 20429))

        outcome = sender.send("+15550001111", "Hello")

        assert outcome.reason == SendFailureReason.RATE_LIMITED
        assert outcome.retryable

    def test_queue_overflow_is_rate_limited(self):
        sender, _ = _sender(error=_rest_error(400, 14107))
        assert sender.send("+15550001111", "Hello").reason == SendFailureReason.RATE_LIMITED

    def test_other_rest_errors_are_provider_errors(self):
        sender, _ = _sender(error=_rest_error(401, 20003))

        outcome = sender.send("+15550001111", "Hello")

        assert outcome.reason == SendFailureReason.PROVIDER_ERROR
        assert outcome.retryable

    def test_timeout_is_reported_as_timeout(self):
        sender, _ = _sender(error=requests.exceptions.ReadTimeout("read timed out"))

        outcome = sender.send("+15550001111", "Hello")

        assert outcome.reason == SendFailureReason.TIMEOUT
        assert outcome.retryable

    def test_connection_errors_are_provider_errors(self):
        sender, _ = _sender(error=requests.exceptions.ConnectionError("refused"))
        assert sender.send("+15550001111", "Hello").reason == SendFailureReason.PROVIDER_ERROR


# ---------------------------------------------------------------------------
# Mock Sender and Factory
# ---------------------------------------------------------------------------

class TestMockMessageSender:

    def test_records_and_succeeds_by_default(self):
        sender = MockMessageSender()

        outcome = sender.send("+15550001111", "Hello")

        assert outcome.success
        assert sender.sent == [("+15550001111", "Hello")]

    def test_scripted_outcomes_are_used_in_order(self):
        sender = MockMessageSender()
        failure = SendOutcome.failed(SendFailureReason.TIMEOUT)
        sender.queue_outcomes(failure)

        assert sender.send("+1", "a") == failure
        assert sender.send("+1", "b").success

    def test_invalid_numbers_always_fail(self):
        sender = MockMessageSender(invalid_numbers=["+1999"])
        assert sender.send("+1999", "a").reason == SendFailureReason.INVALID_NUMBER


class TestCreateMessageSender:

    def test_mock_mode_returns_mock(self):
        assert isinstance(create_message_sender(mock_mode=True), MockMessageSender)

    def test_real_mode_requires_config(self):
        with pytest.raises(ValueError, match="config is required"):
            create_message_sender()

    def test_real_mode_builds_twilio_sender(self):
        config = TwilioConfig(account_sid="AC123", auth_token="secret", from_number="+1555")
        assert isinstance(create_message_sender(config=config), TwilioMessageSender)
