"""
Twilio SMS client wrapper.

This module provides a thin wrapper around the Twilio SDK that:
1. Implements our MessageSender protocol
2. Bounds provider latency with an HTTP timeout
3. Maps Twilio errors onto SendFailureReason values
4. Enables easy mocking for tests

One call to `send` is one provider request. Nothing here retries; the
dispatcher decides what to do with a failed outcome on its next cycle.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import uuid4

import requests
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from src.core.messaging.dispatcher import MessageSender
from src.core.messaging.models import SendFailureReason, SendOutcome


logger = logging.getLogger(__name__)


# Twilio error codes that mean the destination itself is unusable.
# https://www.twilio.com/docs/api/errors
INVALID_DESTINATION_CODES = frozenset({
    21211,  # Invalid 'To' phone number
    21408,  # Permission to send to this region not enabled
    21610,  # Recipient has replied STOP
    21612,  # 'To' number not reachable from this 'From'
    21614,  # 'To' number is not a valid mobile number
})
RATE_LIMIT_CODES = frozenset({20429, 14107})


@dataclass
class TwilioConfig:
    """
    Configuration for the Twilio client.

    Either `from_number` or `messaging_service_sid` must be set; the
    messaging service wins when both are present.
    """
    account_sid: str
    auth_token: str
    from_number: Optional[str] = None
    messaging_service_sid: Optional[str] = None
    timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if not self.account_sid or not self.auth_token:
            raise ValueError("Twilio account SID and auth token are required")
        if not self.from_number and not self.messaging_service_sid:
            raise ValueError("Either from_number or messaging_service_sid is required")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")


class TwilioMessageSender(MessageSender):
    """
    Implementation of MessageSender using Twilio Programmable Messaging.

    This class knows about Twilio's API but not about scheduling. It takes
    a phone number and a body and reports what the provider said.
    """

    def __init__(self, config: TwilioConfig, client: Optional[Client] = None) -> None:
        self._config = config
        self._client = client or Client(
            config.account_sid,
            config.auth_token,
            http_client=TwilioHttpClient(timeout=config.timeout_seconds),
        )

    def send(self, recipient_phone: str, body: str) -> SendOutcome:
        params = {"to": recipient_phone, "body": body}
        if self._config.messaging_service_sid:
            params["messaging_service_sid"] = self._config.messaging_service_sid
        else:
            params["from_"] = self._config.from_number

        try:
            message = self._client.messages.create(**params)
        except TwilioRestException as e:
            reason = self._classify(e)
            logger.warning(
                "Twilio rejected message",
                extra={"code": e.code, "status": e.status, "reason": reason.value}
            )
            return SendOutcome.failed(reason, f"{e.code}: {e.msg}")
        except requests.exceptions.Timeout as e:
            logger.warning(
                "Twilio request timed out",
                extra={"timeout_seconds": self._config.timeout_seconds}
            )
            return SendOutcome.failed(SendFailureReason.TIMEOUT, str(e))
        except requests.exceptions.RequestException as e:
            logger.error("Twilio request failed", extra={"error": str(e)})
            return SendOutcome.failed(SendFailureReason.PROVIDER_ERROR, str(e))

        logger.info(
            "Message accepted by Twilio",
            extra={"provider_message_id": message.sid, "status": message.status}
        )
        return SendOutcome.succeeded(message.sid)

    @staticmethod
    def _classify(error: TwilioRestException) -> SendFailureReason:
        if error.code in INVALID_DESTINATION_CODES:
            return SendFailureReason.INVALID_NUMBER
        if error.status == 429 or error.code in RATE_LIMIT_CODES:
            return SendFailureReason.RATE_LIMITED
        return SendFailureReason.PROVIDER_ERROR


# ---------------------------------------------------------------------------
# Mock Sender for Local Development
# ---------------------------------------------------------------------------

class MockMessageSender(MessageSender):
    """
    In-memory MessageSender.

    Records every send. Outcomes can be scripted with `queue_outcomes`;
    once the script runs out, every send succeeds. Numbers listed in
    `invalid_numbers` always fail as invalid destinations.
    """

    def __init__(self, invalid_numbers: Iterable[str] = ()) -> None:
        self.sent: list[tuple[str, str]] = []
        self._scripted: deque[SendOutcome] = deque()
        self._invalid_numbers = set(invalid_numbers)

        logger.info("Initialized mock message sender (in-memory)")

    def queue_outcomes(self, *outcomes: SendOutcome) -> None:
        self._scripted.extend(outcomes)

    def send(self, recipient_phone: str, body: str) -> SendOutcome:
        self.sent.append((recipient_phone, body))

        if recipient_phone in self._invalid_numbers:
            return SendOutcome.failed(SendFailureReason.INVALID_NUMBER, "mock invalid number")
        if self._scripted:
            return self._scripted.popleft()
        return SendOutcome.succeeded(f"SM{uuid4().hex}")


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_message_sender(
    config: Optional[TwilioConfig] = None,
    mock_mode: bool = False,
) -> MessageSender:
    """
    Create a message sender based on configuration.

    Args:
        config: Twilio configuration (required if not mock_mode)
        mock_mode: If True, return an in-memory sender
    """
    if mock_mode:
        return MockMessageSender()
    if config is None:
        raise ValueError("config is required when not in mock mode")
    return TwilioMessageSender(config)
