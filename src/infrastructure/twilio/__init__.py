"""
Twilio messaging client wrapper.

Implements the MessageSender protocol from core.messaging.dispatcher.
"""

from .client import (
    MockMessageSender,
    TwilioConfig,
    TwilioMessageSender,
    create_message_sender,
)

__all__ = [
    "MockMessageSender",
    "TwilioConfig",
    "TwilioMessageSender",
    "create_message_sender",
]
