"""
ReplyBus — synchronous request/response calls over RabbitMQ.

Publish one message and, optionally, block for a bounded time until the
reply carrying the same correlation id arrives on a response queue.
"""

from .core import SessionLifecycle, SessionState, send_message
from .models import (
    ApplicationProperty,
    CapturedResponse,
    ConnectionParameters,
    Credentials,
    DataPair,
    Outcome,
    OutcomeKind,
    OutgoingMessage,
    ResponseExpectation,
    SendMessageRequest,
)

__all__ = [
    "send_message",
    "SessionLifecycle",
    "SessionState",
    "ApplicationProperty",
    "CapturedResponse",
    "ConnectionParameters",
    "Credentials",
    "DataPair",
    "Outcome",
    "OutcomeKind",
    "OutgoingMessage",
    "ResponseExpectation",
    "SendMessageRequest",
]
