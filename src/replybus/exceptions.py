"""
ReplyBus exceptions.

Every failure inside a call is raised as one of these and converted into an
``Error`` outcome by the error boundary in ``replybus.core``.
"""


class ReplyBusError(Exception):
    """Base class for all ReplyBus failures."""


class BrokerConnectionError(ReplyBusError):
    """Session could not be opened (auth, network, TLS) or was lost."""


class PublishError(ReplyBusError):
    """Session is open but the broker rejected or failed the publish."""


class SubscriptionError(ReplyBusError):
    """Could not subscribe to (or cancel) the response queue consumer."""


class DecodingError(ReplyBusError):
    """Payload, body or header bytes are not valid UTF-8 text."""
