"""
ReplyBus Models — Pydantic schemas for one request/response call.

A call is described by a ``SendMessageRequest`` (where to connect, what to
publish, and optionally where and how long to wait for a reply) and always
ends in exactly one ``Outcome``: Done, Timeout or Error.
"""

from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_PORT = 5672
DEFAULT_CONTENT_TYPE = "application/json"
DEFAULT_TIMEOUT_SECONDS = 10


# =============================================================================
# Connection
# =============================================================================

class Credentials(BaseModel):
    """Username/password pair for the broker."""

    model_config = ConfigDict(frozen=True)

    username: str = Field(..., description="Broker username")
    password: str = Field(..., repr=False, description="Broker password")


class ConnectionParameters(BaseModel):
    """Where and how to connect. Immutable for the lifetime of a call."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(..., min_length=1, description="Broker host name")
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535, description="Broker port")
    credentials: Credentials = Field(
        default_factory=lambda: Credentials(username="guest", password="guest"),
        description="Broker credentials",
    )
    use_ssl: bool = Field(default=True, description="Negotiate TLS")
    virtual_host: str = Field(default="/", description="AMQP virtual host")


# =============================================================================
# Outgoing message
# =============================================================================

class ApplicationProperty(BaseModel):
    """Application-defined key/value pair, sent as an AMQP header."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., min_length=1)
    value: str = Field(default="")


class OutgoingMessage(BaseModel):
    """
    Message to publish.

    Example:
        OutgoingMessage(
            queue="orders",
            payload='{"x": 1}',
            properties=[ApplicationProperty(key="locale", value="en-US")],
        )
    """

    model_config = ConfigDict(frozen=True)

    queue: str = Field(..., min_length=1, description="Target queue (routing key)")
    payload: str = Field(default="", description="Message body as text")
    content_type: str = Field(default=DEFAULT_CONTENT_TYPE, description="MIME type of the payload")
    properties: List[ApplicationProperty] = Field(
        default_factory=list,
        description="Application properties, keys unique (last one wins)",
    )


class ResponseExpectation(BaseModel):
    """
    Present only when the caller waits for a reply.

    ``correlation_id`` is echoed by the replier; when omitted a fresh token is
    generated. An explicitly empty id is rejected.
    """

    model_config = ConfigDict(frozen=True)

    queue: str = Field(..., min_length=1, description="Queue the reply arrives on")
    correlation_id: str = Field(
        default_factory=lambda: uuid4().hex,
        description="Token expected on the reply",
    )
    timeout_seconds: float = Field(
        default=DEFAULT_TIMEOUT_SECONDS,
        gt=0,
        description="How long to wait for the reply",
    )

    @field_validator("correlation_id")
    @classmethod
    def _correlation_id_not_blank(cls, value: str) -> str:
        if not value:
            raise ValueError("correlation_id must not be empty")
        return value


class SendMessageRequest(BaseModel):
    """Everything a single call needs."""

    connection: ConnectionParameters
    message: OutgoingMessage
    response: Optional[ResponseExpectation] = Field(
        None,
        description="Set to wait for a correlated reply",
    )

    @property
    def expects_response(self) -> bool:
        return self.response is not None


# =============================================================================
# Result
# =============================================================================

class DataPair(BaseModel):
    """Decoded header: name and text value."""

    name: str
    value: str


class CapturedResponse(BaseModel):
    """The reply that matched the correlation id, decoded to text."""

    body: Optional[str] = Field(None, description="Decoded body; None when the payload was empty")
    content_type: Optional[str] = Field(None, description="Content type of the reply")
    headers: List[DataPair] = Field(default_factory=list, description="Headers in broker order")

    def header(self, name: str) -> Optional[str]:
        """Return the value of the first header called ``name``."""
        for pair in self.headers:
            if pair.name == name:
                return pair.value
        return None


class OutcomeKind(str, Enum):
    """Terminal state of a call."""
    DONE = "Done"
    TIMEOUT = "Timeout"
    ERROR = "Error"


class Outcome(BaseModel):
    """
    Exactly one per call.

    - Done: publish succeeded; ``result`` is set when a reply was expected
    - Timeout: a reply was expected and none matched before the deadline
    - Error: something failed; ``error_message`` carries the diagnostic text
    """

    kind: OutcomeKind
    result: Optional[CapturedResponse] = None
    error_message: Optional[str] = None
    correlation_id: Optional[str] = Field(None, description="Token used when a reply was expected")
    elapsed_seconds: Optional[float] = Field(None, ge=0)

    @classmethod
    def done(cls, result: Optional[CapturedResponse] = None, **kwargs) -> "Outcome":
        return cls(kind=OutcomeKind.DONE, result=result, **kwargs)

    @classmethod
    def timeout(cls, **kwargs) -> "Outcome":
        return cls(kind=OutcomeKind.TIMEOUT, **kwargs)

    @classmethod
    def error(cls, message: str, **kwargs) -> "Outcome":
        return cls(kind=OutcomeKind.ERROR, error_message=message, **kwargs)

    @property
    def is_done(self) -> bool:
        return self.kind == OutcomeKind.DONE

    @property
    def is_timeout(self) -> bool:
        return self.kind == OutcomeKind.TIMEOUT

    @property
    def is_error(self) -> bool:
        return self.kind == OutcomeKind.ERROR
