"""
Message envelope — turns an OutgoingMessage into what goes on the wire.

Publishing uses the default exchange ("") with the queue name as routing
key, so the envelope only needs the queue, the encoded body and the AMQP
properties.
"""

from dataclasses import dataclass
from typing import Dict, Optional

import pika

from .exceptions import DecodingError
from .models import OutgoingMessage


@dataclass(frozen=True)
class TransportMessage:
    """Transport-ready message."""

    queue: str
    body: bytes
    properties: pika.BasicProperties


def build_headers(message: OutgoingMessage) -> Optional[Dict[str, str]]:
    """Application properties as an AMQP header table (last key wins)."""
    if not message.properties:
        return None
    headers: Dict[str, str] = {}
    for prop in message.properties:
        headers[prop.key] = prop.value
    return headers


def build_message(
    message: OutgoingMessage,
    correlation_id: Optional[str] = None,
) -> TransportMessage:
    """
    Build the transport message.

    Args:
        message: What to publish
        correlation_id: Set only when a reply is expected

    Returns:
        TransportMessage

    Raises:
        DecodingError: If the payload cannot be encoded as UTF-8
    """
    try:
        body = message.payload.encode("utf-8")
    except UnicodeEncodeError as e:
        raise DecodingError(f"Payload for queue '{message.queue}' is not valid text: {e}") from e

    properties = pika.BasicProperties(
        content_type=message.content_type,
        headers=build_headers(message),
        correlation_id=correlation_id,
    )
    return TransportMessage(queue=message.queue, body=body, properties=properties)
