"""Turn a captured raw delivery into a CapturedResponse."""

from typing import Any, List

from .broker import Delivery
from .exceptions import DecodingError
from .models import CapturedResponse, DataPair


def decode_header_value(name: str, value: Any) -> str:
    """
    Render one AMQP header value as text.

    Raw bytes are decoded strictly as UTF-8; text is kept; other scalar field
    values (numbers, booleans, timestamps) use ``str()``.

    Raises:
        DecodingError: If raw bytes are not valid UTF-8
    """
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodingError(f"Header '{name}' is not valid UTF-8: {e}") from e
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return str(value)


def project_response(delivery: Delivery) -> CapturedResponse:
    """
    Build the structured result from a delivery.

    Args:
        delivery: The matched reply

    Returns:
        CapturedResponse with body (None if empty), content type and headers
        in broker iteration order

    Raises:
        DecodingError: If the body or a header is not valid UTF-8
    """
    body = None
    if delivery.body:
        try:
            body = delivery.body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodingError(f"Reply body is not valid UTF-8: {e}") from e

    headers: List[DataPair] = [
        DataPair(name=name, value=decode_header_value(name, value))
        for name, value in delivery.headers.items()
    ]

    return CapturedResponse(
        body=body,
        content_type=delivery.content_type,
        headers=headers,
    )
