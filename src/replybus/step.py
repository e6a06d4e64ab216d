"""
Workflow step adapter — exposes ``send_message`` as a "Send Message" step.

A workflow host describes steps by metadata (name, category), named inputs
grouped into categories, default input values and outcome scenarios. It then
calls ``run`` with a dict of input values and routes on the returned outcome
name. This module only maps between that shape and ``SendMessageRequest`` /
``Outcome``; all messaging behaviour lives in ``replybus.core``.
"""

import logging
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .broker import BrokerClient
from .core import send_message
from .correlation import WaitCoordinator
from .models import (
    DEFAULT_CONTENT_TYPE,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT_SECONDS,
    ApplicationProperty,
    ConnectionParameters,
    Credentials,
    OutcomeKind,
    OutgoingMessage,
    ResponseExpectation,
    SendMessageRequest,
)

logger = logging.getLogger(__name__)


# Input names as the host sees them
SERVER = "Server"
PORT = "Port"
CREDENTIALS = "Credentials"
USE_SSL = "Use SSL"
QUEUE_NAME = "Outgoing Queue Name"
PAYLOAD = "Payload"
APPLICATION_PROPERTIES = "Application Properties"
CONTENT_TYPE = "Content Type"
RESPONSE_QUEUE_NAME = "Response Queue Name"
CORRELATION_ID = "Correlation ID"
TIMEOUT = "Timeout in Sec"

# Output names
RESULT = "Result"
ERROR_MESSAGE = "Error Message"


class InputDescription(BaseModel):
    """One named input of the step."""

    name: str
    type: str = Field(..., description="Type name understood by the host")
    category: str
    is_list: bool = False


class OutcomeScenario(BaseModel):
    """One exit path of the step and the output it carries, if any."""

    name: str
    output_name: Optional[str] = None
    output_type: Optional[str] = None


@dataclass
class StepResult:
    """What ``run`` hands back to the host."""

    outcome: str
    data: Dict[str, Any] = field(default_factory=dict)


class SendMessageStep:
    """
    "Send Message" step (Integration / RabbitMQ).

    With ``expect_response`` the step asks for a response queue, correlation
    id and timeout, and has a ``Timeout`` exit; ``Done`` then carries the
    reply as ``Result``.
    """

    name = "Send Message"
    category = ("Integration", "RabbitMQ")

    def __init__(
        self,
        expect_response: bool = False,
        client: Optional[BrokerClient] = None,
        coordinator: Optional[WaitCoordinator] = None,
    ):
        self.expect_response = expect_response
        self.client = client
        self.coordinator = coordinator

    def default_inputs(self) -> Dict[str, Any]:
        return {
            PORT: DEFAULT_PORT,
            CONTENT_TYPE: DEFAULT_CONTENT_TYPE,
            USE_SSL: True,
            TIMEOUT: DEFAULT_TIMEOUT_SECONDS,
        }

    def input_data(self) -> List[InputDescription]:
        inputs = [
            InputDescription(name=SERVER, type="str", category="Connection Settings"),
            InputDescription(name=PORT, type="int", category="Connection Settings"),
            InputDescription(name=CREDENTIALS, type="Credentials", category="Connection Settings"),
            InputDescription(name=USE_SSL, type="bool", category="Connection Settings"),
            InputDescription(name=QUEUE_NAME, type="str", category="Outgoing Message"),
            InputDescription(name=PAYLOAD, type="str", category="Outgoing Message"),
            InputDescription(
                name=APPLICATION_PROPERTIES,
                type="ApplicationProperty",
                category="Outgoing Message",
                is_list=True,
            ),
            InputDescription(name=CONTENT_TYPE, type="str", category="Outgoing Message"),
        ]
        if self.expect_response:
            inputs.extend([
                InputDescription(name=RESPONSE_QUEUE_NAME, type="str", category="Response"),
                InputDescription(name=CORRELATION_ID, type="str", category="Response"),
                InputDescription(name=TIMEOUT, type="int", category="Response"),
            ])
        return inputs

    def outcome_scenarios(self) -> List[OutcomeScenario]:
        scenarios = []
        if self.expect_response:
            scenarios.append(OutcomeScenario(
                name=OutcomeKind.DONE.value, output_name=RESULT, output_type="CapturedResponse"
            ))
            scenarios.append(OutcomeScenario(name=OutcomeKind.TIMEOUT.value))
        else:
            scenarios.append(OutcomeScenario(name=OutcomeKind.DONE.value))
        scenarios.append(OutcomeScenario(
            name=OutcomeKind.ERROR.value, output_name=ERROR_MESSAGE, output_type="str"
        ))
        return scenarios

    def build_request(self, data: Dict[str, Any]) -> SendMessageRequest:
        """Map host inputs (defaults applied) onto a SendMessageRequest."""
        values = {**self.default_inputs(), **{k: v for k, v in data.items() if v is not None}}

        credentials = values.get(CREDENTIALS)
        if isinstance(credentials, dict):
            credentials = Credentials(**credentials)

        properties = [
            prop if isinstance(prop, ApplicationProperty) else ApplicationProperty(**prop)
            for prop in values.get(APPLICATION_PROPERTIES) or []
        ]

        connection_kwargs = {
            "host": values.get(SERVER),
            "port": values[PORT],
            "use_ssl": values[USE_SSL],
        }
        if credentials is not None:
            connection_kwargs["credentials"] = credentials

        response = None
        if self.expect_response:
            response_kwargs = {
                "queue": values.get(RESPONSE_QUEUE_NAME),
                "timeout_seconds": values[TIMEOUT],
            }
            if CORRELATION_ID in values:
                response_kwargs["correlation_id"] = values[CORRELATION_ID]
            response = ResponseExpectation(**response_kwargs)

        return SendMessageRequest(
            connection=ConnectionParameters(**connection_kwargs),
            message=OutgoingMessage(
                queue=values.get(QUEUE_NAME),
                payload=values.get(PAYLOAD) or "",
                content_type=values[CONTENT_TYPE],
                properties=properties,
            ),
            response=response,
        )

    def run(self, data: Dict[str, Any]) -> StepResult:
        """Execute the step. Invalid inputs end in ``Error`` like any failure."""
        try:
            request = self.build_request(data)
        except Exception as e:
            logger.error(f"[{self.name}] Invalid step inputs: {e}")
            return StepResult(OutcomeKind.ERROR.value, {ERROR_MESSAGE: traceback.format_exc()})

        outcome = send_message(request, client=self.client, coordinator=self.coordinator)

        if outcome.is_error:
            return StepResult(outcome.kind.value, {ERROR_MESSAGE: outcome.error_message})
        if outcome.is_done and outcome.result is not None:
            return StepResult(outcome.kind.value, {RESULT: outcome.result})
        return StepResult(outcome.kind.value)
