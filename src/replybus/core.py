"""
ReplyBus Core — one synchronous request/response call over RabbitMQ.

    outcome = send_message(SendMessageRequest(
        connection=ConnectionParameters(host="rabbit.local", credentials=creds),
        message=OutgoingMessage(queue="orders", payload='{"x": 1}'),
        response=ResponseExpectation(queue="orders.replies", correlation_id="abc-123"),
    ))

Flow: open a session -> build and publish the message -> if a reply is
expected, subscribe to the response queue and wait for the correlated
delivery -> project it -> close the session. ``send_message`` never raises:
every failure becomes an ``Error`` outcome, after the session is closed.
"""

import logging
import time
import traceback
from enum import Enum
from typing import List, Optional

from .broker import BrokerClient, DeliveryCallback, PikaBrokerClient, Session, Subscription
from .correlation import ResponseCorrelator, WaitCoordinator, WaitResult
from .envelope import TransportMessage, build_message
from .exceptions import BrokerConnectionError, PublishError, ReplyBusError, SubscriptionError
from .models import ConnectionParameters, Outcome, SendMessageRequest
from .projector import project_response

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle of the per-call session."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


class SessionLifecycle:
    """
    Scoped broker session: opened on enter, torn down on exit.

    Teardown cancels every subscription made through ``subscribe`` and then
    closes the session, whichever way the block is left. Teardown failures
    are logged and never replace the call's own outcome or exception.
    """

    def __init__(self, client: BrokerClient, params: ConnectionParameters):
        self.client = client
        self.params = params
        self.state = SessionState.IDLE
        self.session: Optional[Session] = None
        self._subscriptions: List[Subscription] = []

    def open(self) -> Session:
        if self.state != SessionState.IDLE:
            raise RuntimeError(f"Session cannot be opened from state {self.state.value}")

        self.state = SessionState.CONNECTING
        try:
            self.session = self.client.connect(self.params)
        except ReplyBusError:
            self.state = SessionState.ERROR
            raise
        except Exception as e:
            self.state = SessionState.ERROR
            raise BrokerConnectionError(
                f"Cannot connect to {self.params.host}:{self.params.port}: {e!r}"
            ) from e
        self.state = SessionState.OPEN
        return self.session

    def publish(self, message: TransportMessage) -> None:
        try:
            self.session.publish(message)
        except ReplyBusError:
            raise
        except Exception as e:
            raise PublishError(f"Publish to queue '{message.queue}' failed: {e!r}") from e

    def subscribe(self, queue: str, on_delivery: DeliveryCallback) -> Subscription:
        try:
            subscription = self.session.subscribe(queue, on_delivery)
        except ReplyBusError:
            raise
        except Exception as e:
            raise SubscriptionError(f"Cannot subscribe to queue '{queue}': {e!r}") from e
        self._subscriptions.append(subscription)
        return subscription

    def close(self) -> None:
        if self.state != SessionState.OPEN:
            return

        while self._subscriptions:
            subscription = self._subscriptions.pop()
            try:
                subscription.cancel()
            except Exception as e:
                logger.warning(f"Failed to cancel subscription during teardown: {e}")
        try:
            self.session.close()
        except Exception as e:
            logger.warning(f"Failed to close session to {self.params.host}: {e}")
        finally:
            self.state = SessionState.CLOSED

    def __enter__(self) -> "SessionLifecycle":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False


def _exchange(lifecycle: SessionLifecycle, request: SendMessageRequest, coordinator: WaitCoordinator) -> Outcome:
    """Publish and, if asked to, wait for the correlated reply."""
    expectation = request.response
    correlation_id = expectation.correlation_id if expectation else None

    lifecycle.publish(build_message(request.message, correlation_id=correlation_id))
    if expectation is None:
        return Outcome.done()

    correlator = ResponseCorrelator(correlation_id)
    subscription = lifecycle.subscribe(expectation.queue, correlator.on_delivery)
    result = coordinator.wait(correlator, expectation.timeout_seconds)
    delivery = correlator.seal()
    subscription.cancel()

    if result is WaitResult.TIMED_OUT:
        return Outcome.timeout(correlation_id=correlation_id)

    logger.info(f"Reply matched on {expectation.queue} (correlation_id={correlation_id})")
    return Outcome.done(project_response(delivery), correlation_id=correlation_id)


def send_message(
    request: SendMessageRequest,
    client: Optional[BrokerClient] = None,
    coordinator: Optional[WaitCoordinator] = None,
) -> Outcome:
    """
    Publish one message and optionally wait for its reply.

    Args:
        request: Connection, message and optional response expectation
        client: Broker client (defaults to PikaBrokerClient from config)
        coordinator: Wait coordinator (defaults to WaitCoordinator())

    Returns:
        Outcome — Done, Timeout or Error; never raises
    """
    started = time.monotonic()
    correlation_id = request.response.correlation_id if request.response else None

    try:
        if client is None:
            client = PikaBrokerClient.from_config()
        if coordinator is None:
            coordinator = WaitCoordinator()

        with SessionLifecycle(client, request.connection) as lifecycle:
            outcome = _exchange(lifecycle, request, coordinator)

    except Exception as e:
        logger.error(f"Send to {request.message.queue} failed: {e}")
        return Outcome.error(
            traceback.format_exc(),
            correlation_id=correlation_id,
            elapsed_seconds=time.monotonic() - started,
        )

    return outcome.model_copy(update={"elapsed_seconds": time.monotonic() - started})
