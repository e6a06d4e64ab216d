"""
Broker client — the only module that talks to RabbitMQ.

The rest of ReplyBus depends on the small ``BrokerClient`` / ``Session`` /
``Subscription`` interface below; ``PikaBrokerClient`` implements it with
pika (AMQP 0-9-1).

pika's BlockingConnection is not thread-safe, so each ``PikaSession`` owns
its connection on a dedicated I/O thread. That thread pumps
``process_data_events`` (and therefore invokes consumer callbacks), while
calls from the caller's thread are marshalled onto it with
``add_callback_threadsafe`` and awaited through a Future.
"""

import concurrent.futures
import logging
import ssl
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

import pika

from .config import ReplyBusConfig, DEFAULT_CONFIG_PATH
from .envelope import TransportMessage
from .exceptions import BrokerConnectionError, PublishError, ReplyBusError, SubscriptionError
from .models import ConnectionParameters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delivery:
    """A message received from a queue, as handed to subscription callbacks."""

    body: bytes = b""
    content_type: Optional[str] = None
    correlation_id: Optional[str] = None
    headers: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_pika(cls, properties: Optional[pika.BasicProperties], body: Optional[bytes]) -> "Delivery":
        if properties is None:
            return cls(body=body or b"")
        return cls(
            body=body or b"",
            content_type=properties.content_type,
            correlation_id=properties.correlation_id,
            headers=dict(properties.headers or {}),
        )


DeliveryCallback = Callable[[Delivery], None]


class Subscription(ABC):
    """An active consumer on a queue."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop receiving deliveries. Calling it twice is a no-op."""


class Session(ABC):
    """A connection/channel to the broker, scoped to one call."""

    @abstractmethod
    def publish(self, message: TransportMessage) -> None:
        """Publish to ``message.queue`` through the default exchange."""

    @abstractmethod
    def subscribe(self, queue: str, on_delivery: DeliveryCallback) -> Subscription:
        """Consume ``queue`` (auto-ack); ``on_delivery`` runs on the broker thread."""

    @abstractmethod
    def close(self) -> None:
        """Close the session. Calling it twice is a no-op."""


class BrokerClient(ABC):
    """Factory for sessions."""

    @abstractmethod
    def connect(self, params: ConnectionParameters) -> Session:
        """Open a session or raise BrokerConnectionError."""


# =============================================================================
# pika implementation
# =============================================================================

class PikaBrokerClient(BrokerClient):
    """
    Opens one PikaSession per call.

    Usage:
        client = PikaBrokerClient.from_config()
        session = client.connect(params)
    """

    def __init__(self, config: Optional[ReplyBusConfig] = None):
        self.config = config or ReplyBusConfig()

    @classmethod
    def from_config(cls, config_path: Optional[str] = DEFAULT_CONFIG_PATH) -> "PikaBrokerClient":
        return cls(ReplyBusConfig(config_path))

    def build_parameters(self, params: ConnectionParameters) -> pika.ConnectionParameters:
        """Translate ConnectionParameters into pika's, with timeouts from config."""
        credentials = pika.PlainCredentials(
            params.credentials.username,
            params.credentials.password,
        )
        ssl_options = None
        if params.use_ssl:
            context = ssl.create_default_context()
            ssl_options = pika.SSLOptions(context, server_hostname=params.host)

        return pika.ConnectionParameters(
            host=params.host,
            port=params.port,
            virtual_host=params.virtual_host,
            credentials=credentials,
            ssl_options=ssl_options,
            heartbeat=self.config.connection_heartbeat_seconds,
            blocked_connection_timeout=self.config.connection_blocked_timeout_seconds,
            socket_timeout=self.config.connection_socket_timeout_seconds,
        )

    def connect(self, params: ConnectionParameters) -> "PikaSession":
        session = PikaSession(
            self.build_parameters(params),
            operation_timeout=self.config.operation_timeout_seconds,
        )
        session.open()
        return session


class PikaSubscription(Subscription):
    """Consumer registered on a PikaSession."""

    def __init__(self, session: "PikaSession", queue: str, consumer_tag: str):
        self._session = session
        self.queue = queue
        self.consumer_tag = consumer_tag
        self._cancelled = False

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._session._cancel_consumer(self.consumer_tag)
        logger.info(f"Cancelled consumer {self.consumer_tag} on {self.queue}")


class PikaSession(Session):
    """pika BlockingConnection + channel driven by a private I/O thread."""

    poll_interval = 0.1

    def __init__(self, parameters: pika.ConnectionParameters, operation_timeout: float = 30):
        self._parameters = parameters
        self._operation_timeout = operation_timeout
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel = None

        self._opened: concurrent.futures.Future = concurrent.futures.Future()
        self._closing = threading.Event()
        self._failure: Optional[BaseException] = None
        self._pending: Set[concurrent.futures.Future] = set()
        self._lock = threading.Lock()

        self._thread = threading.Thread(
            target=self._run,
            name=f"replybus-io-{parameters.host}:{parameters.port}",
            daemon=True,
        )

    @property
    def address(self) -> str:
        return f"{self._parameters.host}:{self._parameters.port}"

    @property
    def is_open(self) -> bool:
        return (
            self._opened.done()
            and self._opened.exception() is None
            and not self._closing.is_set()
            and self._thread.is_alive()
        )

    def open(self) -> None:
        """Start the I/O thread and wait until the channel is ready."""
        self._thread.start()
        try:
            self._opened.result(timeout=self._operation_timeout)
        except concurrent.futures.TimeoutError as e:
            self._closing.set()
            raise BrokerConnectionError(
                f"Timed out after {self._operation_timeout}s connecting to {self.address}"
            ) from e
        except Exception as e:
            raise BrokerConnectionError(f"Cannot connect to RabbitMQ at {self.address}: {e!r}") from e
        logger.info(f"Connected to RabbitMQ at {self.address}")

    def publish(self, message: TransportMessage) -> None:
        try:
            self._call(
                self._channel.basic_publish,
                exchange="",
                routing_key=message.queue,
                body=message.body,
                properties=message.properties,
                mandatory=True,
            )
        except ReplyBusError:
            raise
        except Exception as e:
            raise PublishError(f"Publish to queue '{message.queue}' failed: {e!r}") from e
        logger.info(f"Published to {message.queue} ({len(message.body)} bytes)")

    def subscribe(self, queue: str, on_delivery: DeliveryCallback) -> PikaSubscription:
        def on_message(channel, method, properties, body):
            try:
                on_delivery(Delivery.from_pika(properties, body))
            except Exception as e:
                logger.error(f"Error handling delivery from {queue}: {e}")

        try:
            consumer_tag = self._call(
                self._channel.basic_consume,
                queue=queue,
                on_message_callback=on_message,
                auto_ack=True,
            )
        except ReplyBusError:
            raise
        except Exception as e:
            raise SubscriptionError(f"Cannot subscribe to queue '{queue}': {e!r}") from e
        logger.info(f"Subscribed to {queue} (consumer={consumer_tag})")
        return PikaSubscription(self, queue, consumer_tag)

    def close(self) -> None:
        if self._closing.is_set():
            return
        self._closing.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=self._operation_timeout)
        logger.info(f"Disconnected from RabbitMQ at {self.address}")

    def _cancel_consumer(self, consumer_tag: str) -> None:
        if not self.is_open:
            return
        try:
            self._call(self._channel.basic_cancel, consumer_tag)
        except ReplyBusError:
            raise
        except Exception as e:
            raise SubscriptionError(f"Cannot cancel consumer {consumer_tag}: {e!r}") from e

    @property
    def _stopping(self) -> bool:
        """I/O loop is exiting or gone; anything queued now would never run."""
        return self._closing.is_set() or self._failure is not None or not self._thread.is_alive()

    def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``func`` on the I/O thread and return its result."""
        if not self.is_open:
            raise BrokerConnectionError(f"Connection to {self.address} is not open: {self._failure!r}")

        future: concurrent.futures.Future = concurrent.futures.Future()

        def task() -> None:
            # Done means failed by _shutdown or cancelled by a timed-out caller
            if future.done() or not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(func(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)

        with self._lock:
            self._pending.add(future)
        try:
            # _shutdown may have taken its snapshot before the add above
            if self._stopping:
                raise BrokerConnectionError(f"Connection to {self.address} is closing: {self._failure!r}")
            self._connection.add_callback_threadsafe(task)
            return future.result(timeout=self._operation_timeout)
        except concurrent.futures.TimeoutError as e:
            started = not future.cancel()
            raise BrokerConnectionError(
                f"Broker at {self.address} did not answer within {self._operation_timeout}s"
                + (" (operation already started)" if started else " (operation skipped)")
            ) from e
        finally:
            with self._lock:
                self._pending.discard(future)

    def _run(self) -> None:
        try:
            self._connection = pika.BlockingConnection(self._parameters)
            self._channel = self._connection.channel()
            # Publisher confirms + mandatory turn rejected/unroutable publishes into errors
            self._channel.confirm_delivery()
        except Exception as e:
            self._opened.set_exception(e)
            self._shutdown()
            return
        self._opened.set_result(True)

        try:
            while not self._closing.is_set():
                self._connection.process_data_events(time_limit=self.poll_interval)
        except Exception as e:
            self._failure = e
            logger.error(f"RabbitMQ I/O loop for {self.address} stopped: {e!r}")
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        """Fail outstanding calls and close the connection (I/O thread only)."""
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            if future.done():
                continue
            try:
                future.set_exception(
                    BrokerConnectionError(f"Connection to {self.address} closed: {self._failure!r}")
                )
            except concurrent.futures.InvalidStateError:
                # cancelled by its timed-out caller in the meantime
                pass

        if self._connection is not None and self._connection.is_open:
            try:
                self._connection.close()
            except Exception as e:
                logger.warning(f"Failed to close connection to {self.address}: {e}")
