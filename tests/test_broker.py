"""
Tests for the pika broker client.

pika.BlockingConnection is replaced by FakeBlockingConnection, which runs
thread-safe callbacks from process_data_events like the real one, so the
session's I/O thread is exercised without a broker.
"""

import queue
import threading
import time
from unittest.mock import MagicMock, PropertyMock, patch

import pika
import pika.exceptions
import pytest

from replybus.broker import Delivery, PikaBrokerClient, PikaSession
from replybus.config import ReplyBusConfig
from replybus.envelope import build_message
from replybus.exceptions import BrokerConnectionError, PublishError, SubscriptionError
from replybus.models import ConnectionParameters, Credentials, OutgoingMessage


class FakeBlockingConnection:
    instances = []

    def __init__(self, parameters):
        self.parameters = parameters
        self.is_open = True
        self.closed = threading.Event()
        self.fail_loop = None
        self._channel = MagicMock(name="channel")
        self._callbacks = queue.Queue()
        FakeBlockingConnection.instances.append(self)

    def channel(self):
        return self._channel

    def add_callback_threadsafe(self, callback):
        self._callbacks.put(callback)

    def process_data_events(self, time_limit=0):
        if self.fail_loop is not None:
            raise self.fail_loop
        try:
            callback = self._callbacks.get(timeout=time_limit)
        except queue.Empty:
            return
        callback()

    def close(self):
        self.is_open = False
        self.closed.set()


@pytest.fixture
def fake_connection():
    FakeBlockingConnection.instances = []
    with patch("replybus.broker.pika.BlockingConnection", FakeBlockingConnection):
        yield FakeBlockingConnection


@pytest.fixture
def session(fake_connection):
    session = PikaSession(pika.ConnectionParameters(host="rabbit.test", port=5672), operation_timeout=2)
    session.open()
    yield session
    session.close()


def connection_of(session_fixture):
    return FakeBlockingConnection.instances[-1]


# =============================================================================
# Connection parameters
# =============================================================================

class TestBuildParameters:

    def test_plain(self):
        client = PikaBrokerClient(ReplyBusConfig.from_dict({}))
        params = client.build_parameters(ConnectionParameters(
            host="rabbit.test",
            port=5671,
            credentials=Credentials(username="svc", password="secret"),
            use_ssl=False,
        ))

        assert params.host == "rabbit.test"
        assert params.port == 5671
        assert params.credentials.username == "svc"
        assert params.credentials.password == "secret"
        assert params.ssl_options is None
        assert params.heartbeat == 300

    def test_tls(self):
        client = PikaBrokerClient(ReplyBusConfig.from_dict({}))
        params = client.build_parameters(ConnectionParameters(host="rabbit.test"))

        assert params.ssl_options is not None
        assert params.ssl_options.server_hostname == "rabbit.test"

    def test_timeouts_from_config(self):
        config = ReplyBusConfig.from_dict({"replybus": {"connection": {
            "heartbeat_seconds": 60,
            "blocked_connection_timeout_seconds": 30,
        }}})
        params = PikaBrokerClient(config).build_parameters(ConnectionParameters(host="h", use_ssl=False))

        assert params.heartbeat == 60
        assert params.blocked_connection_timeout == 30


# =============================================================================
# Session
# =============================================================================

class TestPikaSession:

    def test_open_enables_confirms(self, session):
        connection = connection_of(session)
        assert session.is_open
        connection.channel().confirm_delivery.assert_called_once()

    def test_connect_failure(self, fake_connection):
        with patch(
            "replybus.broker.pika.BlockingConnection",
            side_effect=pika.exceptions.AMQPConnectionError("refused"),
        ):
            session = PikaSession(pika.ConnectionParameters(host="rabbit.test"), operation_timeout=2)
            with pytest.raises(BrokerConnectionError, match="rabbit.test"):
                session.open()
        assert not session.is_open

    def test_client_connect_returns_open_session(self, fake_connection):
        client = PikaBrokerClient(ReplyBusConfig.from_dict({}))
        session = client.connect(ConnectionParameters(host="rabbit.test", use_ssl=False))
        try:
            assert session.is_open
        finally:
            session.close()

    def test_publish_uses_default_exchange(self, session):
        message = build_message(OutgoingMessage(queue="orders", payload="{}"), correlation_id="abc-123")

        session.publish(message)

        channel = connection_of(session).channel()
        channel.basic_publish.assert_called_once_with(
            exchange="",
            routing_key="orders",
            body=b"{}",
            properties=message.properties,
            mandatory=True,
        )

    def test_publish_failure(self, session):
        channel = connection_of(session).channel()
        channel.basic_publish.side_effect = pika.exceptions.ChannelClosedByBroker(404, "NOT_FOUND")

        with pytest.raises(PublishError, match="orders"):
            session.publish(build_message(OutgoingMessage(queue="orders")))

    def test_subscribe_delivers_on_io_thread(self, session):
        channel = connection_of(session).channel()
        channel.basic_consume.return_value = "ctag-1"
        received = []
        threads = []

        def on_delivery(delivery):
            received.append(delivery)
            threads.append(threading.current_thread())

        subscription = session.subscribe("replies", on_delivery)

        assert subscription.consumer_tag == "ctag-1"
        kwargs = channel.basic_consume.call_args.kwargs
        assert kwargs["queue"] == "replies"
        assert kwargs["auto_ack"] is True

        properties = pika.BasicProperties(
            content_type="text/plain",
            correlation_id="abc-123",
            headers={"locale": b"en-US"},
        )
        connection_of(session).add_callback_threadsafe(
            lambda: kwargs["on_message_callback"](channel, MagicMock(), properties, b"pong")
        )
        session._call(lambda: None)

        assert received == [Delivery(
            body=b"pong",
            content_type="text/plain",
            correlation_id="abc-123",
            headers={"locale": b"en-US"},
        )]
        assert threads[0] is not threading.current_thread()

    def test_callback_errors_do_not_kill_the_loop(self, session):
        channel = connection_of(session).channel()

        def on_delivery(delivery):
            raise RuntimeError("handler bug")

        session.subscribe("replies", on_delivery)
        callback = channel.basic_consume.call_args.kwargs["on_message_callback"]
        connection_of(session).add_callback_threadsafe(
            lambda: callback(channel, MagicMock(), pika.BasicProperties(), b"x")
        )
        session._call(lambda: None)

        assert session.is_open

    def test_subscribe_failure(self, session):
        channel = connection_of(session).channel()
        channel.basic_consume.side_effect = pika.exceptions.ChannelClosedByBroker(404, "NOT_FOUND")

        with pytest.raises(SubscriptionError, match="replies"):
            session.subscribe("replies", lambda delivery: None)

    def test_cancel_is_idempotent(self, session):
        channel = connection_of(session).channel()
        channel.basic_consume.return_value = "ctag-1"
        subscription = session.subscribe("replies", lambda delivery: None)

        subscription.cancel()
        subscription.cancel()

        channel.basic_cancel.assert_called_once_with("ctag-1")

    def test_cancel_after_close_is_noop(self, session):
        channel = connection_of(session).channel()
        subscription = session.subscribe("replies", lambda delivery: None)

        session.close()
        subscription.cancel()

        channel.basic_cancel.assert_not_called()

    def test_close_stops_thread_and_closes_connection(self, session):
        connection = connection_of(session)

        session.close()
        session.close()

        assert connection.closed.is_set()
        assert not session.is_open
        assert not session._thread.is_alive()

    def test_lost_connection_fails_later_calls(self, session):
        connection = connection_of(session)
        connection.fail_loop = pika.exceptions.StreamLostError("connection reset")
        session._thread.join(timeout=2)

        assert connection.closed.is_set()
        with pytest.raises(BrokerConnectionError):
            session.publish(build_message(OutgoingMessage(queue="orders")))

    def test_channel_failure_closes_connection(self, fake_connection):
        class ChannelRefused(FakeBlockingConnection):
            def channel(self):
                raise pika.exceptions.ChannelClosedByBroker(403, "ACCESS_REFUSED")

        with patch("replybus.broker.pika.BlockingConnection", ChannelRefused):
            session = PikaSession(pika.ConnectionParameters(host="rabbit.test"), operation_timeout=2)
            with pytest.raises(BrokerConnectionError, match="ACCESS_REFUSED"):
                session.open()
        session._thread.join(timeout=2)

        connection = FakeBlockingConnection.instances[-1]
        assert connection.closed.is_set()
        assert not session._thread.is_alive()

    def test_timed_out_publish_is_not_sent_later(self, fake_connection):
        session = PikaSession(pika.ConnectionParameters(host="rabbit.test"), operation_timeout=0.2)
        session.open()
        connection = connection_of(session)
        release = threading.Event()
        try:
            # Keep the I/O thread busy past the operation timeout
            connection.add_callback_threadsafe(lambda: release.wait(2))

            with pytest.raises(BrokerConnectionError, match="did not answer"):
                session.publish(build_message(OutgoingMessage(queue="orders")))

            release.set()
            session._call(lambda: None)

            connection.channel().basic_publish.assert_not_called()
        finally:
            release.set()
            session.close()

    def test_call_racing_shutdown_fails_fast(self, session):
        session._failure = pika.exceptions.StreamLostError("connection reset")

        started = time.monotonic()
        # is_open was checked before the loop died; the call must not wait out the timeout
        with patch.object(PikaSession, "is_open", new_callable=PropertyMock, return_value=True):
            with pytest.raises(BrokerConnectionError, match="closing"):
                session.publish(build_message(OutgoingMessage(queue="orders")))

        assert time.monotonic() - started < 1
        assert session._pending == set()
        connection_of(session).channel().basic_publish.assert_not_called()


class TestDelivery:

    def test_from_pika_without_properties(self):
        delivery = Delivery.from_pika(None, None)
        assert delivery.body == b""
        assert delivery.correlation_id is None
        assert delivery.headers == {}

    def test_from_pika_without_headers(self):
        delivery = Delivery.from_pika(pika.BasicProperties(correlation_id="c"), b"x")
        assert delivery.headers == {}
        assert delivery.correlation_id == "c"
