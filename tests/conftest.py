"""
Shared fixtures: an in-memory, fault-injecting broker client.

FakeBrokerClient records every connect/close and every published message.
Scripted replies are delivered from a background thread (like a real
broker's delivery thread) once a subscription is made on their queue.
"""

import threading
import time
from typing import Any, Dict, List, Optional

import pytest

from replybus.broker import BrokerClient, Delivery, DeliveryCallback, Session, Subscription
from replybus.envelope import TransportMessage
from replybus.models import ConnectionParameters, Credentials, OutgoingMessage


class FakeSubscription(Subscription):
    def __init__(self, session: "FakeSession", queue: str, callback: DeliveryCallback):
        self.session = session
        self.queue = queue
        self.callback = callback
        self.cancelled = threading.Event()
        self.cancel_calls = 0

    def cancel(self) -> None:
        self.cancel_calls += 1
        self.cancelled.set()


class FakeSession(Session):
    def __init__(self, client: "FakeBrokerClient"):
        self.client = client
        self.closed = False
        self.subscriptions: List[FakeSubscription] = []
        self._threads: List[threading.Thread] = []

    def publish(self, message: TransportMessage) -> None:
        if self.client.fail_publish is not None:
            raise self.client.fail_publish
        self.client.published.append(message)

    def subscribe(self, queue: str, on_delivery: DeliveryCallback) -> FakeSubscription:
        if self.client.fail_subscribe is not None:
            raise self.client.fail_subscribe
        subscription = FakeSubscription(self, queue, on_delivery)
        self.subscriptions.append(subscription)

        script = self.client.replies.get(queue, [])
        if script:
            thread = threading.Thread(target=self._deliver, args=(subscription, script), daemon=True)
            self._threads.append(thread)
            thread.start()
        return subscription

    def _deliver(self, subscription: FakeSubscription, script: List[Any]) -> None:
        for delay, delivery in script:
            if delay:
                time.sleep(delay)
            # A cancelled consumer receives nothing more, as with basic_cancel
            if subscription.cancelled.is_set():
                self.client.dropped.append(delivery)
                continue
            subscription.callback(delivery)
            self.client.delivered.append(delivery)

    def join(self, timeout: float = 5) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def close(self) -> None:
        if self.client.fail_close is not None:
            self.client.close_calls += 1
            raise self.client.fail_close
        if not self.closed:
            self.closed = True
            self.client.close_calls += 1


class FakeBrokerClient(BrokerClient):
    """
    In-memory broker.

    Fault injection: set ``fail_connect``, ``fail_publish``,
    ``fail_subscribe`` or ``fail_close`` to an exception instance.
    Replies: ``add_reply(queue, delivery, delay)`` schedules a delivery
    ``delay`` seconds after the previous one once ``queue`` is subscribed.
    """

    def __init__(self):
        self.connect_calls = 0
        self.close_calls = 0
        self.sessions: List[FakeSession] = []
        self.published: List[TransportMessage] = []
        self.delivered: List[Delivery] = []
        self.dropped: List[Delivery] = []
        self.replies: Dict[str, List[Any]] = {}
        self.fail_connect: Optional[Exception] = None
        self.fail_publish: Optional[Exception] = None
        self.fail_subscribe: Optional[Exception] = None
        self.fail_close: Optional[Exception] = None

    def add_reply(self, queue: str, delivery: Delivery, delay: float = 0.0) -> None:
        self.replies.setdefault(queue, []).append((delay, delivery))

    def connect(self, params: ConnectionParameters) -> FakeSession:
        self.connect_calls += 1
        if self.fail_connect is not None:
            raise self.fail_connect
        session = FakeSession(self)
        self.sessions.append(session)
        return session

    @property
    def session(self) -> FakeSession:
        return self.sessions[-1]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def broker():
    """Fresh fake broker per test."""
    client = FakeBrokerClient()
    yield client
    for session in client.sessions:
        session.join()


@pytest.fixture
def connection():
    return ConnectionParameters(
        host="rabbit.test",
        credentials=Credentials(username="svc", password="secret"),
        use_ssl=False,
    )


@pytest.fixture
def message():
    return OutgoingMessage(queue="orders", payload='{"x":1}')
