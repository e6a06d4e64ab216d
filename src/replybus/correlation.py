"""
Reply correlation and bounded waiting.

``ResponseCorrelator.on_delivery`` runs on the broker's delivery thread and
captures the first delivery whose correlation id equals the expected one.
``WaitCoordinator.wait`` runs on the caller's thread and blocks until that
happens or the deadline passes. The capture slot and the completion event
are the only state shared between the two threads.
"""

import logging
import threading
import time
from enum import Enum
from typing import Optional

from .broker import Delivery
from .models import DEFAULT_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class ResponseCorrelator:
    """Single-slot, first-match-wins hand-off of a correlated reply."""

    def __init__(self, correlation_id: str):
        self.correlation_id = correlation_id
        self._lock = threading.Lock()
        self._matched = threading.Event()
        self._captured: Optional[Delivery] = None
        self._sealed = False
        self.ignored = 0

    @property
    def matched(self) -> threading.Event:
        """Set once, when the first matching delivery is captured."""
        return self._matched

    def on_delivery(self, delivery: Delivery) -> None:
        """Subscription callback."""
        if delivery.correlation_id != self.correlation_id:
            with self._lock:
                self.ignored += 1
            logger.debug(
                f"Ignoring delivery with correlation_id={delivery.correlation_id!r} "
                f"(expecting {self.correlation_id!r})"
            )
            return

        with self._lock:
            if self._sealed or self._captured is not None:
                return
            self._captured = delivery
            self._matched.set()

    def seal(self) -> Optional[Delivery]:
        """
        Stop capturing and return what was captured, if anything.

        After this returns no delivery can be captured, so a reply arriving
        after the deadline is never observed.
        """
        with self._lock:
            self._sealed = True
            return self._captured


class WaitResult(str, Enum):
    """How a wait ended."""
    MATCHED = "matched"
    TIMED_OUT = "timed_out"


class WaitCoordinator:
    """Blocks the caller until the correlator matches or the timeout elapses."""

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.default_timeout = default_timeout

    def wait(self, correlator: ResponseCorrelator, timeout: Optional[float] = None) -> WaitResult:
        if timeout is None:
            timeout = self.default_timeout

        started = time.monotonic()
        if correlator.matched.wait(timeout):
            return WaitResult.MATCHED

        # A match may land between the wait expiring and the seal; it still
        # arrived before the seal, so it counts.
        if correlator.seal() is not None:
            return WaitResult.MATCHED

        logger.info(
            f"No reply with correlation_id={correlator.correlation_id} after "
            f"{time.monotonic() - started:.2f}s ({correlator.ignored} unrelated deliveries)"
        )
        return WaitResult.TIMED_OUT
