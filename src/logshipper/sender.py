"""
Sender Loop: the single background worker that drains the queue to the wire.

Each iteration takes one event (or the event held back from a failed write),
encodes it, makes sure a connection exists and writes the line. A failed write
keeps the encoded line in hand and retries it first on the next connection;
after ``max_write_retries`` retries it is dropped and counted. Encoding
failures are dropped immediately. Nothing escapes the loop.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from .codec import encode_event
from .connection import ConnectionManager
from .errors import ShipperConnectionError
from .metrics import ShipperMetrics
from .queue import EventQueue
from .types import DropReason, Event


@dataclass
class _Pending:
    line: bytes
    failures: int = 0


class SenderLoop:
    """Background worker: Idle <-> Sending until stopped."""

    def __init__(
        self,
        queue: EventQueue[Event],
        connections: ConnectionManager,
        *,
        metrics: Optional[ShipperMetrics] = None,
        max_write_retries: int = 1,
        poll_interval: float = 0.1,
        encoder: Callable[[Event], bytes] = encode_event,
    ):
        if max_write_retries < 0:
            raise ValueError("max_write_retries must be >= 0")
        self._queue = queue
        self._conns = connections
        self._metrics = metrics
        self._max_retries = max_write_retries
        self._poll = poll_interval
        self._encode = encoder

        self._pending: Optional[_Pending] = None
        self._stopping = threading.Event()  # drain what is left, then exit
        self._abort = threading.Event()  # exit now
        self._thread: Optional[threading.Thread] = None
        self._sending = False

    @property
    def state(self) -> str:
        if self._thread is None or not self._thread.is_alive():
            return "stopped"
        return "sending" if self._sending else "idle"

    @property
    def has_pending(self) -> bool:
        """True while an encoded event is held back for retry."""
        return self._pending is not None

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="logshipper-sender", daemon=True)
        self._thread.start()
        logger.debug("Sender loop started")

    def stop(self, timeout: float = 5.0) -> bool:
        """Drain the queue for up to ``timeout`` seconds, then stop.

        Returns True if everything queued was written before the deadline.
        Events still queued (or held for retry) afterwards are dropped and
        counted with reason ``shutdown``.
        """
        self._stopping.set()
        drained = True
        if self._thread is not None:
            self._thread.join(max(0.0, timeout))
            if self._thread.is_alive():
                drained = False
                self._abort.set()
                self._conns.abort()
                self._thread.join(self._poll + 0.1)
                if self._thread.is_alive():
                    logger.error("Sender loop did not exit within its grace period")
                    # later writes from the stuck thread must fail, not deliver
                    self._conns.close()

        leftover = len(self._queue.clear())
        if self._pending is not None:
            leftover += 1
            self._pending = None
        if leftover:
            drained = False
            logger.error(f"Dropping {leftover} undelivered event(s) at shutdown")
            if self._metrics is not None:
                self._metrics.record_dropped(DropReason.SHUTDOWN, leftover)
        return drained

    def _run(self) -> None:
        while not self._abort.is_set():
            if self._stopping.is_set() and self._pending is None and self._queue.size == 0:
                break
            try:
                self.step()
            except Exception as exc:
                # keep the worker alive whatever happens in one iteration
                logger.exception(f"Sender loop iteration failed: {type(exc).__name__}: {exc}")
                self._wait(self._poll)
        self._sending = False
        logger.debug("Sender loop exited")

    def _wait(self, seconds: float) -> None:
        self._abort.wait(seconds)

    def step(self) -> bool:
        """Run one iteration. Returns True if an event was written."""
        if self._pending is None:
            event = self._queue.drain(timeout=self._poll)
            if event is None:
                self._sending = False
                return False
            try:
                self._pending = _Pending(self._encode(event))
            except Exception as exc:
                logger.warning(f"Dropping event that cannot be encoded: {type(exc).__name__}: {exc}")
                if self._metrics is not None:
                    self._metrics.record_dropped(DropReason.SERIALIZATION)
                return False

        try:
            self._conns.get_connection()
        except ShipperConnectionError as exc:
            self._sending = False
            self._wait(max(exc.retry_in, 0.0) or self._poll)
            return False

        pending = self._pending
        if pending is None:
            # stop() gave up on this event while we were connecting
            self._sending = False
            return False
        self._sending = True
        try:
            self._conns.write(pending.line)
        except ShipperConnectionError as exc:
            pending.failures += 1
            if self._pending is not pending:
                return False  # already counted as a shutdown drop
            if pending.failures > self._max_retries:
                logger.warning(
                    f"Dropping event after {pending.failures} failed write(s): {exc}"
                )
                self._pending = None
                if self._metrics is not None:
                    self._metrics.record_dropped(DropReason.WRITE_FAILED)
            return False

        self._pending = None
        if self._metrics is not None:
            self._metrics.record_sent()
        return True


def wait_until(predicate: Callable[[], bool], timeout: float, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
