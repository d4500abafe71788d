from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Generic, Optional, TypeVar

from loguru import logger

from .errors import QueueFullError, ShipperStateError
from .metrics import ShipperMetrics
from .types import DropReason, OverflowPolicy, SubmitResult

T = TypeVar("T")

OVERFLOW_POLICIES: tuple[str, ...] = ("reject", "evict-oldest")


class EventQueue(Generic[T]):
    """Bounded FIFO shared between producer threads and the sender.

    ``submit`` never blocks longer than ``submit_timeout`` and never raises on
    overflow; the configured policy decides what is lost and every loss is
    counted.
    """

    def __init__(
        self,
        capacity: int,
        *,
        overflow_policy: OverflowPolicy = "evict-oldest",
        submit_timeout: float = 0.0,
        metrics: Optional[ShipperMetrics] = None,
        drop_callback: Optional[Callable[[T, DropReason], None]] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"overflow_policy must be one of {OVERFLOW_POLICIES}")
        if submit_timeout < 0:
            raise ValueError("submit_timeout must be >= 0")

        self._capacity = capacity
        self._overflow = overflow_policy
        self._submit_timeout = submit_timeout
        self._metrics = metrics
        self._drop_cb = drop_callback

        self._items: deque[T] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._closed = False

        if metrics is not None:
            metrics.track_queue(lambda: self.size, capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._items)

    @property
    def overflow_policy(self) -> str:
        return self._overflow

    def __len__(self) -> int:
        return len(self._items)

    def put(self, item: T) -> None:
        """Strict enqueue.

        Raises:
            QueueFullError: reject policy and no room freed within ``submit_timeout``
            ShipperStateError: the queue has been closed
        """
        evicted = None
        with self._lock:
            if self._closed:
                raise ShipperStateError("queue is closed")
            if len(self._items) >= self._capacity:
                if self._overflow == "reject":
                    if not self._wait_for_space():
                        if self._closed:
                            raise ShipperStateError("queue is closed")
                        raise QueueFullError(f"queue at capacity ({self._capacity})")
                else:
                    evicted = self._items.popleft()
            self._items.append(item)
            self._not_empty.notify()

        if self._metrics is not None:
            self._metrics.record_submitted()
        if evicted is not None:
            self._dropped(evicted, DropReason.EVICTED)

    def submit(self, item: T) -> SubmitResult:
        """Enqueue ``item`` according to the overflow policy; never raises on overflow."""
        try:
            self.put(item)
        except QueueFullError:
            self._dropped(item, DropReason.QUEUE_FULL)
            return SubmitResult.DROPPED
        except ShipperStateError:
            self._dropped(item, DropReason.SHUTDOWN)
            return SubmitResult.DROPPED
        return SubmitResult.ACCEPTED

    def _wait_for_space(self) -> bool:
        # caller holds self._lock
        if self._submit_timeout <= 0:
            return False
        deadline = time.monotonic() + self._submit_timeout
        while len(self._items) >= self._capacity and not self._closed:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._not_full.wait(remaining)
        return not self._closed

    def drain(self, timeout: Optional[float] = None) -> Optional[T]:
        """Pop the oldest item, waiting up to ``timeout`` seconds; None if still empty."""
        with self._lock:
            if not self._items and not self._closed and timeout != 0:
                self._not_empty.wait_for(lambda: self._items or self._closed, timeout)
            if not self._items:
                return None
            item = self._items.popleft()
            self._not_full.notify()
            return item

    def clear(self) -> list[T]:
        """Remove and return everything still queued, oldest first."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
            self._not_full.notify_all()
            return items

    def close(self) -> None:
        """Refuse further submissions and wake any waiters."""
        with self._lock:
            self._closed = True
            self._not_empty.notify_all()
            self._not_full.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def _dropped(self, item: T, reason: DropReason) -> None:
        if self._metrics is not None:
            self._metrics.record_dropped(reason)
        if self._drop_cb is not None:
            try:
                self._drop_cb(item, reason)
            except Exception as exc:
                logger.debug(f"Drop callback error (ignored): {type(exc).__name__}: {exc}")
