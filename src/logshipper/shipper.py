"""
LogShipper: resolver -> connection manager -> queue -> sender, wired together.

Usage:
    settings = ShipperSettings(server_spec="logstash.internal:5151")
    with LogShipper(settings) as shipper:
        shipper.submit({"message": "hello", "level": "info"})

``submit`` is the only call application code makes on the hot path. It never
raises and never blocks longer than ``submit_timeout``; anything that goes
wrong shows up in the metrics instead.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Optional

from loguru import logger
from prometheus_client import CollectorRegistry

from .connection import ConnectionManager, SocketFactory
from .errors import ShipperStateError
from .metrics import MetricsSnapshot, ShipperMetrics
from .queue import EventQueue
from .resolver import EndpointResolver, SrvLookup
from .sender import SenderLoop, wait_until
from .settings import ShipperSettings
from .types import DropReason, Event, SubmitResult


@dataclass(frozen=True)
class ShipperHealth:
    running: bool
    queue_size: int
    capacity: int
    connection_state: str
    endpoint: Optional[str]
    endpoints_known: int
    sender_state: str


class LogShipper:
    """Best-effort, metrics-observable delivery of structured events to a TCP collector."""

    def __init__(
        self,
        settings: ShipperSettings,
        *,
        registry: Optional[CollectorRegistry] = None,
        srv_lookup: Optional[SrvLookup] = None,
        socket_factory: Optional[SocketFactory] = None,
        health_check: bool = True,
        poll_interval: float = 0.1,
    ):
        self._settings = settings
        self.metrics = ShipperMetrics(registry, prefix=settings.metrics_prefix)

        self._resolver = EndpointResolver(
            settings.server_spec,
            interval=settings.resolution_interval,
            metrics=self.metrics,
            srv_lookup=srv_lookup,
        )
        self._connections = ConnectionManager(
            self._resolver,
            backoff=settings.reconnect_backoff.policy(),
            metrics=self.metrics,
            connect_timeout=settings.connect_timeout,
            write_timeout=settings.write_timeout,
            socket_factory=socket_factory,
            health_check=health_check,
        )
        self._queue: EventQueue[Event] = EventQueue(
            settings.queue_capacity,
            overflow_policy=settings.overflow_policy,
            submit_timeout=settings.submit_timeout,
            metrics=self.metrics,
        )
        self._sender = SenderLoop(
            self._queue,
            self._connections,
            metrics=self.metrics,
            max_write_retries=settings.max_write_retries,
            poll_interval=poll_interval,
        )

        self._op_lock = threading.Lock()
        self._started = False
        self._stopped = False

    @classmethod
    def from_env(cls, **kwargs: Any) -> "LogShipper":
        """Build a shipper from ``LOGSHIPPER_*`` environment settings."""
        return cls(ShipperSettings(), **kwargs)

    @property
    def settings(self) -> ShipperSettings:
        return self._settings

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    # ---------- lifecycle ----------

    def start(self) -> "LogShipper":
        """Resolve endpoints and start the background workers. Idempotent."""
        with self._op_lock:
            if self._stopped:
                raise ShipperStateError("LogShipper cannot be restarted once stopped")
            if self._started:
                return self
            logger.info(
                f"Starting log shipper -> {self._settings.server_spec} "
                f"(capacity={self._queue.capacity}, overflow={self._queue.overflow_policy})"
            )
            self._resolver.start()
            self._sender.start()
            self._started = True
            return self

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop accepting events, drain for up to ``timeout`` seconds, then close.

        Returns True if every accepted event was written.
        """
        with self._op_lock:
            if self._stopped:
                return True
            self._stopped = True
        grace = self._settings.shutdown_timeout if timeout is None else timeout

        self._queue.close()
        drained = self._sender.stop(grace)
        self._resolver.stop(timeout=1.0)
        self._connections.close()
        logger.info(f"Log shipper stopped (drained={drained})")
        return drained

    def __enter__(self) -> "LogShipper":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ---------- submission ----------

    def submit(self, event: Event) -> SubmitResult:
        """Queue one event for delivery. Never raises.

        Events submitted before start() are held in the queue and delivered
        once the shipper starts.
        """
        try:
            if not isinstance(event, Mapping):
                self.metrics.record_dropped(DropReason.INVALID_EVENT)
                return SubmitResult.DROPPED
            # freeze the top level so later mutation by the caller cannot leak in
            return self._queue.submit(MappingProxyType(dict(event)))
        except Exception:
            # called from log sites: count it, never raise
            self.metrics.record_dropped(DropReason.INVALID_EVENT)
            return SubmitResult.DROPPED

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until the queue is empty and the sender is idle."""
        return wait_until(
            lambda: self._queue.size == 0
            and not self._sender.has_pending
            and self._sender.state != "sending",
            timeout,
        )

    def force_disconnect(self) -> None:
        """Drop the collector connection; the sender reconnects on its next write."""
        self._connections.force_disconnect()

    # ---------- observability ----------

    def health(self) -> ShipperHealth:
        endpoint = self._connections.endpoint
        return ShipperHealth(
            running=self.running,
            queue_size=self._queue.size,
            capacity=self._queue.capacity,
            connection_state=self._connections.state.value,
            endpoint=str(endpoint) if endpoint is not None else None,
            endpoints_known=len(self._resolver.endpoints),
            sender_state=self._sender.state,
        )

    def metrics_snapshot(self) -> MetricsSnapshot:
        return self.metrics.snapshot()
