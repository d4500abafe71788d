"""
Prometheus metrics for the log shipper.

Every shipper owns one ShipperMetrics. Metrics register on the registry handed
in by the caller; when none is given a private CollectorRegistry is used so
that building a shipper never touches the process-wide default REGISTRY.
Recording is fire-and-forget and safe to call from any thread.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from prometheus_client import CollectorRegistry, Counter, Enum, Gauge

from .types import ConnectionState, DropReason


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time read of the shipper's counters and gauges."""

    queue_size: int
    queue_capacity: int
    submitted: int
    sent: int
    dropped: dict[str, int] = field(default_factory=dict)
    connection_state: str = ConnectionState.DISCONNECTED.value
    connect_attempts: int = 0
    connect_failures: int = 0
    connects: int = 0
    reconnects: int = 0
    write_failures: int = 0
    resolutions: int = 0
    resolution_failures: int = 0
    last_sent_timestamp: float = 0.0

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())


class ShipperMetrics:
    """Counters and gauges describing delivery health."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, prefix: str = "logshipper"):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.prefix = prefix
        p = prefix

        self.events_submitted = Counter(
            f"{p}_events_submitted",
            "Events accepted into the queue",
            registry=self.registry,
        )
        self.events_sent = Counter(
            f"{p}_events_sent",
            "Events written to the collector",
            registry=self.registry,
        )
        self.events_dropped = Counter(
            f"{p}_events_dropped",
            "Events discarded before delivery",
            ["reason"],
            registry=self.registry,
        )
        self.queue_size = Gauge(
            f"{p}_queue_size",
            "Events currently waiting in the queue",
            registry=self.registry,
        )
        self.queue_capacity = Gauge(
            f"{p}_queue_capacity",
            "Maximum number of queued events",
            registry=self.registry,
        )
        self.connection_state = Enum(
            f"{p}_connection_state",
            "Current state of the collector connection",
            states=[s.value for s in ConnectionState],
            registry=self.registry,
        )
        self.connect_attempts = Counter(
            f"{p}_connect_attempts",
            "TCP connect attempts against resolved endpoints",
            registry=self.registry,
        )
        self.connect_failures = Counter(
            f"{p}_connect_failures",
            "Failed TCP connect attempts",
            ["error"],
            registry=self.registry,
        )
        self.connects = Counter(
            f"{p}_connects",
            "Successful TCP connects",
            registry=self.registry,
        )
        self.reconnects = Counter(
            f"{p}_reconnects",
            "Reconnects requested after a broken or stale connection",
            registry=self.registry,
        )
        self.write_failures = Counter(
            f"{p}_write_failures",
            "Failed writes to an established connection",
            ["error"],
            registry=self.registry,
        )
        self.resolutions = Counter(
            f"{p}_resolutions",
            "Endpoint resolutions performed",
            ["outcome"],
            registry=self.registry,
        )
        self.endpoints_known = Gauge(
            f"{p}_endpoints",
            "Endpoints in the current resolved set",
            registry=self.registry,
        )
        self.last_sent_timestamp = Gauge(
            f"{p}_last_sent_timestamp_seconds",
            "Unix time of the last successfully written event",
            registry=self.registry,
        )

        self.connection_state.state(ConnectionState.DISCONNECTED.value)
        # Pre-create labelled children so snapshots report zeroes.
        for reason in DropReason:
            self.events_dropped.labels(reason=reason.value)
        for outcome in ("success", "failure"):
            self.resolutions.labels(outcome=outcome)

    # --- recorders (hot path) ---

    def record_submitted(self) -> None:
        self.events_submitted.inc()

    def record_sent(self) -> None:
        self.events_sent.inc()
        self.last_sent_timestamp.set(time.time())

    def record_dropped(self, reason: DropReason, count: int = 1) -> None:
        if count > 0:
            self.events_dropped.labels(reason=DropReason(reason).value).inc(count)

    def track_queue(self, size_fn: Callable[[], int], capacity: int) -> None:
        """Sample queue depth lazily at scrape time instead of on every put/get."""
        self.queue_size.set_function(size_fn)
        self.queue_capacity.set(capacity)

    def set_connection_state(self, state: ConnectionState) -> None:
        self.connection_state.state(ConnectionState(state).value)

    def record_connect_attempt(self) -> None:
        self.connect_attempts.inc()

    def record_connect_failure(self, exc: BaseException) -> None:
        self.connect_failures.labels(error=type(exc).__name__).inc()

    def record_connect(self) -> None:
        self.connects.inc()

    def record_reconnect(self) -> None:
        self.reconnects.inc()

    def record_write_failure(self, exc: BaseException) -> None:
        self.write_failures.labels(error=type(exc).__name__).inc()

    def record_resolution(self, ok: bool, endpoints: Optional[int] = None) -> None:
        self.resolutions.labels(outcome="success" if ok else "failure").inc()
        if ok and endpoints is not None:
            self.endpoints_known.set(endpoints)

    # --- reads ---

    def _value(self, name: str, labels: Optional[dict[str, str]] = None) -> float:
        v = self.registry.get_sample_value(f"{self.prefix}_{name}", labels or {})
        return v or 0.0

    def _label_sum(self, counter: Counter, sample_suffix: str = "_total") -> int:
        total = 0.0
        for metric in counter.collect():
            for s in metric.samples:
                if s.name.endswith(sample_suffix):
                    total += s.value
        return int(total)

    def current_connection_state(self) -> str:
        for state in ConnectionState:
            if self._value("connection_state", {f"{self.prefix}_connection_state": state.value}):
                return state.value
        return ConnectionState.DISCONNECTED.value

    def snapshot(self) -> MetricsSnapshot:
        """Read every metric into an immutable snapshot."""
        dropped = {
            reason.value: int(self._value("events_dropped_total", {"reason": reason.value}))
            for reason in DropReason
        }
        return MetricsSnapshot(
            queue_size=int(self._value("queue_size")),
            queue_capacity=int(self._value("queue_capacity")),
            submitted=int(self._value("events_submitted_total")),
            sent=int(self._value("events_sent_total")),
            dropped=dropped,
            connection_state=self.current_connection_state(),
            connect_attempts=int(self._value("connect_attempts_total")),
            connect_failures=self._label_sum(self.connect_failures),
            connects=int(self._value("connects_total")),
            reconnects=int(self._value("reconnects_total")),
            write_failures=self._label_sum(self.write_failures),
            resolutions=int(self._value("resolutions_total", {"outcome": "success"})),
            resolution_failures=int(self._value("resolutions_total", {"outcome": "failure"})),
            last_sent_timestamp=self._value("last_sent_timestamp_seconds"),
        )
