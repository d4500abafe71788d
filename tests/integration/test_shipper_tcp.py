"""
End-to-end tests: LogShipper -> real TCP collector on localhost.
"""

import json
import threading
import time

import pytest

from logshipper import LogShipper, ShipperSettings, SubmitResult
from logshipper.errors import ResolutionError, ShipperStateError
from logshipper.sender import wait_until
from logshipper.types import DropReason, Endpoint


def settings(spec, **kw):
    kw.setdefault("reconnect_backoff", {"initial": 0.01, "max": 0.05, "jitter": 0})
    kw.setdefault("shutdown_timeout", 2.0)
    return ShipperSettings(server_spec=spec, **kw)


def test_events_round_trip_through_collector(collector, registry):
    """Sent events parse back to exactly the submitted field mapping, in order."""
    events = [
        {"message": "one", "log": {"level": "info"}, "n": 1},
        {"message": "twö", "tags": ["x", "y"], "n": 2},
        {"message": "three", "nested": {"deep": {"ok": True}}, "n": 3},
    ]
    with LogShipper(settings(collector.spec, queue_capacity=5), registry=registry) as shipper:
        for e in events:
            assert shipper.submit(e) is SubmitResult.ACCEPTED
        assert collector.wait_for(3)
        assert shipper.flush(2.0)

    assert [json.loads(line) for line in collector.lines] == events
    snap = shipper.metrics_snapshot()
    assert (snap.submitted, snap.sent, snap.dropped_total) == (3, 3, 0)
    assert snap.connects == 1


def test_submitted_event_is_isolated_from_later_mutation(collector, registry):
    shipper = LogShipper(settings(collector.spec), registry=registry)
    event = {"message": "original"}
    shipper.submit(event)
    event["message"] = "mutated"

    shipper.start()
    assert collector.wait_for(1)
    shipper.stop()
    assert json.loads(collector.lines[0]) == {"message": "original"}


def test_events_before_start_are_delivered(collector, registry):
    shipper = LogShipper(settings(collector.spec), registry=registry)
    shipper.submit({"early": True})
    assert shipper.health().running is False

    with shipper:
        assert collector.wait_for(1)
    assert json.loads(collector.lines[0]) == {"early": True}


def test_submit_never_raises(collector, registry):
    with LogShipper(settings(collector.spec), registry=registry) as shipper:
        assert shipper.submit("not a mapping") is SubmitResult.DROPPED
        assert shipper.submit(None) is SubmitResult.DROPPED
        assert shipper.submit({"fine": 1}) is SubmitResult.ACCEPTED
        assert collector.wait_for(1)

    assert shipper.metrics_snapshot().dropped[DropReason.INVALID_EVENT.value] == 2


def test_submit_after_stop_is_dropped(collector, registry):
    shipper = LogShipper(settings(collector.spec), registry=registry).start()
    shipper.stop()
    assert shipper.submit({"late": 1}) is SubmitResult.DROPPED
    assert shipper.metrics_snapshot().dropped[DropReason.SHUTDOWN.value] == 1
    with pytest.raises(ShipperStateError):
        shipper.start()


def test_unreachable_collector_is_never_fatal(closed_port, registry):
    """With nothing listening, submit keeps returning and stop honours its deadline."""
    shipper = LogShipper(
        settings(f"127.0.0.1:{closed_port}", queue_capacity=3, shutdown_timeout=0.2),
        registry=registry,
    ).start()
    results = [shipper.submit({"n": i}) for i in range(10)]
    assert all(r is SubmitResult.ACCEPTED for r in results)

    assert wait_until(lambda: shipper.metrics_snapshot().connect_failures >= 2, 2.0)
    assert shipper.health().connection_state in ("failed", "disconnected", "connecting")
    assert shipper.stop() is False

    snap = shipper.metrics_snapshot()
    assert snap.dropped[DropReason.EVICTED.value] >= 6
    assert snap.sent == 0
    # every accepted event is accounted for
    assert snap.dropped[DropReason.EVICTED.value] + snap.dropped[DropReason.SHUTDOWN.value] == 10


def test_srv_fallback_to_lower_priority_target(collector, closed_port, registry):
    """Primary target refuses; the shipper falls back to the secondary."""
    def srv(name):
        return [
            Endpoint("127.0.0.1", closed_port, priority=1),
            Endpoint("127.0.0.1", collector.port, priority=2),
        ]

    with LogShipper(settings("_logs._tcp.test"), registry=registry, srv_lookup=srv) as shipper:
        shipper.submit({"via": "srv"})
        assert collector.wait_for(1)
        assert shipper.health().endpoint == f"127.0.0.1:{collector.port}"


def test_failed_resolution_keeps_shipping(collector, registry):
    """A later lookup failure leaves the old endpoint set in use."""
    answers = [
        [Endpoint("127.0.0.1", collector.port)],
    ]
    calls = []

    def srv(name):
        calls.append(name)
        if len(calls) > 1:
            raise ResolutionError("NXDOMAIN")
        return answers[0]

    with LogShipper(
        settings("_logs._tcp.test", resolution_interval=0.02), registry=registry, srv_lookup=srv
    ) as shipper:
        shipper.submit({"n": 1})
        assert collector.wait_for(1)
        assert wait_until(lambda: len(calls) >= 3, 2.0)
        shipper.submit({"n": 2})
        assert collector.wait_for(2)
        assert shipper.health().endpoints_known == 1

    snap = shipper.metrics_snapshot()
    assert snap.resolutions == 1
    assert snap.resolution_failures >= 2


def test_force_disconnect_reconnects(collector, registry):
    with LogShipper(settings(collector.spec), registry=registry) as shipper:
        shipper.submit({"n": 1})
        assert collector.wait_for(1)
        shipper.force_disconnect()
        shipper.submit({"n": 2})
        assert collector.wait_for(2)

    assert collector.connections == 2
    assert shipper.metrics_snapshot().reconnects == 1


def test_concurrent_producers(collector, registry):
    with LogShipper(settings(collector.spec, queue_capacity=2000), registry=registry) as shipper:

        def produce(pid):
            for i in range(50):
                shipper.submit({"pid": pid, "i": i})

        threads = [threading.Thread(target=produce, args=(p,)) for p in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert collector.wait_for(200)

    received = [json.loads(line) for line in collector.lines]
    for pid in range(4):
        assert [e["i"] for e in received if e["pid"] == pid] == list(range(50))


def test_health_reports_components(collector, registry):
    with LogShipper(settings(collector.spec, queue_capacity=7), registry=registry) as shipper:
        shipper.submit({"n": 1})
        assert collector.wait_for(1)
        h = shipper.health()
        assert h.running
        assert h.capacity == 7
        assert h.connection_state == "connected"
        assert h.endpoint == collector.spec
        assert h.sender_state in ("idle", "sending")


def test_startup_lookup_failure_recovers_before_next_interval(collector, registry):
    """DNS that fails at start() and then recovers is picked up on the next connect."""
    calls = []

    def srv(name):
        calls.append(name)
        if len(calls) == 1:
            raise ResolutionError("SERVFAIL")
        return [Endpoint("127.0.0.1", collector.port)]

    with LogShipper(
        settings("_logs._tcp.test", resolution_interval=60), registry=registry, srv_lookup=srv
    ) as shipper:
        shipper.submit({"n": 1})
        assert collector.wait_for(1, timeout=3.0)

    assert len(calls) == 2
    assert shipper.metrics_snapshot().sent == 1


def test_stop_is_bounded_while_connect_hangs(registry):
    entered = threading.Event()
    release = threading.Event()

    def hanging_factory(address, timeout=None):
        entered.set()
        release.wait(5.0)
        raise ConnectionRefusedError("gave up")

    shipper = LogShipper(
        settings("collector.invalid:5151"), registry=registry, socket_factory=hanging_factory
    ).start()
    try:
        shipper.submit({"n": 1})
        assert entered.wait(2.0)

        started = time.monotonic()
        assert shipper.stop(timeout=0.1) is False
        assert time.monotonic() - started < 1.5
    finally:
        release.set()

    snap = shipper.metrics_snapshot()
    assert snap.dropped[DropReason.SHUTDOWN.value] == 1
    assert snap.sent == 0
