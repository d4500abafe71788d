"""
Pytest configuration and fixtures for logshipper.

Provides an in-process TCP collector, fake sockets for failure injection and
isolated Prometheus registries.
"""

import socket
import socketserver
import threading

import pytest
from prometheus_client import CollectorRegistry

from logshipper.metrics import ShipperMetrics


class _Collector(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self):
        self.lines: list[bytes] = []
        self.connections = 0
        self._cond = threading.Condition()
        super().__init__(("127.0.0.1", 0), _CollectorHandler)

    @property
    def spec(self) -> str:
        host, port = self.server_address[:2]
        return f"{host}:{port}"

    @property
    def port(self) -> int:
        return self.server_address[1]

    def add(self, line: bytes) -> None:
        with self._cond:
            self.lines.append(line)
            self._cond.notify_all()

    def wait_for(self, n: int, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.lines) >= n, timeout)


class _CollectorHandler(socketserver.StreamRequestHandler):
    def handle(self):
        self.server.connections += 1
        for line in self.rfile:
            self.server.add(line)


@pytest.fixture
def collector():
    """Line-collecting TCP server on an ephemeral localhost port."""
    server = _Collector()
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def closed_port():
    """A localhost port with nothing listening on it."""
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def registry():
    """Fresh Prometheus registry per test."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return ShipperMetrics(registry)


class FakeSocket:
    """Socket stand-in recording writes; fails the writes listed in ``fail_on``."""

    def __init__(self, address, fail_on=(), log=None):
        self.address = address
        self.fail_on = set(fail_on)
        self.writes = 0
        self.sent: list[bytes] = []
        self.closed = False
        self.log = log if log is not None else []

    def settimeout(self, t):
        self.timeout = t

    def sendall(self, data):
        self.writes += 1
        if self.writes in self.fail_on:
            raise ConnectionResetError("connection reset by peer")
        self.sent.append(data)
        self.log.append((self.address, data))

    def shutdown(self, how):
        pass

    def close(self):
        self.closed = True


class FakeNetwork:
    """socket_factory double: refuses ``down`` addresses, scripts write failures per connect."""

    def __init__(self, down=(), write_failures=None):
        self.down = set(down)
        # n-th successful connect (1-based) -> write numbers that fail on that socket
        self.write_failures = write_failures or {}
        self.attempts: list[tuple[str, int]] = []
        self.sockets: list[FakeSocket] = []
        self.delivered: list[tuple[tuple[str, int], bytes]] = []

    def __call__(self, address, timeout=None):
        self.attempts.append(address)
        if address in self.down:
            raise ConnectionRefusedError(f"refused {address}")
        n = len(self.sockets) + 1
        sock = FakeSocket(address, self.write_failures.get(n, ()), self.delivered)
        self.sockets.append(sock)
        return sock

    @property
    def lines(self) -> list[bytes]:
        return [data for _, data in self.delivered]


@pytest.fixture
def fake_network():
    return FakeNetwork
