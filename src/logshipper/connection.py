"""
Connection Manager: one outbound TCP connection to the collector at a time.

State machine:

    DISCONNECTED -> CONNECTING -> CONNECTED -> (write/health failure) -> DISCONNECTED
    CONNECTING -> FAILED (every candidate refused) -> DISCONNECTED once the backoff elapses

All mutation happens under a single lock so two reconnect attempts can never
race. Only the sender thread calls get_connection()/write() in normal
operation; force_disconnect() and close() may come from any thread. close()
never waits for a connect in progress: it marks the manager closed and the
connecting thread discards whatever socket it opens.

An empty endpoint set, or a round in which every candidate refused, makes the
manager ask the resolver again before giving up.
"""

from __future__ import annotations

import socket
import threading
import time
from typing import Callable, Optional

from loguru import logger

from .errors import ShipperConnectionError
from .metrics import ShipperMetrics
from .policy import BackoffPolicy
from .resolver import EndpointResolver
from .types import ConnectionState, Endpoint

SocketFactory = Callable[..., socket.socket]


def _peer_closed(sock: socket.socket) -> bool:
    """True if the peer has closed or reset the connection.

    The collector never talks back, so pending data means EOF or an error.
    Uses a non-blocking peek rather than select(), which cannot handle
    descriptors numbered above FD_SETSIZE.
    """
    timeout = sock.gettimeout()
    try:
        sock.settimeout(0)
        return sock.recv(1, socket.MSG_PEEK) == b""
    except BlockingIOError:
        return False
    except (OSError, ValueError):
        return True
    finally:
        try:
            sock.settimeout(timeout)
        except OSError as exc:
            logger.debug(f"Ignoring error restoring socket timeout: {exc}")


class ConnectionManager:
    def __init__(
        self,
        resolver: EndpointResolver,
        *,
        backoff: Optional[BackoffPolicy] = None,
        metrics: Optional[ShipperMetrics] = None,
        connect_timeout: float = 5.0,
        write_timeout: float = 10.0,
        socket_factory: Optional[SocketFactory] = None,
        health_check: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._resolver = resolver
        self._backoff = backoff or BackoffPolicy()
        self._metrics = metrics
        self._connect_timeout = connect_timeout
        self._write_timeout = write_timeout
        self._factory = socket_factory or socket.create_connection
        self._health_check = health_check
        self._clock = clock

        self._lock = threading.RLock()
        self._closed = threading.Event()
        self._sock: Optional[socket.socket] = None
        self._endpoint: Optional[Endpoint] = None
        self._last_endpoint: Optional[Endpoint] = None
        self._state = ConnectionState.DISCONNECTED
        self._failed_rounds = 0
        self._retry_at = 0.0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def endpoint(self) -> Optional[Endpoint]:
        """Endpoint of the live connection, if any."""
        return self._endpoint

    @property
    def failed_rounds(self) -> int:
        return self._failed_rounds

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug(f"Connection state {self._state.value} -> {state.value}")
        self._state = state
        if self._metrics is not None:
            self._metrics.set_connection_state(state)

    def get_connection(self) -> socket.socket:
        """Return the live socket, connecting (or reconnecting) if needed.

        Raises:
            ShipperConnectionError: no candidate accepted a connection, the
                manager is still backing off (``retry_in`` says for how long),
                or the manager has been closed
        """
        with self._lock:
            self._check_open()
            if self._sock is not None:
                if not self._resolver.is_current(self._endpoint):
                    logger.info(f"Endpoint {self._endpoint} no longer resolved, reconnecting")
                    self._teardown(ConnectionState.DISCONNECTED)
                    self._record_reconnect()
                elif self._health_check and _peer_closed(self._sock):
                    logger.warning(f"Connection to {self._endpoint} closed by peer, reconnecting")
                    self._teardown(ConnectionState.DISCONNECTED)
                    self._record_reconnect()
                else:
                    return self._sock

            if self._state is ConnectionState.FAILED:
                remaining = self._retry_at - self._clock()
                if remaining > 0:
                    raise ShipperConnectionError("backing off before reconnect", retry_in=remaining)
                self._set_state(ConnectionState.DISCONNECTED)

            return self._connect_any()

    def _check_open(self) -> None:
        # caller holds self._lock
        if self._closed.is_set():
            if self._sock is not None:
                self._teardown(ConnectionState.DISCONNECTED)
            raise ShipperConnectionError("connection manager is closed")

    def _connect_any(self) -> socket.socket:
        if not self._resolver.endpoints:
            self._resolver.refresh()
        candidates = self._resolver.endpoints
        self._set_state(ConnectionState.CONNECTING)
        errors = []
        for endpoint in candidates:
            self._check_open()
            if self._metrics is not None:
                self._metrics.record_connect_attempt()
            try:
                sock = self._factory(endpoint.address, timeout=self._connect_timeout)
            except OSError as exc:
                if self._metrics is not None:
                    self._metrics.record_connect_failure(exc)
                logger.debug(f"Connect to {endpoint} failed: {type(exc).__name__}: {exc}")
                errors.append(f"{endpoint}: {exc}")
                continue

            if self._closed.is_set():
                self._discard(sock)
                self._set_state(ConnectionState.DISCONNECTED)
                raise ShipperConnectionError("connection manager is closed")

            sock.settimeout(self._write_timeout)
            self._sock = sock
            self._endpoint = endpoint
            self._failed_rounds = 0
            self._set_state(ConnectionState.CONNECTED)
            if self._metrics is not None:
                self._metrics.record_connect()
            logger.info(f"Connected to log collector at {endpoint}")
            return sock

        self._failed_rounds += 1
        delay = self._backoff.next_backoff(self._failed_rounds)
        self._retry_at = self._clock() + delay
        self._set_state(ConnectionState.FAILED)
        if not candidates:
            reason = f"no endpoints resolved for {self._resolver.server_spec!r}"
        else:
            reason = "; ".join(errors)
        logger.warning(
            f"All collector endpoints unavailable (round {self._failed_rounds}), "
            f"retrying in {delay:.2f}s: {reason}"
        )
        if candidates and not self._resolver.is_static:
            # next round uses whatever the name points at now
            self._resolver.refresh()
        raise ShipperConnectionError(reason, retry_in=delay)

    def write(self, data: bytes) -> None:
        """Write ``data`` in full to the live connection.

        Raises:
            ShipperConnectionError: not connected, or the write failed (the
                connection is torn down before raising)
        """
        with self._lock:
            self._check_open()
            sock = self._sock
            if sock is None:
                raise ShipperConnectionError("not connected")
            try:
                sock.sendall(data)
            except OSError as exc:
                self.mark_failed(exc)
                raise ShipperConnectionError(f"write to {self._last_endpoint} failed: {exc}") from exc

    def mark_failed(self, exc: BaseException) -> None:
        """Drop the current connection after a write/read error."""
        with self._lock:
            if self._metrics is not None:
                self._metrics.record_write_failure(exc)
            logger.warning(f"Connection to {self._endpoint} failed: {type(exc).__name__}: {exc}")
            self._teardown(ConnectionState.DISCONNECTED)
            self._record_reconnect()

    def force_disconnect(self) -> None:
        """Close the live connection; the next get_connection() reconnects."""
        with self._lock:
            if self._sock is not None:
                logger.info(f"Forcing disconnect from {self._endpoint}")
                self._teardown(ConnectionState.DISCONNECTED)
                self._record_reconnect()

    def abort(self) -> None:
        """Shut the socket down without taking the lock, unblocking an in-flight write."""
        sock = self._sock
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as exc:
                logger.debug(f"Ignoring error shutting down socket: {exc}")

    def close(self) -> None:
        """Close for good. Returns at once even while another thread is connecting."""
        self._closed.set()
        if self._lock.acquire(blocking=False):
            try:
                self._teardown(ConnectionState.DISCONNECTED)
            finally:
                self._lock.release()
        else:
            # the lock holder sees the flag and tears down itself
            self.abort()

    def _teardown(self, state: ConnectionState) -> None:
        sock, self._sock = self._sock, None
        self._last_endpoint, self._endpoint = self._endpoint, None
        if sock is not None:
            self._discard(sock)
        self._set_state(state)

    def _discard(self, sock: socket.socket) -> None:
        try:
            sock.close()
        except OSError as exc:
            logger.debug(f"Ignoring error closing socket: {exc}")

    def _record_reconnect(self) -> None:
        if self._metrics is not None:
            self._metrics.record_reconnect()
