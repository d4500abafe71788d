"""
Endpoint resolution.

A server spec is either a literal ``host:port`` (``[v6addr]:port`` for IPv6)
or a bare name looked up as a DNS SRV record. SRV answers are ordered per
RFC 2782: ascending priority, then a weighted random shuffle within each
priority.

The resolver publishes its result as a tuple and replaces the reference
wholesale on every successful refresh, so readers always see a complete set.
A failed refresh keeps the previous set.
"""

from __future__ import annotations

import random
import re
import threading
import time
from typing import Callable, Iterable, Optional, Sequence, Union

import dns.exception
import dns.resolver
from loguru import logger

from .errors import ResolutionError
from .metrics import ShipperMetrics
from .types import Endpoint

SrvLookup = Callable[[str], Sequence[Endpoint]]

_HOSTPORT_RE = re.compile(r"^(?:\[(?P<v6>[0-9A-Fa-f:.%\w]+)\]|(?P<host>[^:\[\]\s]+)):(?P<port>\d+)$")
_NAME_RE = re.compile(r"^[A-Za-z0-9_](?:[A-Za-z0-9_.-]*[A-Za-z0-9_.])?$")


def parse_server_spec(spec: str) -> Union[tuple[str, int], str]:
    """Split a server spec into ``(host, port)`` or return the SRV name.

    Raises:
        ResolutionError: if the spec is empty or syntactically invalid
    """
    if not isinstance(spec, str) or not spec.strip():
        raise ResolutionError("server spec must be a non-empty string")
    spec = spec.strip()

    m = _HOSTPORT_RE.match(spec)
    if m:
        port = int(m.group("port"))
        if not 0 < port < 65536:
            raise ResolutionError(f"port out of range in server spec {spec!r}")
        return (m.group("v6") or m.group("host"), port)

    if ":" in spec or not _NAME_RE.match(spec):
        raise ResolutionError(f"invalid server spec {spec!r}")
    return spec


def order_srv_records(
    records: Iterable[Endpoint], rng: Optional[random.Random] = None
) -> list[Endpoint]:
    """Order SRV targets: lowest priority first, weighted random within a priority."""
    rng = rng or random.Random()
    by_priority: dict[int, list[Endpoint]] = {}
    for r in records:
        by_priority.setdefault(r.priority, []).append(r)

    ordered: list[Endpoint] = []
    for priority in sorted(by_priority):
        # zero-weight entries first so they keep a small chance of selection
        pool = sorted(by_priority[priority], key=lambda e: e.weight != 0)
        while pool:
            total = sum(e.weight for e in pool)
            pick = rng.randint(0, total)
            running = 0
            for i, e in enumerate(pool):
                running += e.weight
                if running >= pick:
                    ordered.append(pool.pop(i))
                    break
    return ordered


def dns_srv_lookup(name: str) -> list[Endpoint]:
    """Query SRV records for ``name`` via dnspython."""
    try:
        answer = dns.resolver.resolve(name, "SRV")
    except dns.exception.DNSException as exc:
        raise ResolutionError(f"SRV lookup for {name!r} failed: {exc}") from exc

    now = time.time()
    endpoints = []
    for rr in answer:
        target = rr.target.to_text(omit_final_dot=True)
        if target in ("", "."):
            # RFC 2782: a lone "." means the service is decidedly not available
            continue
        endpoints.append(
            Endpoint(
                host=target, port=rr.port, priority=rr.priority, weight=rr.weight, discovered_at=now
            )
        )
    return endpoints


class EndpointResolver:
    """Resolves a server spec into an ordered endpoint set and keeps it fresh.

    Literal ``host:port`` specs resolve once and are never refreshed on a
    timer. SRV names are re-queried every ``interval`` seconds on a background
    thread that is independent of the send path.
    """

    def __init__(
        self,
        server_spec: str,
        *,
        interval: float = 60.0,
        metrics: Optional[ShipperMetrics] = None,
        srv_lookup: Optional[SrvLookup] = None,
        rng: Optional[random.Random] = None,
    ):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._spec = server_spec
        self._parsed = parse_server_spec(server_spec)
        self._interval = interval
        self._metrics = metrics
        self._lookup = srv_lookup or dns_srv_lookup
        self._rng = rng or random.Random()

        self._endpoints: tuple[Endpoint, ...] = ()
        self._generation = 0
        self._refresh_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def server_spec(self) -> str:
        return self._spec

    @property
    def is_static(self) -> bool:
        return isinstance(self._parsed, tuple)

    @property
    def endpoints(self) -> tuple[Endpoint, ...]:
        """Current endpoint set, best candidate first."""
        return self._endpoints

    @property
    def generation(self) -> int:
        """Incremented every time a refresh swaps in a new set."""
        return self._generation

    def is_current(self, endpoint: Endpoint) -> bool:
        return endpoint in self._endpoints

    def resolve(self, server_spec: Optional[str] = None) -> tuple[Endpoint, ...]:
        """Resolve a spec (default: the configured one) without touching the stored set."""
        parsed = self._parsed if server_spec is None else parse_server_spec(server_spec)
        if isinstance(parsed, tuple):
            host, port = parsed
            return (Endpoint(host=host, port=port),)

        records = self._lookup(parsed)
        if not records:
            raise ResolutionError(f"no usable SRV targets for {parsed!r}")
        return tuple(order_srv_records(records, self._rng))

    def refresh(self) -> bool:
        """Re-resolve and swap the endpoint set; on failure keep the old one."""
        with self._refresh_lock:
            try:
                endpoints = self.resolve()
            except ResolutionError as exc:
                if self._metrics is not None:
                    self._metrics.record_resolution(False)
                kept = len(self._endpoints)
                logger.warning(f"Resolution of {self._spec!r} failed, keeping {kept} endpoint(s): {exc}")
                return False
            except Exception as exc:
                if self._metrics is not None:
                    self._metrics.record_resolution(False)
                logger.warning(
                    f"Unexpected resolver error for {self._spec!r}: {type(exc).__name__}: {exc}"
                )
                return False

            self._endpoints = endpoints
            self._generation += 1
            if self._metrics is not None:
                self._metrics.record_resolution(True, len(endpoints))
            logger.debug(
                f"Resolved {self._spec!r} -> {', '.join(str(e) for e in endpoints)} "
                f"(gen {self._generation})"
            )
            return True

    # --- background refresh ---

    def start(self) -> None:
        """Resolve once now, then keep refreshing SRV names in the background."""
        self.refresh()
        if self.is_static or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="logshipper-resolver", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self.refresh()
