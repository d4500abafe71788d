"""
Logging adapters that forward records to a LogShipper.

Nothing is patched: wire the adapter in explicitly.

    shipper = LogShipper(settings).start()
    logger.add(LoguruSink(shipper))                        # loguru
    logging.getLogger().addHandler(ShipperHandler(shipper))  # stdlib

A formatter turns a record into an event mapping. Formatter errors drop the
record (counted as ``formatter_error``) and never reach the log call site.

Records emitted by logshipper itself are never forwarded: the sender and
resolver threads log every connect failure and state change, and shipping
those would feed the queue from its own failures.

``permitted_names`` restricts debug-level output to an allow-list of logger
names; records at debug level or below from any other logger are dropped
before formatting. Higher levels always pass.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional

from .shipper import LogShipper
from .types import DropReason, SubmitResult

LoguruFormatter = Callable[[Mapping[str, Any]], Mapping[str, Any]]
RecordFormatter = Callable[[logging.LogRecord], Mapping[str, Any]]

_PACKAGE = __name__.split(".")[0]

_local = threading.local()


def is_shipper_logger(name: Optional[str]) -> bool:
    """True for loggers belonging to the logshipper package itself."""
    if not name:
        return False
    return name == _PACKAGE or name.startswith(_PACKAGE + ".")


class DebugNameFilter(logging.Filter):
    """Pass debug-level records only from the named loggers.

    Works as a stdlib ``logging.Filter`` and as a loguru ``filter=`` callable.
    Names match exactly.
    """

    def __init__(self, permitted_names: Iterable[str]):
        super().__init__()
        if isinstance(permitted_names, str):
            raise TypeError("permitted_names must be a collection of logger names, not a str")
        self.permitted_names = frozenset(permitted_names)

    def allows(self, levelno: int, name: Optional[str]) -> bool:
        return levelno > logging.DEBUG or name in self.permitted_names

    def filter(self, record: logging.LogRecord) -> bool:
        return self.allows(record.levelno, record.name)

    def __call__(self, record: Mapping[str, Any]) -> bool:
        return self.allows(record["level"].no, record["name"])


def _utc_iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def default_loguru_formatter(record: Mapping[str, Any]) -> dict[str, Any]:
    event: dict[str, Any] = {
        "@timestamp": _utc_iso(record["time"]),
        "message": record["message"],
        "level": record["level"].name.lower(),
        "logger": record["name"],
    }
    if record.get("extra"):
        event["extra"] = dict(record["extra"])
    return event


def default_record_formatter(record: logging.LogRecord) -> dict[str, Any]:
    return {
        "@timestamp": _utc_iso(datetime.fromtimestamp(record.created, tz=timezone.utc)),
        "message": record.getMessage(),
        "level": record.levelname.lower(),
        "logger": record.name,
    }


def _forward(shipper: LogShipper, build: Callable[[], Mapping[str, Any]]) -> Optional[SubmitResult]:
    # A record emitted while we are already forwarding on this thread would
    # loop straight back here; skip it.
    if getattr(_local, "active", False):
        return None
    _local.active = True
    try:
        try:
            event = build()
        except Exception:
            shipper.metrics.record_dropped(DropReason.FORMATTER_ERROR)
            return SubmitResult.DROPPED
        return shipper.submit(event)
    finally:
        _local.active = False


class LoguruSink:
    """Callable sink for ``loguru.logger.add``."""

    def __init__(
        self,
        shipper: LogShipper,
        formatter: Optional[LoguruFormatter] = None,
        permitted_names: Optional[Iterable[str]] = None,
    ):
        self._shipper = shipper
        self._formatter = formatter or default_loguru_formatter
        self._debug_filter = DebugNameFilter(permitted_names) if permitted_names is not None else None

    def __call__(self, message) -> Optional[SubmitResult]:
        record = message.record
        if is_shipper_logger(record["name"]):
            return None
        if self._debug_filter is not None and not self._debug_filter(record):
            return None
        return _forward(self._shipper, lambda: self._formatter(record))


class ShipperHandler(logging.Handler):
    """Stdlib ``logging.Handler`` forwarding each record to a LogShipper."""

    def __init__(
        self,
        shipper: LogShipper,
        formatter: Optional[RecordFormatter] = None,
        level: int = logging.NOTSET,
        permitted_names: Optional[Iterable[str]] = None,
    ):
        super().__init__(level)
        self._shipper = shipper
        self._event_formatter = formatter or default_record_formatter
        if permitted_names is not None:
            self.addFilter(DebugNameFilter(permitted_names))

    def emit(self, record: logging.LogRecord) -> None:
        if is_shipper_logger(record.name):
            return
        _forward(self._shipper, lambda: self._event_formatter(record))
