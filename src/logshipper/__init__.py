"""
logshipper: best-effort delivery of structured log events to a TCP collector.

Events are queued in-process, written as newline-delimited JSON over a single
TCP connection, and every drop or failure is counted in Prometheus metrics.

Usage:
    from logshipper import LogShipper, ShipperSettings, LoguruSink
    from loguru import logger

    shipper = LogShipper(ShipperSettings(server_spec="_logstash._tcp.example.com")).start()
    logger.add(LoguruSink(shipper))
"""

from .adapters import DebugNameFilter, LoguruSink, ShipperHandler
from .codec import encode_event
from .connection import ConnectionManager
from .errors import (
    LogShipperError,
    QueueFullError,
    ResolutionError,
    SerializationError,
    ShipperConnectionError,
    ShipperStateError,
)
from .metrics import MetricsSnapshot, ShipperMetrics
from .policy import BackoffPolicy
from .queue import EventQueue
from .resolver import EndpointResolver, order_srv_records, parse_server_spec
from .sender import SenderLoop
from .settings import BackoffSettings, ShipperSettings, get_settings
from .shipper import LogShipper, ShipperHealth
from .types import ConnectionState, DropReason, Endpoint, SubmitResult

__version__ = "1.0.0"
__all__ = [
    # runtime
    "LogShipper",
    "ShipperHealth",
    "ShipperSettings",
    "BackoffSettings",
    "get_settings",
    # adapters
    "LoguruSink",
    "ShipperHandler",
    "DebugNameFilter",
    # components
    "EndpointResolver",
    "ConnectionManager",
    "EventQueue",
    "SenderLoop",
    "ShipperMetrics",
    "MetricsSnapshot",
    "BackoffPolicy",
    "encode_event",
    "order_srv_records",
    "parse_server_spec",
    # types
    "ConnectionState",
    "DropReason",
    "Endpoint",
    "SubmitResult",
    # errors
    "LogShipperError",
    "ResolutionError",
    "ShipperConnectionError",
    "SerializationError",
    "QueueFullError",
    "ShipperStateError",
]
