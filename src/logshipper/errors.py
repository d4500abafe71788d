"""
Exceptions for the log shipper.

Only configuration-time problems ever reach application code. Everything on
the delivery path is caught inside the shipper and surfaced through metrics.
"""

from __future__ import annotations


class LogShipperError(Exception):
    """Base error for the log shipper."""

    pass


class ResolutionError(LogShipperError):
    """Server spec is malformed or endpoint lookup failed."""

    pass


class ShipperConnectionError(LogShipperError, ConnectionError):
    """No live connection could be obtained or the current one broke.

    ``retry_in`` is the number of seconds the caller should wait before asking
    again (non-zero while the Connection Manager is backing off).
    """

    def __init__(self, message: str, retry_in: float = 0.0):
        super().__init__(message)
        self.retry_in = retry_in


class SerializationError(LogShipperError, ValueError):
    """Event cannot be encoded to the wire format. Never retried."""

    pass


class QueueFullError(LogShipperError):
    """Queue at capacity under the reject policy."""

    pass


class ShipperStateError(LogShipperError):
    """Operation not valid in the shipper's current lifecycle state."""

    pass
