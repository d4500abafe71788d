"""
Core data types for the log shipper.

Endpoints are immutable and compared by address only, so a re-resolved set can
be checked for "is my current endpoint still listed" without caring about
discovery metadata.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping

Event = Mapping[str, Any]

OverflowPolicy = Literal["reject", "evict-oldest"]


class ConnectionState(str, Enum):
    """Connection Manager states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class SubmitResult(str, Enum):
    """Outcome of a single submission."""

    ACCEPTED = "accepted"
    DROPPED = "dropped"


class DropReason(str, Enum):
    """Label values for the dropped-events counter."""

    QUEUE_FULL = "queue_full"  # rejected under the "reject" policy
    EVICTED = "evicted"  # oldest entry discarded under "evict-oldest"
    SERIALIZATION = "serialization"
    WRITE_FAILED = "write_failed"
    SHUTDOWN = "shutdown"
    INVALID_EVENT = "invalid_event"
    FORMATTER_ERROR = "formatter_error"


@dataclass(frozen=True)
class Endpoint:
    """A resolved (host, port) delivery candidate.

    Attributes:
        host: Hostname or IP literal
        port: TCP port
        priority: SRV priority (lower is preferred); 0 for literal specs
        weight: SRV weight used for tie-breaking within a priority
        discovered_at: Wall-clock time of the resolution that produced it
    """

    host: str
    port: int
    priority: int = field(default=0, compare=False)
    weight: int = field(default=0, compare=False)
    discovered_at: float = field(default_factory=time.time, compare=False)

    @property
    def address(self) -> tuple[str, int]:
        return (self.host, self.port)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"
