"""NDJSON wire encoding for events."""

from __future__ import annotations

import json
from datetime import date, datetime, time
from enum import Enum
from types import MappingProxyType
from typing import Any

from .errors import SerializationError
from .types import Event


def _default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date, time)):
        return obj.isoformat()
    if isinstance(obj, MappingProxyType):
        return dict(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def encode_event(event: Event) -> bytes:
    """Encode one event as a single UTF-8 JSON line terminated by ``\\n``.

    Timestamps are written in ISO 8601. Non-finite floats, unknown types and
    circular structures raise SerializationError.
    """
    try:
        line = json.dumps(
            dict(event),
            default=_default,
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        )
        return line.encode("utf-8") + b"\n"
    except (TypeError, ValueError, RecursionError) as exc:
        raise SerializationError(f"cannot encode event: {exc}") from exc
