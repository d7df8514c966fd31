"""Canonical timestamp handling for the storage boundary.

Every timestamp entering the billing code passes through ``to_utc`` once,
when it is read from a store. Business logic only ever sees timezone-aware
UTC datetimes.
"""

import math
from datetime import datetime, timezone
from typing import Any, Mapping

from marketbill.billing.errors import InvalidTimestampError

# Epoch numbers above this are taken as milliseconds (year 5138 in seconds).
_MILLIS_THRESHOLD = 1e11


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: Any) -> datetime:
    """Convert a stored timestamp to an aware UTC datetime.

    Accepts aware or naive datetimes (naive values are taken as UTC),
    epoch seconds or milliseconds, ISO-8601 strings and document-store
    mappings with ``seconds``/``nanoseconds`` keys.

    Raises:
        InvalidTimestampError: the value has no usable representation.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, bool):
        raise InvalidTimestampError(f"Not a timestamp: {value!r}")

    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise InvalidTimestampError(f"Not a finite epoch value: {value!r}")
        seconds = value / 1000 if abs(value) >= _MILLIS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise InvalidTimestampError(f"Unparseable timestamp: {value!r}") from exc

    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            return to_utc(seconds + nanos / 1e9)
        raise InvalidTimestampError(f"Timestamp mapping without seconds: {value!r}")

    raise InvalidTimestampError(f"Unsupported timestamp type {type(value).__name__}")
