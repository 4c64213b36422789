"""
Best-effort event timestamp extraction.

Events carry their timestamp under one of several field names and in one of
several formats. ``extract_ts_ms`` walks a fixed list of candidate fields and
returns the first usable value as epoch milliseconds.

Numbers up to 10,000,000,000 are taken as seconds, larger ones as
milliseconds. The high-water mark in ingestion_state depends on this exact
field order and threshold.
"""

import math
import re
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional, Union

TIMESTAMP_FIELDS = (
    "timestamp",
    "ts",
    "occurredAt",
    "occurred_at",
    "createdAt",
    "created_at",
    "receivedAt",
    "received_at",
)

SECONDS_THRESHOLD = 10_000_000_000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)
_NUMERIC = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


def _scale(value: Union[int, float]) -> Optional[int]:
    if not math.isfinite(value):
        return None
    if value > SECONDS_THRESHOLD:
        return int(value)
    return int(value * 1000)


def _datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // _ONE_MS


def _parse_date_string(value: str) -> Optional[int]:
    """Parse an ISO-8601 or RFC 2822 date string into epoch ms."""
    try:
        return _datetime_to_ms(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        pass
    try:
        return _datetime_to_ms(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        return None


def _from_value(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _scale(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if _NUMERIC.match(text):
            return _scale(float(text) if any(c in text for c in ".eE") else int(text))
        return _parse_date_string(text)
    return None


def extract_ts_ms(raw: Any) -> Optional[int]:
    """
    Return the event's timestamp in epoch milliseconds, or None.

    The first candidate field that yields any valid number wins; later
    fields are not consulted.

    Examples:
        >>> extract_ts_ms({"timestamp": 1700000000})
        1700000000000
        >>> extract_ts_ms({"created_at": "1700000000"})
        1700000000000
        >>> extract_ts_ms({}) is None
        True
    """
    if not isinstance(raw, dict):
        return None

    for field in TIMESTAMP_FIELDS:
        value = raw.get(field)
        if value is None:
            continue
        ts_ms = _from_value(value)
        if ts_ms is not None:
            return ts_ms

    return None
