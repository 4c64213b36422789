"""
Normalization of the upstream /events response envelope.

The upstream does not commit to a schema: events may be a bare array, under
``data``, under ``events``/``items``/``results`` or nested one level under
``data``. Pagination hints may live under ``pagination``, ``meta`` or the top
level. All shape-guessing lives here; callers only see ``PageResult``.
"""

import json
import math
from typing import Any, Dict, List, Mapping, Optional

from core.exceptions import BadJsonError
from schemas.page import PageResult, RateLimitSnapshot

EVENT_ARRAY_KEYS = ("events", "items", "results")
HAS_MORE_KEYS = ("hasMore", "has_more", "hasNextPage", "has_next_page")
TOTAL_KEYS = ("total", "totalCount", "total_count")
HINT_CONTAINERS = ("pagination", "meta")


def _parse_constant(name: str):
    # bare NaN becomes null; Infinity and -Infinity are rejected
    if name == "NaN":
        return None
    raise ValueError(f"non-standard JSON constant {name}")


def parse_json_body(text: str, context: Optional[Dict[str, Any]] = None) -> Any:
    """
    Parse a response body, reading bare NaN tokens as null.

    String contents are never rewritten.

    Raises:
        BadJsonError: Body is not valid JSON
    """
    try:
        return json.loads(text, parse_constant=_parse_constant)
    except ValueError as e:
        raise BadJsonError(
            "Failed to parse JSON response",
            context={**(context or {}), "response_body": text[:300]},
            original_exception=e
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _child(obj: Any, key: str) -> Any:
    return obj.get(key) if isinstance(obj, dict) else None


def _hint_sources(payload: Any) -> List[Dict[str, Any]]:
    sources = [_child(payload, key) for key in HINT_CONTAINERS] + [payload]
    return [source for source in sources if isinstance(source, dict)]


def find_events(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload

    data = _child(payload, "data")
    if isinstance(data, list):
        return data

    for key in EVENT_ARRAY_KEYS:
        candidate = _child(payload, key)
        if isinstance(candidate, list):
            return candidate

    for key in EVENT_ARRAY_KEYS:
        candidate = _child(data, key)
        if isinstance(candidate, list):
            return candidate

    return []


def find_has_more(payload: Any) -> Optional[bool]:
    for source in _hint_sources(payload):
        for key in HAS_MORE_KEYS:
            if isinstance(source.get(key), bool):
                return source[key]
    return None


def find_total(payload: Any):
    for source in _hint_sources(payload):
        for key in TOTAL_KEYS:
            if _is_number(source.get(key)):
                return source[key]
    return None


def find_next_cursor(payload: Any) -> Optional[str]:
    cursor = _child(_child(payload, "pagination"), "nextCursor")
    if isinstance(cursor, str) and cursor:
        return cursor
    return None


def find_cursor_expires_in(payload: Any):
    expires_in = _child(_child(payload, "pagination"), "cursorExpiresIn")
    return expires_in if _is_number(expires_in) else None


def _header_number(headers: Mapping[str, str], name: str):
    value = headers.get(name)
    if value is None:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def read_rate_limit(headers: Mapping[str, str]) -> RateLimitSnapshot:
    """Build the rate-limit snapshot; an absent remaining header reads as 0."""
    remaining = _header_number(headers, "x-ratelimit-remaining")
    if headers.get("x-ratelimit-remaining") is None:
        remaining = 0

    return RateLimitSnapshot(
        limit=_header_number(headers, "x-ratelimit-limit"),
        remaining=remaining,
        reset_seconds=_header_number(headers, "x-ratelimit-reset"),
        retry_after_seconds=_header_number(headers, "retry-after"),
    )


def normalize_envelope(payload: Any, headers: Mapping[str, str]) -> PageResult:
    return PageResult(
        events=find_events(payload),
        next_cursor=find_next_cursor(payload),
        has_more=find_has_more(payload),
        total=find_total(payload),
        cursor_expires_in=find_cursor_expires_in(payload),
        rate_limit=read_rate_limit(headers),
    )


def discovery_snapshot(payload: Any, page: PageResult) -> Dict[str, Any]:
    """Operator-facing summary of what the first response looked like."""
    pagination = _child(payload, "pagination")
    return {
        "top_level_keys": list(payload.keys())[:25] if isinstance(payload, dict) else [],
        "pagination_keys": list(pagination.keys())[:25] if isinstance(pagination, dict) else [],
        "events_len": len(page.events),
        "has_more": page.has_more,
        "total": page.total,
        "next_cursor_present": page.next_cursor is not None,
        "cursor_expires_in": page.cursor_expires_in,
        "rate_limit": page.rate_limit.model_dump(),
    }
