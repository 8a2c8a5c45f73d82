"""
Helpers for dynamically shaped vendor payloads.

Venues disagree on cursor field names, nest optional arrays, and send prices
as floats, strings, or cents. Each helper here returns an explicit NOT_FOUND
(or None for numeric conversions) instead of silently defaulting.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable


class _NotFound:
    __slots__ = ()

    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND: Any = _NotFound()

CURSOR_PATHS = ("meta.next_cursor", "next_cursor", "cursor", "nextKey", "data.nextKey")
# Polymarket CLOB end-of-results marker
_CURSOR_END = {"", "LTE="}


def extract(data: Any, paths: Iterable[str]) -> Any:
    """Return the value at the first dotted path that exists and is not None."""
    for path in paths:
        node = data
        for part in path.split("."):
            if isinstance(node, dict) and part in node:
                node = node[part]
            else:
                node = NOT_FOUND
                break
        if node is not NOT_FOUND and node is not None:
            return node
    return NOT_FOUND


def extract_cursor(data: Any) -> Any:
    """Next-page cursor from any known location, NOT_FOUND when exhausted."""
    cursor = extract(data, CURSOR_PATHS)
    if cursor is NOT_FOUND or str(cursor) in _CURSOR_END:
        return NOT_FOUND
    return str(cursor)


def extract_list(data: Any, paths: Iterable[str]) -> list:
    """Item list from a bare array or a wrapped one. Empty when absent."""
    if isinstance(data, list):
        return data
    found = extract(data, paths)
    return found if isinstance(found, list) else []


def to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_cents(value: Any, scale: float = 1.0) -> float | None:
    """
    Convert a price to cents. ``scale`` is 100 for dollar-denominated venues.
    Out-of-range values are clamped to 0-100; junk returns None.
    """
    number = to_float(value)
    if number is None:
        return None
    cents = round(number * scale, 2)
    return min(100.0, max(0.0, cents))


def derive_price(
    ask: float | None,
    opposing_bid: float | None = None,
    bid: float | None = None,
    last: float | None = None,
) -> float | None:
    """
    Price of one side in cents via the fallback chain:
    best ask, then 100 minus the opposing best bid, then best bid, then last trade.
    """
    if ask is not None and ask > 0:
        return ask
    if opposing_bid is not None and opposing_bid > 0:
        return round(100.0 - opposing_bid, 2)
    if bid is not None and bid > 0:
        return bid
    if last is not None and last > 0:
        return last
    return None


def complete_sides(yes: float | None, no: float | None) -> tuple[float, float] | None:
    """Fill one missing side with its complement. None when both are missing."""
    if yes is None and no is None:
        return None
    if yes is None:
        yes = round(100.0 - no, 2)
    elif no is None:
        no = round(100.0 - yes, 2)
    return yes, no


def parse_timestamp(value: Any) -> float | None:
    """
    Epoch seconds from ISO 8601, epoch seconds, or epoch milliseconds.
    Date-only strings resolve to end of day UTC.
    """
    if value is None or isinstance(value, bool) or value == "":
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number / 1000.0 if number > 1e11 else number
    text = str(value).strip()
    if text.isdigit():
        return parse_timestamp(int(text))
    text = text.replace("Z", "+00:00")
    if "T" not in text and " " not in text:
        text += "T23:59:59+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def to_iso(ts: float) -> str:
    """Epoch seconds to ISO 8601 UTC with a Z suffix."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
