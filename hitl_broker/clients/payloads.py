"""Guarded field extraction for untrusted JSON payloads.

Nothing received over the network is trusted to have the documented
shape.  Each helper returns a usable value or ``None``/an empty container;
none of them raise.
"""

from __future__ import annotations

import math
from typing import Any


def as_record(value: Any) -> dict[str, Any]:
    """Return *value* if it is a JSON object, else an empty dict."""
    return value if isinstance(value, dict) else {}


def as_string(value: Any) -> str | None:
    """Return the stripped string, or None for non-strings and blank strings."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def as_string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in (as_string(raw) for raw in value) if item is not None]


def as_number(value: Any) -> int | float | None:
    """Return a finite JSON number.  Booleans are rejected; integral floats become ints."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            return int(value)
    return value


def as_items(value: Any) -> list[Any]:
    """Return ``value["items"]`` when it is a list (the runtime's list envelope)."""
    items = as_record(value).get("items")
    return items if isinstance(items, list) else []
