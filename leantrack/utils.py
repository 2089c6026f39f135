"""Shared utility functions used across leantrack modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (ValueError, TypeError):
        return {} if default is _MISSING else default


def round_percent(part: int, whole: int) -> int:
    """Integer percentage rounded half-up; ``whole == 0`` yields 0."""
    if whole <= 0:
        return 0
    return (200 * part + whole) // (2 * whole)


def utc_now() -> datetime:
    return datetime.now(UTC)
