"""Metric status classification: formatted values and thresholds to a health status.

Zones
-----
Values are formatted strings (``"18"``, ``"-2.5"``, ``"18%"``).  Both operands of
a comparison must share the unit suffix; a mismatch is treated like a parse
failure.

``higher-is-better``:

- ``success``: ``current >= target``
- ``warning``: ``boundary <= current < target``
- ``error``:   ``current < boundary``

``lower-is-better`` mirrors it:

- ``success``: ``current <= target``
- ``warning``: ``target < current <= boundary``
- ``error``:   ``current > boundary``

The boundary is the warning threshold for ``higher-is-better`` and the error
threshold for ``lower-is-better``; whichever threshold is given is used when
the preferred one is missing, and ``target`` when neither is.  With no
thresholds at all the warning zone is therefore empty and only ``success`` or
``error`` can result.

Classification never raises: a missing or unparsable current/target value
yields ``not-started``.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

log = logging.getLogger(__name__)


class Status(str, Enum):
    NOT_STARTED = "not-started"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Direction(str, Enum):
    HIGHER_IS_BETTER = "higher-is-better"
    LOWER_IS_BETTER = "lower-is-better"


AT_RISK_STATUSES = frozenset({Status.WARNING.value, Status.ERROR.value})

METRIC_CATEGORIES = ("acquisition", "activation", "retention", "revenue", "referral", "custom")

# Labels used by growth-model metrics for the same three health zones
GROWTH_STATUSES = ("on-track", "at-risk", "off-track")

_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)$")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FormattedValue:
    amount: Decimal
    percent: bool


def parse_formatted_value(value: Any) -> FormattedValue | None:
    """Parse ``"12.5"`` / ``"-3"`` / ``"40%"`` into a number and unit flag.

    Plain ints and floats are accepted as unitless numbers.  Returns ``None``
    for anything else, including empty strings, NaN and infinities.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
        return FormattedValue(amount, False) if amount.is_finite() else None

    text = str(value).strip()
    percent = text.endswith("%")
    if percent:
        text = text[:-1].rstrip()
    if not _NUMBER_RE.match(text):
        return None
    return FormattedValue(Decimal(text), percent)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def coerce_direction(direction: Any) -> Direction:
    """Map a direction value to :class:`Direction`, defaulting to higher-is-better."""
    if isinstance(direction, Direction):
        return direction
    try:
        return Direction(str(direction).strip().lower())
    except ValueError:
        log.debug("Unknown metric direction %r, assuming higher-is-better", direction)
        return Direction.HIGHER_IS_BETTER


def _threshold(value: Any, target: FormattedValue, label: str) -> Decimal | None:
    if _is_blank(value):
        return None
    parsed = parse_formatted_value(value)
    if parsed is None:
        log.debug("Ignoring unparsable %s threshold %r", label, value)
        return None
    if parsed.percent != target.percent:
        log.debug("Ignoring %s threshold %r: unit differs from target", label, value)
        return None
    return parsed.amount


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify(
    current: Any,
    target: Any,
    warning: Any = None,
    error: Any = None,
    direction: Any = Direction.HIGHER_IS_BETTER,
) -> Status:
    """Classify a metric's health from its current value, target and thresholds.

    One boundary splits warning from error.  Higher-is-better uses the
    warning threshold, else the error threshold, else the target;
    lower-is-better uses the error threshold, else the warning threshold,
    else the target.  So an error threshold given alone still separates the
    two zones instead of being replaced by the target.
    """
    if _is_blank(current):
        return Status.NOT_STARTED

    cur = parse_formatted_value(current)
    tgt = parse_formatted_value(target)
    if cur is None or tgt is None:
        log.debug("Cannot classify current=%r target=%r: unparsable operand", current, target)
        return Status.NOT_STARTED
    if cur.percent != tgt.percent:
        log.debug("Cannot classify current=%r target=%r: unit mismatch", current, target)
        return Status.NOT_STARTED

    warn = _threshold(warning, tgt, "warning")
    err = _threshold(error, tgt, "error")

    if coerce_direction(direction) is Direction.LOWER_IS_BETTER:
        if cur.amount <= tgt.amount:
            return Status.SUCCESS
        boundary = err if err is not None else warn if warn is not None else tgt.amount
        return Status.WARNING if cur.amount <= boundary else Status.ERROR

    if cur.amount >= tgt.amount:
        return Status.SUCCESS
    boundary = warn if warn is not None else err if err is not None else tgt.amount
    return Status.WARNING if cur.amount >= boundary else Status.ERROR


def classify_metric(metric) -> Status:
    """Classify a metric row (anything with the ``Metric`` value attributes)."""
    return classify(
        metric.current_value,
        metric.target_value,
        getattr(metric, "warning_threshold", None),
        getattr(metric, "error_threshold", None),
        getattr(metric, "direction", Direction.HIGHER_IS_BETTER),
    )


def is_at_risk_status(status: Any) -> bool:
    """True for warning/error, and for the growth-model labels at-risk/off-track."""
    value = status.value if isinstance(status, Enum) else str(status or "")
    return value in AT_RISK_STATUSES or value in ("at-risk", "off-track")


# ---------------------------------------------------------------------------
# Growth-model status labels
# ---------------------------------------------------------------------------


def to_growth_status(status: Any) -> str:
    value = status.value if isinstance(status, Enum) else str(status or "")
    if value == Status.SUCCESS.value:
        return "on-track"
    if value == Status.WARNING.value:
        return "at-risk"
    return "off-track"


def from_growth_status(label: str) -> Status:
    if label == "on-track":
        return Status.SUCCESS
    if label == "at-risk":
        return Status.WARNING
    return Status.ERROR
