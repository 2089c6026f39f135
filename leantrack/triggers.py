"""Correlate metric health with pivot options through trigger links.

Metrics and pivot options may be referenced either by their current id or by
the ``original_id`` they had before being re-keyed; :func:`resolve` accepts
both.  Links whose metric or pivot option cannot be resolved are dropped.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from leantrack.classifier import AT_RISK_STATUSES

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActiveTrigger:
    pivot_option: Any
    metric: Any
    trigger: Any


def _status_value(obj: Any) -> str:
    status = getattr(obj, "status", None)
    return getattr(status, "value", status) or ""


def index_by_id(items: Iterable[Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Build ``(by_id, by_original_id)`` lookups; the first occurrence wins."""
    by_id: dict[str, Any] = {}
    by_original: dict[str, Any] = {}
    for item in items:
        if item.id is not None:
            by_id.setdefault(str(item.id), item)
        original = getattr(item, "original_id", None)
        if original:
            by_original.setdefault(str(original), item)
    return by_id, by_original


def resolve(ident: Any, by_id: Mapping[str, Any], by_original_id: Mapping[str, Any]) -> Any | None:
    """Look an id up as a current id first, then as an original id."""
    if ident is None:
        return None
    key = str(ident)
    found = by_id.get(key)
    return found if found is not None else by_original_id.get(key)


def at_risk_metrics(metrics: Sequence[Any]) -> list[Any]:
    """Metrics in warning or error status, in input order."""
    return [m for m in metrics if _status_value(m) in AT_RISK_STATUSES]


def active_triggers(
    metrics: Sequence[Any],
    pivot_options: Sequence[Any],
    triggers: Sequence[Any],
) -> list[ActiveTrigger]:
    """Trigger links whose metric is currently in warning or error status.

    Output follows the order of ``triggers``.
    """
    metric_ids = index_by_id(metrics)
    option_ids = index_by_id(pivot_options)
    active: list[ActiveTrigger] = []
    for trigger in triggers:
        metric = resolve(trigger.metric_id, *metric_ids)
        option = resolve(trigger.pivot_option_id, *option_ids)
        if metric is None or option is None:
            log.debug(
                "Skipping orphaned trigger metric=%s pivot_option=%s",
                trigger.metric_id, trigger.pivot_option_id,
            )
            continue
        if _status_value(metric) in AT_RISK_STATUSES:
            active.append(ActiveTrigger(pivot_option=option, metric=metric, trigger=trigger))
    return active


def triggers_for_option(pivot_option: Any, triggers: Iterable[Any]) -> list[Any]:
    """Trigger links that point at ``pivot_option`` by either of its ids."""
    keys = {str(pivot_option.id)}
    if getattr(pivot_option, "original_id", None):
        keys.add(str(pivot_option.original_id))
    return [t for t in triggers if str(t.pivot_option_id) in keys]


def group_by_category(metrics: Iterable[Any]) -> dict[str, list[Any]]:
    """Group metrics by category, keeping input order inside each group."""
    groups: dict[str, list[Any]] = {}
    for metric in metrics:
        groups.setdefault(getattr(metric, "category", None) or "custom", []).append(metric)
    return groups
