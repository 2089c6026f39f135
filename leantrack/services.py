"""Shared business logic for the leantrack API and MCP server."""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from leantrack.classifier import (
    METRIC_CATEGORIES, Direction, Status, classify_metric, coerce_direction, to_growth_status,
)
from leantrack.models import Metric, MetricHistory, PivotMetricTrigger, PivotOption, Project
from leantrack.notify import METRIC_CHANGED, PROGRESS_CHANGED, ChangeEvent, ProgressNotifier
from leantrack.stages import (
    DEFAULT_REACHABLE_THRESHOLD, CriterionUpdate, JourneyProgress, StageDefinition, ValidationTracker,
)
from leantrack.store import PersistenceError, RetryPolicy, TrackingStore, write_with_retry
from leantrack.triggers import active_triggers, at_risk_metrics, index_by_id, resolve, triggers_for_option
from leantrack.utils import utc_now

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

PROJECT_UPDATABLE_FIELDS = ("name", "description", "current_stage")

METRIC_UPDATABLE_FIELDS = (
    "name", "description", "category", "current_value", "target_value",
    "warning_threshold", "error_threshold", "direction",
)

# Changing any of these requires the status to be recomputed
METRIC_VALUE_FIELDS = (
    "current_value", "target_value", "warning_threshold", "error_threshold", "direction",
)

CLEARABLE_METRIC_FIELDS = ("current_value", "warning_threshold", "error_threshold")

PIVOT_UPDATABLE_FIELDS = ("type", "description", "trigger_description", "likelihood")

VALID_LIKELIHOODS = {"high", "medium", "low"}


# ---------------------------------------------------------------------------
# Lookups & mutation helpers
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id: Any):
    """Fetch by primary key, falling back to ``original_id`` where the model has one."""
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if obj is None and hasattr(model, "original_id"):
        obj = session.execute(select(model).where(model.original_id == entity_id)).scalars().first()
    return obj


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> list[str]:
    """Apply non-None values from updates dict to an ORM object. Returns changed field names."""
    changed: list[str] = []
    for field in fields:
        val = updates.get(field)
        if val is not None and getattr(obj, field) != val:
            setattr(obj, field, val)
            changed.append(field)
    return changed


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def project_summary(project: Project) -> dict:
    return {
        "id": project.id, "name": project.name, "description": project.description,
        "current_stage": project.current_stage,
    }


def metric_summary(metric: Metric) -> dict:
    return {
        "id": metric.id, "original_id": metric.original_id, "project_id": metric.project_id,
        "category": metric.category, "name": metric.name, "description": metric.description,
        "current_value": metric.current_value, "target_value": metric.target_value,
        "warning_threshold": metric.warning_threshold, "error_threshold": metric.error_threshold,
        "direction": metric.direction, "status": metric.status,
        "growth_status": to_growth_status(metric.status),
    }


def history_entry(entry: MetricHistory) -> dict:
    return {
        "id": entry.id, "value": entry.value, "status": entry.status, "notes": entry.notes,
        "recorded_at": entry.recorded_at.isoformat() if entry.recorded_at else None,
    }


def pivot_option_summary(option: PivotOption, triggers: Iterable[PivotMetricTrigger] = ()) -> dict:
    return {
        "id": option.id, "original_id": option.original_id, "project_id": option.project_id,
        "type": option.type, "description": option.description,
        "trigger_description": option.trigger_description, "likelihood": option.likelihood,
        "triggers": [trigger_summary(t) for t in triggers_for_option(option, triggers)],
    }


def trigger_summary(trigger: PivotMetricTrigger) -> dict:
    return {
        "id": trigger.id, "pivot_option_id": trigger.pivot_option_id,
        "metric_id": trigger.metric_id, "threshold_type": trigger.threshold_type,
    }


def progress_view(
    journey: JourneyProgress,
    catalog: Sequence[StageDefinition],
    flags_by_stage: dict[str, dict[int, bool]],
    current_stage: str | None = None,
) -> dict:
    """Journey progress joined with catalog labels and per-criterion flags."""
    stages = []
    for stage in catalog:
        progress = journey.for_stage(stage.id)
        flags = flags_by_stage.get(stage.id) or {}
        stages.append({
            "id": stage.id, "label": stage.label,
            "completed": progress.completed, "total": progress.total,
            "percent": progress.percent, "reachable": progress.reachable,
            "criteria": [
                {"index": i, "id": c, "label": stage.criterion_label(i), "completed": bool(flags.get(i))}
                for i, c in enumerate(stage.criteria)
            ],
        })
    current = journey.for_stage(current_stage) if current_stage else None
    return {
        "stages": stages,
        "completed": journey.completed, "total": journey.total, "overall": journey.overall,
        "current_stage": current_stage,
        "current_stage_percent": current.percent if current else None,
    }


def criterion_update_view(update: CriterionUpdate) -> dict:
    return {
        "stage_id": update.stage.stage_id, "completed": update.stage.completed,
        "total": update.stage.total, "percent": update.stage.percent,
        "reachable": update.stage.reachable, "overall": update.overall,
    }


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def create_project(session: Session, *, name: str, description: str | None = None,
                   current_stage: str | None = None) -> Project:
    """Create a project (caller must commit)."""
    project = Project(name=name, description=description or "", current_stage=current_stage or "problem")
    session.add(project)
    session.flush()
    return project


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def _record_history(session: Session, metric: Metric, notes: str = "") -> None:
    session.add(MetricHistory(
        metric_id=metric.id, value=metric.current_value, status=metric.status,
        notes=notes, recorded_at=utc_now(),
    ))


def create_metric(
    session: Session, project_id: str, *,
    name: str, target_value: str,
    category: str | None = None, description: str | None = None,
    current_value: str | None = None,
    warning_threshold: str | None = None, error_threshold: str | None = None,
    direction: str | None = None, original_id: str | None = None,
) -> Metric:
    """Create a metric with its status classified from the given values (caller must commit)."""
    category = (category or "custom").strip().lower()
    metric = Metric(
        project_id=project_id, original_id=original_id, name=name,
        description=description or "",
        category=category if category in METRIC_CATEGORIES else "custom",
        current_value=_blank_to_none(current_value), target_value=target_value.strip(),
        warning_threshold=_blank_to_none(warning_threshold),
        error_threshold=_blank_to_none(error_threshold),
        direction=coerce_direction(direction or Direction.HIGHER_IS_BETTER).value,
    )
    metric.status = classify_metric(metric).value
    session.add(metric)
    session.flush()
    if metric.current_value is not None:
        _record_history(session, metric, notes="created")
    return metric


def update_metric(session: Session, metric: Metric, updates: dict[str, Any]) -> list[str]:
    """Apply field updates and recompute the status when a value field changed.

    Returns the changed field names (``status`` included when it moved).
    Appends a history row when the current value or status changed.  Caller
    must commit.
    """
    updates = dict(updates)
    changed: list[str] = []
    for key in CLEARABLE_METRIC_FIELDS:
        if key not in updates or updates[key] is None:
            continue
        # An explicit empty string clears the field
        value = _blank_to_none(updates.pop(key))
        if getattr(metric, key) != value:
            setattr(metric, key, value)
            changed.append(key)
    if updates.get("direction") is not None:
        updates["direction"] = coerce_direction(updates["direction"]).value
    if updates.get("category") is not None and updates["category"] not in METRIC_CATEGORIES:
        updates["category"] = "custom"

    changed += apply_updates(metric, updates, METRIC_UPDATABLE_FIELDS)

    if any(f in METRIC_VALUE_FIELDS for f in changed):
        status = classify_metric(metric).value
        if status != metric.status:
            metric.status = status
            changed.append("status")
    if "current_value" in changed or "status" in changed:
        _record_history(session, metric)
    return changed


async def refresh_metric_statuses(
    store: TrackingStore, project_id: str, *,
    policy: RetryPolicy | None = None, notifier: ProgressNotifier | None = None,
) -> list[str]:
    """Reclassify every metric of a project and persist statuses that drifted.

    Returns the ids of metrics whose stored status changed.
    """
    changed: list[str] = []
    for metric in store.load_metrics(project_id):
        status = classify_metric(metric)
        if metric.status == status.value:
            continue
        await write_with_retry(
            store.save_metric_status, metric.id, status,
            policy=policy, label=f"save status {metric.id}",
        )
        metric.status = status.value
        changed.append(metric.id)
        publish_metric_change(notifier, metric)
    return changed


async def update_metric_value(
    store: TrackingStore, metric_id: str, current_value: str | None, *,
    policy: RetryPolicy | None = None, notifier: ProgressNotifier | None = None,
) -> Metric | None:
    """Record a new current value, reclassify, and persist both with retries.

    Returns the updated (detached) metric, or None if it does not exist.
    """
    metric = store.load_metric(metric_id)
    if metric is None:
        return None
    metric.current_value = _blank_to_none(current_value)
    previous = metric.status
    metric.status = classify_metric(metric).value
    await write_with_retry(
        store.save_metric_value, metric.id, metric.current_value, metric.status,
        policy=policy, label=f"save value {metric.id}",
    )
    if metric.status != previous:
        publish_metric_change(notifier, metric)
    return metric


def publish_metric_change(notifier: ProgressNotifier | None, metric: Metric) -> None:
    if notifier is None:
        return
    notifier.publish(ChangeEvent(METRIC_CHANGED, metric.project_id, {
        "metric_id": metric.id, "status": metric.status,
        "growth_status": to_growth_status(metric.status),
    }))


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------


async def load_tracker(
    store: TrackingStore, project_id: str,
    reachable_threshold: int = DEFAULT_REACHABLE_THRESHOLD,
) -> ValidationTracker:
    flags = await store.load_tracking_async(project_id)
    return ValidationTracker(store.catalog, flags, reachable_threshold)


def _publish_progress(notifier: ProgressNotifier | None, project_id: str,
                      update: CriterionUpdate, **extra: Any) -> None:
    if notifier is None:
        return
    notifier.publish(ChangeEvent(PROGRESS_CHANGED, project_id, {**criterion_update_view(update), **extra}))


async def toggle_criterion(
    store: TrackingStore,
    tracker: ValidationTracker,
    project_id: str,
    stage_id: str,
    index: int,
    completed: bool,
    *,
    policy: RetryPolicy | None = None,
    notifier: ProgressNotifier | None = None,
    rollback_on_failure: bool = False,
) -> CriterionUpdate:
    """Optimistically set one criterion, then persist it with retries.

    The tracker is updated and listeners are notified before the write is
    attempted.  Only the one flag is written, so concurrent toggles on the
    same stage do not overwrite each other.  If every retry fails,
    :class:`PersistenceError` is raised; the optimistic state is kept unless
    *rollback_on_failure* is set, in which case the flag is restored and
    listeners are notified again.
    """
    update = tracker.set_criterion(stage_id, index, completed)
    _publish_progress(notifier, project_id, update)
    try:
        await write_with_retry(
            store.save_criterion, project_id, stage_id, index, completed,
            policy=policy, label=f"save tracking {project_id}/{stage_id}",
        )
    except PersistenceError:
        if rollback_on_failure:
            reverted = tracker.set_criterion(stage_id, index, update.previous)
            _publish_progress(notifier, project_id, reverted, rolled_back=True)
            log.warning("Rolled back %s/%s[%s] after failed write", project_id, stage_id, index)
        raise
    return update


# ---------------------------------------------------------------------------
# Pivot options & triggers
# ---------------------------------------------------------------------------


def create_pivot_option(
    session: Session, project_id: str, *,
    type: str, description: str | None = None, trigger_description: str | None = None,
    likelihood: str | None = None, original_id: str | None = None,
) -> PivotOption:
    """Create a pivot option (caller must commit)."""
    likelihood = (likelihood or "medium").strip().lower()
    option = PivotOption(
        project_id=project_id, original_id=original_id, type=type,
        description=description or "", trigger_description=trigger_description or "",
        likelihood=likelihood if likelihood in VALID_LIKELIHOODS else "medium",
    )
    session.add(option)
    session.flush()
    return option


def create_trigger(session: Session, option: PivotOption, metric_id: str,
                   threshold_type: str = "") -> PivotMetricTrigger | None:
    """Link a metric of the option's project to the option. Returns None if the metric is unknown."""
    metrics = session.execute(
        select(Metric).where(Metric.project_id == option.project_id)
    ).scalars().all()
    metric = resolve(metric_id, *index_by_id(metrics))
    if metric is None:
        return None
    trigger = PivotMetricTrigger(
        pivot_option_id=option.id, metric_id=metric.id, threshold_type=threshold_type or "",
    )
    session.add(trigger)
    session.flush()
    return trigger


def pivot_signals(metrics: Sequence[Metric], options: Sequence[PivotOption],
                  triggers: Sequence[PivotMetricTrigger]) -> dict:
    """Active triggers and at-risk metrics for the pivot decision view."""
    active = active_triggers(metrics, options, triggers)
    return {
        "active_triggers": [
            {
                "pivot_option": pivot_option_summary(a.pivot_option),
                "metric": metric_summary(a.metric),
                "trigger": trigger_summary(a.trigger),
                "severity": "critical" if a.metric.status == Status.ERROR.value else "warning",
            }
            for a in active
        ],
        "at_risk_metrics": [metric_summary(m) for m in at_risk_metrics(metrics)],
        "has_active_triggers": bool(active),
    }
