from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from leantrack import services
from leantrack.classifier import GROWTH_STATUSES, METRIC_CATEGORIES, Direction, Status, classify, to_growth_status
from leantrack.config import get_settings
from leantrack.db import get_session, get_session_factory, init_db
from leantrack.models import Project
from leantrack.notify import ProgressNotifier
from leantrack.store import PersistenceError, TrackingStore

log = logging.getLogger(__name__)

# Listeners registered here see every change made through the MCP tools
notifier = ProgressNotifier()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def leantrack_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Leantrack",
    instructions=(
        "Leantrack tracks lean startup validation: stage criteria, metric health and pivot signals. "
        "Start with get_progress(project_id) for the journey overview, then "
        "get_pivot_signals(project_id) to see which pivot options are triggered by at-risk metrics."
    ),
    lifespan=leantrack_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


def _store() -> TrackingStore:
    return TrackingStore(get_session_factory(), get_settings().stage_catalog())


def _persistence_error(exc: PersistenceError, **extra) -> dict:
    return {"error": str(exc), "error_code": "PERSISTENCE_ERROR", "retryable": exc.retryable, **extra}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("leantrack://overview")
def leantrack_overview() -> str:
    """Overview of Leantrack: stages, metric statuses and pivot triggers."""
    catalog = get_settings().stage_catalog()
    return json.dumps({
        "system": "Leantrack: validation tracking for lean startup projects",
        "stages": [
            {"id": s.id, "label": s.label, "criteria": [s.criterion_label(i) for i in range(s.total)]}
            for s in catalog
        ],
        "metric_statuses": [s.value for s in Status],
        "growth_statuses": list(GROWTH_STATUSES),
        "directions": [d.value for d in Direction],
        "metric_categories": list(METRIC_CATEGORIES),
        "pivot_triggers": (
            "A pivot option is triggered when any linked metric is in warning or error status."
        ),
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Progress
# ---------------------------------------------------------------------------


@mcp.tool()
async def get_progress(project_id: str) -> dict:
    """Per-stage completion, reachability and overall progress for a project."""
    with _session() as session:
        project, err = _get_or_error(session, Project, project_id, "Project")
        if err:
            return err
        current_stage = project.current_stage
    store = _store()
    tracker = await services.load_tracker(store, project_id, get_settings().reachable_threshold)
    return services.progress_view(tracker.progress(), tracker.catalog, tracker.flags_by_stage(), current_stage)


@mcp.tool()
async def set_criterion(project_id: str, stage_id: str, index: int, completed: bool = True) -> dict:
    """Mark one stage criterion completed (or not) and persist it.

    Args:
        project_id: Project id.
        stage_id: Stage id, e.g. "problem", "solution", "mvp".
        index: Zero-based criterion position within the stage.
        completed: New state of the criterion.
    """
    with _session() as session:
        project, err = _get_or_error(session, Project, project_id, "Project")
        if err:
            return err
    settings = get_settings()
    store = _store()
    tracker = await services.load_tracker(store, project_id, settings.reachable_threshold)
    try:
        update = await services.toggle_criterion(
            store, tracker, project_id, stage_id, index, completed,
            policy=settings.retry_policy(), notifier=notifier,
            rollback_on_failure=settings.rollback_on_write_failure,
        )
    except ValueError as exc:
        return {"error": str(exc)}
    except PersistenceError as exc:
        return _persistence_error(exc, overall=tracker.progress().overall)
    return services.criterion_update_view(update)


# ---------------------------------------------------------------------------
# Tools: Metrics & pivots
# ---------------------------------------------------------------------------


@mcp.tool()
def classify_metric(
    current_value: str | None, target_value: str,
    warning_threshold: str | None = None, error_threshold: str | None = None,
    direction: str = Direction.HIGHER_IS_BETTER.value,
) -> dict:
    """Classify a metric value without saving anything.

    Values are formatted strings such as "18", "-2.5" or "18%"; all values must
    share the same unit. Returns status (not-started, success, warning, error).
    """
    status = classify(current_value, target_value, warning_threshold, error_threshold, direction)
    return {"status": status.value, "growth_status": to_growth_status(status)}


@mcp.tool()
async def update_metric_value(metric_id: str, current_value: str | None) -> dict:
    """Record a new current value for a metric; its status is recomputed and saved."""
    try:
        metric = await services.update_metric_value(
            _store(), metric_id, current_value,
            policy=get_settings().retry_policy(), notifier=notifier,
        )
    except PersistenceError as exc:
        return _persistence_error(exc)
    if metric is None:
        return {"error": f"Metric {metric_id} not found"}
    return services.metric_summary(metric)


@mcp.tool()
def get_pivot_signals(project_id: str) -> dict:
    """Pivot options triggered by at-risk metrics, plus all at-risk metrics."""
    with _session() as session:
        project, err = _get_or_error(session, Project, project_id, "Project")
        if err:
            return err
    store = _store()
    return services.pivot_signals(
        store.load_metrics(project_id), store.load_pivot_options(project_id), store.load_triggers(project_id),
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Leantrack MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
