from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from leantrack import services
from leantrack.classifier import classify, to_growth_status
from leantrack.config import get_settings
from leantrack.db import get_session_factory, init_db, session_generator
from leantrack.models import Metric, PivotOption, Project
from leantrack.notify import ProgressNotifier
from leantrack.schemas import (
    ClassifyOut,
    ClassifyRequest,
    CriterionToggle,
    CriterionUpdateOut,
    MetricCreate,
    MetricHistoryOut,
    MetricOut,
    MetricUpdate,
    PivotOptionCreate,
    PivotOptionOut,
    PivotOptionUpdate,
    PivotSignalsOut,
    ProgressOut,
    ProjectCreate,
    ProjectOut,
    ProjectUpdate,
    StageOut,
    TriggerCreate,
    TriggerOut,
)
from leantrack.stages import StageDefinition
from leantrack.store import PersistenceError, TrackingStore

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    # Fail at startup rather than per request on a bad catalog file
    get_settings().stage_catalog()
    yield


app = FastAPI(
    title="Leantrack",
    version="0.1.0",
    description=(
        "Validation tracking API for lean startup projects. "
        "Tracks stage criteria, classifies metric health against thresholds, "
        "and surfaces pivot options triggered by at-risk metrics. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Stages", "description": "Stage catalog and per-project validation progress."},
        {"name": "Projects", "description": "Create and manage tracked projects."},
        {"name": "Metrics", "description": "Metrics, thresholds, status classification and history."},
        {"name": "Pivots", "description": "Pivot options, metric triggers and pivot signals."},
    ],
)
app.state.notifier = ProgressNotifier()


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def get_catalog() -> tuple[StageDefinition, ...]:
    return get_settings().stage_catalog()


def get_store(catalog: tuple[StageDefinition, ...] = Depends(get_catalog)) -> TrackingStore:
    return TrackingStore(get_session_factory(), catalog)


def get_notifier(request: Request) -> ProgressNotifier:
    return request.app.state.notifier


def _get_or_404(session: Session, model, entity_id: str, label: str = "Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _check_stage(catalog, stage_id: str) -> StageDefinition:
    stage = next((s for s in catalog if s.id == stage_id), None)
    if stage is None:
        raise HTTPException(404, f"Stage '{stage_id}' not found")
    return stage


# ---------------------------------------------------------------------------
# Routes: Stages
# ---------------------------------------------------------------------------


@app.get("/api/stages", response_model=list[StageOut],
         tags=["Stages"], summary="List the validation stages and their criteria")
async def list_stages(catalog=Depends(get_catalog)):
    return [
        {
            "id": s.id, "label": s.label,
            "criteria": [{"index": i, "id": c, "label": s.criterion_label(i)} for i, c in enumerate(s.criteria)],
        }
        for s in catalog
    ]


# ---------------------------------------------------------------------------
# Routes: Projects
# ---------------------------------------------------------------------------


@app.get("/api/projects", response_model=list[ProjectOut],
         tags=["Projects"], summary="List projects")
async def list_projects(session: Session = Depends(db_session)):
    projects = session.execute(select(Project).order_by(Project.created_at)).scalars().all()
    return [services.project_summary(p) for p in projects]


@app.post("/api/projects", response_model=ProjectOut, status_code=201,
          tags=["Projects"], summary="Create a project")
async def create_project(body: ProjectCreate, session: Session = Depends(db_session),
                         catalog=Depends(get_catalog)):
    if body.current_stage:
        _check_stage(catalog, body.current_stage)
    project = services.create_project(
        session, name=body.name, description=body.description,
        current_stage=body.current_stage or catalog[0].id,
    )
    session.commit()
    return services.project_summary(project)


@app.get("/api/projects/{project_id}", response_model=ProjectOut,
         tags=["Projects"], summary="Get a project")
async def get_project(project_id: str, session: Session = Depends(db_session)):
    return services.project_summary(_get_or_404(session, Project, project_id, "Project"))


@app.put("/api/projects/{project_id}", response_model=ProjectOut,
         tags=["Projects"], summary="Update project fields (partial update, null fields ignored)")
async def update_project(project_id: str, body: ProjectUpdate, session: Session = Depends(db_session),
                         catalog=Depends(get_catalog)):
    project = _get_or_404(session, Project, project_id, "Project")
    if body.current_stage:
        _check_stage(catalog, body.current_stage)
    services.apply_updates(project, body.model_dump(), services.PROJECT_UPDATABLE_FIELDS)
    session.commit()
    return services.project_summary(project)


@app.delete("/api/projects/{project_id}", tags=["Projects"],
            summary="Delete a project with its tracking, metrics and pivot options")
async def delete_project(project_id: str, store: TrackingStore = Depends(get_store)):
    if not store.delete_project(project_id):
        raise HTTPException(404, "Project not found")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Progress
# ---------------------------------------------------------------------------


@app.get("/api/projects/{project_id}/progress", response_model=ProgressOut,
         tags=["Stages"], summary="Per-stage and overall validation progress")
async def get_progress(project_id: str, session: Session = Depends(db_session),
                       store: TrackingStore = Depends(get_store)):
    project = _get_or_404(session, Project, project_id, "Project")
    tracker = await services.load_tracker(store, project.id, get_settings().reachable_threshold)
    return services.progress_view(tracker.progress(), tracker.catalog, tracker.flags_by_stage(),
                                  project.current_stage)


@app.put("/api/projects/{project_id}/stages/{stage_id}/criteria/{index}",
         response_model=CriterionUpdateOut, tags=["Stages"],
         summary="Mark one criterion completed or not completed")
async def set_criterion(project_id: str, stage_id: str, index: int, body: CriterionToggle,
                        session: Session = Depends(db_session),
                        store: TrackingStore = Depends(get_store),
                        notifier: ProgressNotifier = Depends(get_notifier)):
    project = _get_or_404(session, Project, project_id, "Project")
    _check_stage(store.catalog, stage_id)
    settings = get_settings()
    tracker = await services.load_tracker(store, project.id, settings.reachable_threshold)
    try:
        update = await services.toggle_criterion(
            store, tracker, project.id, stage_id, index, body.completed,
            policy=settings.retry_policy(), notifier=notifier,
            rollback_on_failure=settings.rollback_on_write_failure,
        )
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    except PersistenceError as exc:
        return JSONResponse(status_code=503, content={
            "detail": str(exc),
            "retryable": exc.retryable,
            "attempts": exc.attempts,
            "progress": services.progress_view(
                tracker.progress(), tracker.catalog, tracker.flags_by_stage(), project.current_stage,
            ),
        })
    return services.criterion_update_view(update)


# ---------------------------------------------------------------------------
# Routes: Metrics
# ---------------------------------------------------------------------------


@app.post("/api/metrics/classify", response_model=ClassifyOut,
          tags=["Metrics"], summary="Classify a value against a target and thresholds without saving")
async def classify_values(body: ClassifyRequest):
    status = classify(body.current_value, body.target_value, body.warning_threshold,
                      body.error_threshold, body.direction)
    return {"status": status.value, "growth_status": to_growth_status(status)}


@app.get("/api/projects/{project_id}/metrics", response_model=list[MetricOut],
         tags=["Metrics"], summary="List a project's metrics, optionally filtered by category")
async def list_metrics(project_id: str, category: str | None = None, session: Session = Depends(db_session)):
    project = _get_or_404(session, Project, project_id, "Project")
    metrics = project.metrics
    if category:
        metrics = [m for m in metrics if m.category == category]
    return [services.metric_summary(m) for m in metrics]


@app.post("/api/projects/{project_id}/metrics", response_model=MetricOut, status_code=201,
          tags=["Metrics"], summary="Create a metric; its status is classified from the given values")
async def create_metric(project_id: str, body: MetricCreate, session: Session = Depends(db_session)):
    project = _get_or_404(session, Project, project_id, "Project")
    metric = services.create_metric(session, project.id, **body.model_dump())
    session.commit()
    return services.metric_summary(metric)


@app.get("/api/metrics/{metric_id}", response_model=MetricOut,
         tags=["Metrics"], summary="Get a metric by id or original id")
async def get_metric(metric_id: str, session: Session = Depends(db_session)):
    return services.metric_summary(_get_or_404(session, Metric, metric_id, "Metric"))


@app.put("/api/metrics/{metric_id}", response_model=MetricOut,
         tags=["Metrics"], summary="Update metric fields and recompute its status")
async def update_metric(metric_id: str, body: MetricUpdate, session: Session = Depends(db_session),
                        notifier: ProgressNotifier = Depends(get_notifier)):
    metric = _get_or_404(session, Metric, metric_id, "Metric")
    changed = services.update_metric(session, metric, body.model_dump())
    session.commit()
    if "status" in changed:
        services.publish_metric_change(notifier, metric)
    return services.metric_summary(metric)


@app.get("/api/metrics/{metric_id}/history", response_model=list[MetricHistoryOut],
         tags=["Metrics"], summary="Value and status history of a metric")
async def metric_history(metric_id: str, session: Session = Depends(db_session)):
    metric = _get_or_404(session, Metric, metric_id, "Metric")
    return [services.history_entry(h) for h in metric.history]


@app.delete("/api/metrics/{metric_id}", tags=["Metrics"],
            summary="Delete a metric and its pivot trigger links")
async def delete_metric(metric_id: str, store: TrackingStore = Depends(get_store)):
    if not store.delete_metric(metric_id):
        raise HTTPException(404, "Metric not found")
    return {"ok": True}


@app.post("/api/projects/{project_id}/metrics/refresh", tags=["Metrics"],
          summary="Reclassify all metrics and persist statuses that drifted")
async def refresh_metrics(project_id: str, session: Session = Depends(db_session),
                          store: TrackingStore = Depends(get_store),
                          notifier: ProgressNotifier = Depends(get_notifier)):
    project = _get_or_404(session, Project, project_id, "Project")
    try:
        changed = await services.refresh_metric_statuses(
            store, project.id, policy=get_settings().retry_policy(), notifier=notifier,
        )
    except PersistenceError as exc:
        raise HTTPException(503, str(exc)) from exc
    return {"updated": changed}


# ---------------------------------------------------------------------------
# Routes: Pivot options & triggers
# ---------------------------------------------------------------------------


@app.get("/api/projects/{project_id}/pivot-options", response_model=list[PivotOptionOut],
         tags=["Pivots"], summary="List a project's pivot options with their trigger links")
async def list_pivot_options(project_id: str, session: Session = Depends(db_session),
                             store: TrackingStore = Depends(get_store)):
    project = _get_or_404(session, Project, project_id, "Project")
    triggers = store.load_triggers(project.id)
    return [services.pivot_option_summary(o, triggers) for o in project.pivot_options]


@app.post("/api/projects/{project_id}/pivot-options", response_model=PivotOptionOut, status_code=201,
          tags=["Pivots"], summary="Create a pivot option")
async def create_pivot_option(project_id: str, body: PivotOptionCreate, session: Session = Depends(db_session)):
    project = _get_or_404(session, Project, project_id, "Project")
    option = services.create_pivot_option(session, project.id, **body.model_dump())
    session.commit()
    return services.pivot_option_summary(option)


@app.put("/api/pivot-options/{option_id}", response_model=PivotOptionOut,
         tags=["Pivots"], summary="Update pivot option fields (partial update)")
async def update_pivot_option(option_id: str, body: PivotOptionUpdate, session: Session = Depends(db_session),
                              store: TrackingStore = Depends(get_store)):
    option = _get_or_404(session, PivotOption, option_id, "Pivot option")
    updates = body.model_dump()
    if updates.get("likelihood") and updates["likelihood"] not in services.VALID_LIKELIHOODS:
        raise HTTPException(422, "likelihood must be one of high, medium, low")
    services.apply_updates(option, updates, services.PIVOT_UPDATABLE_FIELDS)
    session.commit()
    return services.pivot_option_summary(option, store.load_triggers(option.project_id))


@app.delete("/api/pivot-options/{option_id}", tags=["Pivots"],
            summary="Delete a pivot option and its trigger links")
async def delete_pivot_option(option_id: str, store: TrackingStore = Depends(get_store)):
    if not store.delete_pivot_option(option_id):
        raise HTTPException(404, "Pivot option not found")
    return {"ok": True}


@app.post("/api/pivot-options/{option_id}/triggers", response_model=TriggerOut, status_code=201,
          tags=["Pivots"], summary="Link a metric to a pivot option")
async def create_trigger(option_id: str, body: TriggerCreate, session: Session = Depends(db_session)):
    option = _get_or_404(session, PivotOption, option_id, "Pivot option")
    trigger = services.create_trigger(session, option, body.metric_id, body.threshold_type)
    if trigger is None:
        raise HTTPException(404, "Metric not found in this project")
    session.commit()
    return services.trigger_summary(trigger)


@app.get("/api/projects/{project_id}/pivot-signals", response_model=PivotSignalsOut,
         tags=["Pivots"], summary="Pivot options whose linked metrics are at risk")
async def get_pivot_signals(project_id: str, session: Session = Depends(db_session),
                            store: TrackingStore = Depends(get_store)):
    project = _get_or_404(session, Project, project_id, "Project")
    return services.pivot_signals(
        store.load_metrics(project.id), store.load_pivot_options(project.id), store.load_triggers(project.id),
    )


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("leantrack.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
