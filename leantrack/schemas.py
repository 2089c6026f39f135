"""Pydantic request/response schemas for the leantrack API."""
from __future__ import annotations

from pydantic import BaseModel, field_validator

from leantrack.classifier import Direction


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class ProjectOut(BaseModel):
    id: str
    name: str
    description: str
    current_stage: str


class ProjectCreate(BaseModel):
    name: str
    description: str = ""
    current_stage: str | None = None


class ProjectUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    current_stage: str | None = None


# ---------------------------------------------------------------------------
# Stages & progress
# ---------------------------------------------------------------------------


class CriterionOut(BaseModel):
    index: int
    id: str
    label: str
    completed: bool = False


class StageOut(BaseModel):
    id: str
    label: str
    criteria: list[CriterionOut]


class StageProgressOut(BaseModel):
    id: str
    label: str
    completed: int
    total: int
    percent: int
    reachable: bool
    criteria: list[CriterionOut] = []


class ProgressOut(BaseModel):
    stages: list[StageProgressOut]
    completed: int
    total: int
    overall: int
    current_stage: str | None = None
    current_stage_percent: int | None = None


class CriterionToggle(BaseModel):
    completed: bool


class CriterionUpdateOut(BaseModel):
    stage_id: str
    completed: int
    total: int
    percent: int
    reachable: bool
    overall: int


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def _check_direction(v: str | None) -> str | None:
    if v is None:
        return v
    allowed = {d.value for d in Direction}
    if v not in allowed:
        raise ValueError(f"direction must be one of {sorted(allowed)}")
    return v


class MetricOut(BaseModel):
    id: str
    original_id: str | None = None
    project_id: str
    category: str
    name: str
    description: str
    current_value: str | None = None
    target_value: str
    warning_threshold: str | None = None
    error_threshold: str | None = None
    direction: str
    status: str
    growth_status: str


class MetricCreate(BaseModel):
    name: str
    target_value: str
    category: str = "custom"
    description: str = ""
    current_value: str | None = None
    warning_threshold: str | None = None
    error_threshold: str | None = None
    direction: str = Direction.HIGHER_IS_BETTER.value
    original_id: str | None = None

    @field_validator("direction")
    @classmethod
    def direction_must_be_known(cls, v: str) -> str:
        return _check_direction(v)


class MetricUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    category: str | None = None
    current_value: str | None = None
    target_value: str | None = None
    warning_threshold: str | None = None
    error_threshold: str | None = None
    direction: str | None = None

    @field_validator("direction")
    @classmethod
    def direction_must_be_known(cls, v: str | None) -> str | None:
        return _check_direction(v)


class ClassifyRequest(BaseModel):
    current_value: str | None = None
    target_value: str
    warning_threshold: str | None = None
    error_threshold: str | None = None
    direction: str = Direction.HIGHER_IS_BETTER.value


class ClassifyOut(BaseModel):
    status: str
    growth_status: str


class MetricHistoryOut(BaseModel):
    id: int
    value: str | None = None
    status: str
    notes: str = ""
    recorded_at: str | None = None


# ---------------------------------------------------------------------------
# Pivot options & triggers
# ---------------------------------------------------------------------------


class TriggerOut(BaseModel):
    id: int
    pivot_option_id: str
    metric_id: str
    threshold_type: str


class TriggerCreate(BaseModel):
    metric_id: str
    threshold_type: str = ""


class PivotOptionOut(BaseModel):
    id: str
    original_id: str | None = None
    project_id: str
    type: str
    description: str
    trigger_description: str
    likelihood: str
    triggers: list[TriggerOut] = []


class PivotOptionCreate(BaseModel):
    type: str
    description: str = ""
    trigger_description: str = ""
    likelihood: str = "medium"
    original_id: str | None = None


class PivotOptionUpdate(BaseModel):
    type: str | None = None
    description: str | None = None
    trigger_description: str | None = None
    likelihood: str | None = None


class ActiveTriggerOut(BaseModel):
    pivot_option: PivotOptionOut
    metric: MetricOut
    trigger: TriggerOut
    severity: str


class PivotSignalsOut(BaseModel):
    active_triggers: list[ActiveTriggerOut]
    at_risk_metrics: list[MetricOut]
    has_active_triggers: bool
