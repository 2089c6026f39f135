"""Validation stages and completion progress.

The journey is an ordered catalog of stages (problem → solution → mvp →
metrics → pivot → growth by default), each with an ordered list of criteria.
Per-project tracking flags map a criterion *position* to a completed flag;
everything here takes already-normalized flags (see ``leantrack.store`` for
the storage-side normalization) and is free of I/O.

Reachability is reported separately from the numbers: a stage is reachable
when the previous stage is at least ``reachable_threshold`` percent complete
or when the stage itself already has a completed criterion.  An unreachable
stage still reports its true completed/total.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from leantrack.utils import round_percent

TrackingFlags = Mapping[int, bool]

DEFAULT_REACHABLE_THRESHOLD = 50


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def _humanize(key: str) -> str:
    text = key.replace("_", " ").replace("-", " ").strip()
    return text[:1].upper() + text[1:]


@dataclass(frozen=True)
class StageDefinition:
    id: str
    label: str
    criteria: tuple[str, ...]
    criterion_labels: tuple[str, ...] = field(default=())

    @property
    def total(self) -> int:
        return len(self.criteria)

    def criterion_label(self, index: int) -> str:
        if index < len(self.criterion_labels) and self.criterion_labels[index]:
            return self.criterion_labels[index]
        return _humanize(self.criteria[index])


DEFAULT_STAGES: tuple[StageDefinition, ...] = (
    StageDefinition("problem", "Problem validation", (
        "hypotheses_created", "customer_interviews_conducted",
        "pain_points_identified", "market_need_validated",
    )),
    StageDefinition("solution", "Solution validation", (
        "solution_hypotheses_defined", "solution_sketches_created",
        "tested_with_customers", "positive_feedback_received",
    )),
    StageDefinition("mvp", "MVP", (
        "core_features_defined", "mvp_built", "released_to_users", "metrics_gathered",
    )),
    StageDefinition("metrics", "Metrics", (
        "key_metrics_established", "tracking_systems_setup",
        "dashboards_created", "data_driven_decisions",
    )),
    StageDefinition("pivot", "Pivot or persevere", (
        "validation_data_evaluated", "pivot_assessment_conducted",
        "reasoning_documented", "strategic_decision_made",
    )),
    StageDefinition("growth", "Growth", (
        "channels_identified", "growth_experiments_setup",
        "funnel_optimized", "repeatable_growth",
    )),
)


def load_catalog(data: Mapping[str, Any]) -> tuple[StageDefinition, ...]:
    """Build a catalog from a ``{"stages": [{id, label, criteria}]}`` mapping.

    Criteria may be plain ids or ``{id, label}`` mappings.  Raises ValueError
    for an empty catalog, duplicate stage ids, or a stage without criteria.
    """
    raw_stages = data.get("stages") if isinstance(data, Mapping) else None
    if not isinstance(raw_stages, list) or not raw_stages:
        raise ValueError("Stage catalog must define a non-empty 'stages' list")

    stages: list[StageDefinition] = []
    seen: set[str] = set()
    for raw in raw_stages:
        if not isinstance(raw, Mapping) or not str(raw.get("id") or "").strip():
            raise ValueError(f"Invalid stage entry: {raw!r}")
        stage_id = str(raw["id"]).strip()
        if stage_id in seen:
            raise ValueError(f"Duplicate stage id: {stage_id!r}")
        seen.add(stage_id)

        criteria: list[str] = []
        labels: list[str] = []
        for item in raw.get("criteria") or []:
            if isinstance(item, Mapping):
                criteria.append(str(item.get("id", "")).strip())
                labels.append(str(item.get("label") or ""))
            else:
                criteria.append(str(item).strip())
                labels.append("")
        if not criteria or not all(criteria):
            raise ValueError(f"Stage {stage_id!r} needs at least one named criterion")

        stages.append(StageDefinition(
            id=stage_id,
            label=str(raw.get("label") or _humanize(stage_id)),
            criteria=tuple(criteria),
            criterion_labels=tuple(labels),
        ))
    return tuple(stages)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageProgress:
    stage_id: str
    completed: int
    total: int
    percent: int
    reachable: bool = True


@dataclass(frozen=True)
class JourneyProgress:
    stages: tuple[StageProgress, ...]
    completed: int
    total: int
    overall: int

    def for_stage(self, stage_id: str) -> StageProgress | None:
        return next((s for s in self.stages if s.stage_id == stage_id), None)


def stage_progress(stage: StageDefinition, flags: TrackingFlags) -> StageProgress:
    """Count completed criteria among the stage's declared positions.

    Flags past the declared count are ignored; missing positions count as
    not completed.  Out-of-order completion is counted as-is.
    """
    total = stage.total
    completed = sum(1 for i in range(total) if flags.get(i))
    return StageProgress(stage.id, completed, total, round_percent(completed, total))


def _overall(progresses: Iterable[StageProgress]) -> tuple[int, int, int]:
    completed = total = 0
    for p in progresses:
        completed += p.completed
        total += p.total
    return completed, total, round_percent(completed, total)


def overall_progress(stages: Iterable[tuple[StageDefinition, TrackingFlags]]) -> int:
    """Unweighted completion across all stages: ``round(100 * Σcompleted / Σtotal)``."""
    return _overall(stage_progress(stage, flags) for stage, flags in stages)[2]


def is_reachable(previous: StageProgress | None, current: StageProgress,
                 threshold: int = DEFAULT_REACHABLE_THRESHOLD) -> bool:
    if previous is None:
        return True
    return previous.percent >= threshold or current.completed > 0


def journey_progress(
    catalog: Iterable[StageDefinition],
    flags_by_stage: Mapping[str, TrackingFlags],
    reachable_threshold: int = DEFAULT_REACHABLE_THRESHOLD,
) -> JourneyProgress:
    """Per-stage progress with reachability, plus the overall percentage."""
    results: list[StageProgress] = []
    previous: StageProgress | None = None
    for stage in catalog:
        progress = stage_progress(stage, flags_by_stage.get(stage.id) or {})
        progress = StageProgress(
            progress.stage_id, progress.completed, progress.total, progress.percent,
            reachable=is_reachable(previous, progress, reachable_threshold),
        )
        results.append(progress)
        previous = progress
    completed, total, overall = _overall(results)
    return JourneyProgress(tuple(results), completed, total, overall)


# ---------------------------------------------------------------------------
# In-memory tracking state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CriterionUpdate:
    stage: StageProgress
    overall: int
    previous: bool


class ValidationTracker:
    """Display-side tracking state for one project.

    Holds the flags the caller is currently showing, so a criterion toggle can
    be reflected immediately (before it is persisted) and percentages can be
    recomputed on demand.  Each caller owns its own tracker.
    """

    def __init__(
        self,
        catalog: Iterable[StageDefinition] = DEFAULT_STAGES,
        flags_by_stage: Mapping[str, TrackingFlags] | None = None,
        reachable_threshold: int = DEFAULT_REACHABLE_THRESHOLD,
    ):
        self.catalog = tuple(catalog)
        self.reachable_threshold = reachable_threshold
        self._stages = {s.id: s for s in self.catalog}
        self._flags: dict[str, dict[int, bool]] = {s.id: {} for s in self.catalog}
        for stage_id, flags in (flags_by_stage or {}).items():
            if stage_id in self._stages:
                self._flags[stage_id] = dict(flags)

    def stage(self, stage_id: str) -> StageDefinition:
        try:
            return self._stages[stage_id]
        except KeyError:
            raise ValueError(f"Unknown stage: {stage_id!r}") from None

    def flags(self, stage_id: str) -> dict[int, bool]:
        self.stage(stage_id)
        return dict(self._flags[stage_id])

    def flags_by_stage(self) -> dict[str, dict[int, bool]]:
        return {stage_id: dict(flags) for stage_id, flags in self._flags.items()}

    def replace_flags(self, stage_id: str, flags: TrackingFlags) -> StageProgress:
        """Adopt freshly read flags for one stage; other stages are untouched."""
        stage = self.stage(stage_id)
        self._flags[stage_id] = dict(flags)
        return stage_progress(stage, self._flags[stage_id])

    def set_criterion(self, stage_id: str, index: int, completed: bool) -> CriterionUpdate:
        """Set exactly one flag and return the new stage and overall percentages."""
        stage = self.stage(stage_id)
        if not 0 <= index < stage.total:
            raise ValueError(
                f"Criterion index {index} out of range for stage {stage_id!r} (0..{stage.total - 1})"
            )
        previous = bool(self._flags[stage_id].get(index))
        self._flags[stage_id][index] = bool(completed)
        journey = self.progress()
        return CriterionUpdate(journey.for_stage(stage_id), journey.overall, previous)

    def progress(self) -> JourneyProgress:
        return journey_progress(self.catalog, self._flags, self.reachable_threshold)
