"""Tracking persistence adapter.

The narrow read/write surface the engine uses: tracking flags, metric rows,
pivot options and trigger links.  Every call opens its own session from the
factory it was given, so calls can run concurrently on worker threads.

Stored tracking blobs are normalized here (mapping or JSON string; keys as
criterion ids, positions or numeric strings) into position-indexed flags, so
the aggregator never sees the storage representation.  Writes are idempotent:
re-sending an unchanged value does not touch the database.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generator, TypeVar

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from leantrack.classifier import Status
from leantrack.models import Metric, MetricHistory, PivotMetricTrigger, PivotOption, Project, StageTracking
from leantrack.stages import DEFAULT_STAGES, StageDefinition
from leantrack.utils import json_parse, utc_now

log = logging.getLogger(__name__)

T = TypeVar("T")


class PersistenceError(Exception):
    """A write was rejected, timed out, or exhausted its retries."""
    def __init__(self, message: str, retryable: bool = True, attempts: int = 0):
        super().__init__(message)
        self.retryable = retryable
        self.attempts = attempts


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 8.0
    timeout: float | None = None

    def delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based), capped at ``max_delay``."""
        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)


async def write_with_retry(
    write: Callable[..., T],
    *args: Any,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "write",
) -> T:
    """Run a blocking write on a worker thread, retrying with exponential backoff.

    Non-retryable :class:`PersistenceError`, ``ValueError`` and ``TypeError``
    propagate immediately.  Any other failure is retried up to
    ``policy.max_retries`` times; after that a :class:`PersistenceError`
    carrying the attempt count is raised.
    """
    policy = policy or RetryPolicy()
    attempts = policy.max_retries + 1
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            call = asyncio.to_thread(write, *args)
            if policy.timeout:
                return await asyncio.wait_for(call, policy.timeout)
            return await call
        except PersistenceError as exc:
            if not exc.retryable:
                raise
            last_error = exc
        except (ValueError, TypeError):
            raise
        except Exception as exc:  # noqa: BLE001
            last_error = exc
        log.warning("%s failed (%s/%s): %r", label, attempt, attempts, last_error)
        if attempt < attempts:
            await sleep(policy.delay(attempt))
    log.error("%s giving up after %s attempts", label, attempts)
    raise PersistenceError(
        f"{label} failed after {attempts} attempts: {last_error}", retryable=True, attempts=attempts,
    ) from last_error


# ---------------------------------------------------------------------------
# Tracking blob normalization
# ---------------------------------------------------------------------------


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return False


def normalize_flags(blob: Any, stage: StageDefinition) -> dict[int, bool]:
    """Turn a stored tracking blob into ``{position: completed}`` for *stage*.

    Undecodable or oddly shaped data yields all positions not completed.
    """
    data = json_parse(blob, None) if isinstance(blob, (str, bytes)) else blob
    if isinstance(data, list):
        data = dict(enumerate(data))
    if not isinstance(data, Mapping):
        if blob not in (None, "", b""):
            log.debug("Undecodable tracking blob for stage %s: %r", stage.id, blob)
        return {i: False for i in range(stage.total)}

    flags: dict[int, bool] = {}
    for index, criterion in enumerate(stage.criteria):
        flags[index] = False
        for key in (criterion, index, str(index)):
            if key in data:
                flags[index] = _truthy(data[key])
                break
    return flags


def serialize_flags(flags: Mapping[int, bool], stage: StageDefinition) -> str:
    """Store flags keyed by criterion id, limited to the stage's declared criteria."""
    return json.dumps({c: bool(flags.get(i)) for i, c in enumerate(stage.criteria)})


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class TrackingStore:
    def __init__(self, session_factory: Callable[[], Session],
                 catalog: Iterable[StageDefinition] = DEFAULT_STAGES):
        self._session_factory = session_factory
        self.catalog = tuple(catalog)
        self._stages = {s.id: s for s in self.catalog}

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _stage(self, stage_id: str) -> StageDefinition:
        try:
            return self._stages[stage_id]
        except KeyError:
            raise ValueError(f"Unknown stage: {stage_id!r}") from None

    # -- reads -------------------------------------------------------------

    def load_project(self, project_id: str) -> Project | None:
        with self._session() as session:
            return session.get(Project, project_id)

    def load_stage_flags(self, project_id: str, stage_id: str) -> dict[int, bool]:
        stage = self._stage(stage_id)
        with self._session() as session:
            row = _tracking_row(session, project_id, stage_id)
            return normalize_flags(row.flags_json if row else None, stage)

    def load_tracking(self, project_id: str) -> dict[str, dict[int, bool]]:
        """Flags for every catalog stage, read in one session."""
        with self._session() as session:
            rows = session.execute(
                select(StageTracking).where(StageTracking.project_id == project_id)
            ).scalars().all()
        blobs = {r.stage_id: r.flags_json for r in rows}
        return {s.id: normalize_flags(blobs.get(s.id), s) for s in self.catalog}

    async def load_tracking_async(self, project_id: str) -> dict[str, dict[int, bool]]:
        """Read each stage's flags concurrently on worker threads.

        A stage whose read fails is reported as not started; the others are
        unaffected.
        """
        stage_ids = [s.id for s in self.catalog]
        results = await asyncio.gather(
            *(asyncio.to_thread(self.load_stage_flags, project_id, sid) for sid in stage_ids),
            return_exceptions=True,
        )
        tracking: dict[str, dict[int, bool]] = {}
        for stage_id, result in zip(stage_ids, results):
            if isinstance(result, BaseException):
                log.warning("Tracking read failed for %s/%s: %s", project_id, stage_id, result)
                result = {}
            tracking[stage_id] = result
        return tracking

    def load_metric(self, metric_id: str) -> Metric | None:
        with self._session() as session:
            return _find_by_either_id(session, Metric, metric_id)

    def load_metrics(self, project_id: str) -> list[Metric]:
        with self._session() as session:
            return list(session.execute(
                select(Metric).where(Metric.project_id == project_id).order_by(Metric.created_at)
            ).scalars().all())

    def load_pivot_options(self, project_id: str) -> list[PivotOption]:
        with self._session() as session:
            return list(session.execute(
                select(PivotOption).where(PivotOption.project_id == project_id).order_by(PivotOption.created_at)
            ).scalars().all())

    def load_triggers(self, project_id: str) -> list[PivotMetricTrigger]:
        """Trigger links attached to any of the project's pivot options (by either id)."""
        with self._session() as session:
            options = session.execute(
                select(PivotOption.id, PivotOption.original_id).where(PivotOption.project_id == project_id)
            ).all()
            keys = {k for row in options for k in row if k}
            if not keys:
                return []
            return list(session.execute(
                select(PivotMetricTrigger)
                .where(PivotMetricTrigger.pivot_option_id.in_(keys))
                .order_by(PivotMetricTrigger.id)
            ).scalars().all())

    # -- writes ------------------------------------------------------------

    def save_tracking_flags(self, project_id: str, stage_id: str, flags: Mapping[int, bool]) -> bool:
        """Persist one stage's flags. Returns False when nothing changed."""
        stage = self._stage(stage_id)
        with self._session() as session:
            if session.get(Project, project_id) is None:
                raise PersistenceError(f"Project {project_id} not found", retryable=False)
            row = _tracking_row(session, project_id, stage_id)
            wanted = {i: bool(flags.get(i)) for i in range(stage.total)}
            if row is not None and normalize_flags(row.flags_json, stage) == wanted:
                return False
            if row is None:
                row = StageTracking(project_id=project_id, stage_id=stage_id)
                session.add(row)
            row.flags_json = serialize_flags(wanted, stage)
            session.commit()
            return True

    def save_criterion(self, project_id: str, stage_id: str, index: int, completed: bool) -> bool:
        """Persist a single criterion flag, leaving the stage's other flags as stored.

        The row is rewritten only if its blob is unchanged since it was read;
        a concurrent writer raises a retryable :class:`PersistenceError` so the
        caller re-reads and reapplies.  Returns False when the flag was already set.
        """
        stage = self._stage(stage_id)
        if not 0 <= index < stage.total:
            raise ValueError(f"Criterion index {index} out of range for stage {stage_id!r}")
        with self._session() as session:
            if session.get(Project, project_id) is None:
                raise PersistenceError(f"Project {project_id} not found", retryable=False)
            row = _tracking_row(session, project_id, stage_id)
            flags = normalize_flags(row.flags_json if row else None, stage)
            if flags[index] == bool(completed):
                return False
            flags[index] = bool(completed)
            if row is None:
                session.add(StageTracking(project_id=project_id, stage_id=stage_id,
                                          flags_json=serialize_flags(flags, stage)))
                session.commit()
                return True
            result = session.execute(
                update(StageTracking)
                .where(StageTracking.id == row.id, StageTracking.flags_json == row.flags_json)
                .values(flags_json=serialize_flags(flags, stage))
            )
            if result.rowcount != 1:
                raise PersistenceError(f"Tracking for {project_id}/{stage_id} changed during write")
            session.commit()
            return True

    def save_metric_status(self, metric_id: str, status: Status | str) -> bool:
        """Persist a recomputed status. Returns False when it was already stored."""
        value = getattr(status, "value", status)
        with self._session() as session:
            metric = _metric_row(session, metric_id)
            if metric.status == value:
                return False
            metric.status = value
            session.add(MetricHistory(metric_id=metric.id, value=metric.current_value, status=value,
                                      recorded_at=utc_now()))
            session.commit()
            return True

    def save_metric_value(self, metric_id: str, current_value: str | None, status: Status | str) -> bool:
        """Persist a new current value with its status. Returns False when both were already stored."""
        value = getattr(status, "value", status)
        with self._session() as session:
            metric = _metric_row(session, metric_id)
            if metric.current_value == current_value and metric.status == value:
                return False
            metric.current_value = current_value
            metric.status = value
            session.add(MetricHistory(metric_id=metric.id, value=current_value, status=value,
                                      recorded_at=utc_now()))
            session.commit()
            return True

    def delete_metric(self, metric_id: str) -> bool:
        """Delete a metric and every trigger link pointing at it."""
        with self._session() as session:
            metric = _find_by_either_id(session, Metric, metric_id)
            if metric is None:
                return False
            keys = [k for k in (metric.id, metric.original_id) if k]
            session.execute(delete(PivotMetricTrigger).where(PivotMetricTrigger.metric_id.in_(keys)))
            session.delete(metric)
            session.commit()
            return True

    def delete_pivot_option(self, option_id: str) -> bool:
        """Delete a pivot option after removing its trigger links."""
        with self._session() as session:
            option = _find_by_either_id(session, PivotOption, option_id)
            if option is None:
                return False
            keys = [k for k in (option.id, option.original_id) if k]
            session.execute(delete(PivotMetricTrigger).where(PivotMetricTrigger.pivot_option_id.in_(keys)))
            session.delete(option)
            session.commit()
            return True

    def delete_project(self, project_id: str) -> bool:
        """Delete a project, its tracking, metrics, pivot options and their trigger links."""
        with self._session() as session:
            project = session.get(Project, project_id)
            if project is None:
                return False
            keys = [k for row in (*project.metrics, *project.pivot_options) for k in (row.id, row.original_id) if k]
            if keys:
                session.execute(delete(PivotMetricTrigger).where(or_(
                    PivotMetricTrigger.metric_id.in_(keys), PivotMetricTrigger.pivot_option_id.in_(keys),
                )))
            session.delete(project)
            session.commit()
            return True


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------


def _tracking_row(session: Session, project_id: str, stage_id: str) -> StageTracking | None:
    return session.execute(
        select(StageTracking).where(
            StageTracking.project_id == project_id, StageTracking.stage_id == stage_id,
        )
    ).scalars().first()


def _find_by_either_id(session: Session, model, ident: str):
    obj = session.get(model, ident)
    if obj is not None:
        return obj
    return session.execute(
        select(model).where(or_(model.id == ident, model.original_id == ident))
    ).scalars().first()


def _metric_row(session: Session, metric_id: str) -> Metric:
    metric = _find_by_either_id(session, Metric, metric_id)
    if metric is None:
        raise PersistenceError(f"Metric {metric_id} not found", retryable=False)
    return metric
