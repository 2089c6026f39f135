from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    pass


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    current_stage: Mapped[str] = mapped_column(String(50), default="problem")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    tracking: Mapped[list[StageTracking]] = relationship("StageTracking", back_populates="project", cascade="all, delete-orphan")
    metrics: Mapped[list[Metric]] = relationship("Metric", back_populates="project", cascade="all, delete-orphan")
    pivot_options: Mapped[list[PivotOption]] = relationship("PivotOption", back_populates="project", cascade="all, delete-orphan")


class StageTracking(Base):
    """Completion flags for one stage of one project, stored as a JSON blob keyed by criterion id."""
    __tablename__ = "stage_tracking"
    __table_args__ = (UniqueConstraint("project_id", "stage_id", name="uq_stage_tracking_project_stage"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), nullable=False)
    stage_id: Mapped[str] = mapped_column(String(50), nullable=False)
    flags_json: Mapped[str] = mapped_column(Text, default="{}")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="tracking")


class Metric(Base):
    __tablename__ = "metrics"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    original_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(50), default="custom")  # acquisition | activation | retention | revenue | referral | custom
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    current_value: Mapped[str | None] = mapped_column(String(50), nullable=True)
    target_value: Mapped[str] = mapped_column(String(50), nullable=False)
    warning_threshold: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_threshold: Mapped[str | None] = mapped_column(String(50), nullable=True)
    direction: Mapped[str] = mapped_column(String(30), default="higher-is-better")
    status: Mapped[str] = mapped_column(String(20), default="not-started")  # not-started | success | warning | error
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="metrics")
    history: Mapped[list[MetricHistory]] = relationship(
        "MetricHistory", back_populates="metric", cascade="all, delete-orphan",
        order_by="MetricHistory.id",
    )


class MetricHistory(Base):
    __tablename__ = "metric_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    metric_id: Mapped[str] = mapped_column(String(36), ForeignKey("metrics.id"), nullable=False)
    value: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[str] = mapped_column(Text, default="")
    recorded_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    metric: Mapped[Metric] = relationship("Metric", back_populates="history")


class PivotOption(Base):
    __tablename__ = "pivot_options"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    original_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    trigger_description: Mapped[str] = mapped_column(Text, default="")
    likelihood: Mapped[str] = mapped_column(String(10), default="medium")  # high | medium | low
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="pivot_options")


class PivotMetricTrigger(Base):
    """Association of a metric with a pivot option.

    Both ids are plain strings without foreign keys: a trigger may reference a
    metric or pivot option by its original id, and rows left behind by deletes
    must be tolerated by readers.
    """
    __tablename__ = "pivot_metric_triggers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pivot_option_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    metric_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    threshold_type: Mapped[str] = mapped_column(String(50), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
