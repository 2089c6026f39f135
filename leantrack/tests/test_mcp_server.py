"""Tests for the MCP tool functions, called directly against a temporary database."""
from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from leantrack import mcp_server, services
from leantrack.config import Settings
from leantrack.models import Base
from leantrack.stages import DEFAULT_STAGES
from leantrack.store import TrackingStore


@pytest.fixture()
def factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'mcp.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture()
def wired(factory, tmp_path):
    settings = Settings(project_root=tmp_path, data_dir=tmp_path / "data", database_path=tmp_path / "mcp.db",
                        write_max_retries=0, write_backoff_seconds=0, write_timeout_seconds=None)
    with patch("leantrack.mcp_server.get_session", side_effect=factory), \
         patch("leantrack.mcp_server.get_settings", return_value=settings), \
         patch("leantrack.mcp_server._store", side_effect=lambda: TrackingStore(factory, DEFAULT_STAGES)):
        yield factory


@pytest.fixture()
def project_id(wired) -> str:
    with wired() as session:
        project = services.create_project(session, name="Acme")
        session.commit()
        return project.id


class TestProgressTools:
    @pytest.mark.asyncio
    async def test_set_and_get(self, project_id):
        result = await mcp_server.set_criterion(project_id, "problem", 0, True)
        assert result["percent"] == 25
        progress = await mcp_server.get_progress(project_id)
        assert progress["overall"] == 4
        assert progress["stages"][0]["criteria"][0]["completed"] is True

    @pytest.mark.asyncio
    async def test_missing_project(self, wired):
        assert "error" in await mcp_server.get_progress("missing")
        assert "error" in await mcp_server.set_criterion("missing", "problem", 0)

    @pytest.mark.asyncio
    async def test_bad_index(self, project_id):
        result = await mcp_server.set_criterion(project_id, "problem", 12)
        assert "out of range" in result["error"]

    @pytest.mark.asyncio
    async def test_persistence_error(self, project_id):
        with patch.object(TrackingStore, "save_criterion", side_effect=RuntimeError("locked")):
            result = await mcp_server.set_criterion(project_id, "problem", 0, True)
        assert result["error_code"] == "PERSISTENCE_ERROR"
        assert result["retryable"] is True
        assert result["overall"] == 4


class TestMetricTools:
    def test_classify_metric(self):
        assert mcp_server.classify_metric("18%", "20%", "15%", "10%") == {
            "status": "warning", "growth_status": "at-risk",
        }

    @pytest.mark.asyncio
    async def test_update_metric_value_and_signals(self, wired, project_id):
        with wired() as session:
            metric = services.create_metric(session, project_id, name="Signups", target_value="20%",
                                            current_value="25%", error_threshold="10%")
            option = services.create_pivot_option(session, project_id, type="zoom-out")
            services.create_trigger(session, option, metric.id)
            session.commit()
            metric_id = metric.id

        assert mcp_server.get_pivot_signals(project_id)["has_active_triggers"] is False
        updated = await mcp_server.update_metric_value(metric_id, "5%")
        assert updated["status"] == "error"
        signals = mcp_server.get_pivot_signals(project_id)
        assert signals["active_triggers"][0]["metric"]["id"] == metric_id

    @pytest.mark.asyncio
    async def test_update_missing_metric(self, wired):
        assert "error" in await mcp_server.update_metric_value("nope", "1")

    def test_overview_resource(self, wired):
        overview = json.loads(mcp_server.leantrack_overview())
        assert [s["id"] for s in overview["stages"]][0] == "problem"
        assert "warning" in overview["metric_statuses"]
