"""Tests for environment-driven settings and the stage catalog override."""
from __future__ import annotations

import pytest

from leantrack.config import Settings
from leantrack.stages import DEFAULT_STAGES
from leantrack.store import RetryPolicy


class TestSettings:
    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LEANTRACK_HOME", str(tmp_path))
        settings = Settings()
        assert settings.project_root == tmp_path.resolve()
        assert settings.database_path == tmp_path.resolve() / "data" / "leantrack.db"
        assert settings.rollback_on_write_failure is False
        assert settings.reachable_threshold == 50
        assert settings.retry_policy() == RetryPolicy(max_retries=3, base_delay=0.5, factor=2.0,
                                                      max_delay=8.0, timeout=10.0)

    def test_env_overrides_are_coerced(self, monkeypatch):
        monkeypatch.setenv("LEANTRACK_WRITE_MAX_RETRIES", "5")
        monkeypatch.setenv("LEANTRACK_WRITE_BACKOFF_SECONDS", "0.25")
        monkeypatch.setenv("LEANTRACK_ROLLBACK_ON_WRITE_FAILURE", "true")
        monkeypatch.setenv("LEANTRACK_REACHABLE_THRESHOLD", "75")
        settings = Settings()
        assert settings.write_max_retries == 5
        assert settings.write_backoff_seconds == 0.25
        assert settings.rollback_on_write_failure is True
        assert settings.reachable_threshold == 75

    def test_invalid_threshold_rejected(self, monkeypatch):
        monkeypatch.setenv("LEANTRACK_REACHABLE_THRESHOLD", "150")
        with pytest.raises(ValueError):
            Settings()

    def test_database_path_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LEANTRACK_DATABASE_PATH", str(tmp_path / "custom.db"))
        assert Settings().database_url == f"sqlite:///{tmp_path / 'custom.db'}"


class TestStageCatalogOverride:
    def test_default_catalog(self, monkeypatch):
        monkeypatch.delenv("LEANTRACK_STAGE_CATALOG", raising=False)
        assert Settings().stage_catalog() == DEFAULT_STAGES

    def test_yaml_catalog(self, monkeypatch, tmp_path):
        path = tmp_path / "stages.yaml"
        path.write_text(
            "stages:\n"
            "  - id: discover\n"
            "    label: Discovery\n"
            "    criteria: [talk_to_users, synthesize]\n"
            "  - id: build\n"
            "    criteria:\n"
            "      - id: prototype\n"
            "        label: Clickable prototype\n",
            encoding="utf-8",
        )
        monkeypatch.setenv("LEANTRACK_STAGE_CATALOG", str(path))
        catalog = Settings().stage_catalog()
        assert [s.id for s in catalog] == ["discover", "build"]
        assert catalog[1].criterion_label(0) == "Clickable prototype"

    def test_catalog_file_read_once(self, monkeypatch, tmp_path):
        path = tmp_path / "stages.yaml"
        path.write_text("stages:\n  - id: discover\n    criteria: [talk_to_users]\n", encoding="utf-8")
        monkeypatch.setenv("LEANTRACK_STAGE_CATALOG", str(path))
        settings = Settings()
        first = settings.stage_catalog()
        path.unlink()
        assert settings.stage_catalog() is first

    def test_missing_file_is_invalid(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LEANTRACK_STAGE_CATALOG", str(tmp_path / "absent.yaml"))
        with pytest.raises(ValueError):
            Settings().stage_catalog()
