from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

_ENV_PREFIX = "LEANTRACK_"


def _resolve_project_root() -> Path:
    override = os.getenv("LEANTRACK_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _env(name: str, default: Any) -> Any:
    raw = os.getenv(_ENV_PREFIX + name, "").strip()
    return raw if raw else default


def _env_path(name: str) -> Path | None:
    raw = os.getenv(_ENV_PREFIX + name, "").strip()
    return Path(raw).expanduser() if raw else None


class Settings(BaseModel):
    # env-sourced defaults arrive as strings and must be coerced
    model_config = ConfigDict(validate_default=True)

    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")
    database_path: Path = Field(
        default_factory=lambda: _env_path("DATABASE_PATH") or _resolve_project_root() / "data" / "leantrack.db"
    )

    write_max_retries: int = Field(default_factory=lambda: _env("WRITE_MAX_RETRIES", 3), ge=0)
    write_backoff_seconds: float = Field(default_factory=lambda: _env("WRITE_BACKOFF_SECONDS", 0.5), ge=0)
    write_backoff_factor: float = Field(default_factory=lambda: _env("WRITE_BACKOFF_FACTOR", 2.0), ge=1)
    write_backoff_max_seconds: float = Field(default_factory=lambda: _env("WRITE_BACKOFF_MAX_SECONDS", 8.0), ge=0)
    write_timeout_seconds: float | None = Field(default_factory=lambda: _env("WRITE_TIMEOUT_SECONDS", 10.0))
    rollback_on_write_failure: bool = Field(default_factory=lambda: _env("ROLLBACK_ON_WRITE_FAILURE", False))

    reachable_threshold: int = Field(default_factory=lambda: _env("REACHABLE_THRESHOLD", 50), ge=0, le=100)
    stage_catalog_file: Path | None = Field(default_factory=lambda: _env_path("STAGE_CATALOG"))

    _catalog: tuple | None = PrivateAttr(default=None)

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def retry_policy(self):
        from leantrack.store import RetryPolicy

        return RetryPolicy(
            max_retries=self.write_max_retries,
            base_delay=self.write_backoff_seconds,
            factor=self.write_backoff_factor,
            max_delay=self.write_backoff_max_seconds,
            timeout=self.write_timeout_seconds,
        )

    def stage_catalog(self):
        """Stage catalog from ``stage_catalog_file`` if set, else the built-in six stages.

        The file is read once per settings instance.
        """
        from leantrack.stages import DEFAULT_STAGES, load_catalog

        if self._catalog is None:
            if self.stage_catalog_file is None:
                self._catalog = tuple(DEFAULT_STAGES)
            else:
                self._catalog = tuple(load_catalog(self.load_yaml(self.stage_catalog_file)))
        return self._catalog


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
