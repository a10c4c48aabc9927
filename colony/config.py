from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel


class SchedulerConfig(BaseModel):
    """Thresholds for the workflow maintenance sweeps."""

    enabled: bool = True
    interval_seconds: float = 60.0
    abandoned_step_age_minutes: float = 15.0
    retry_cooldown_minutes: float = 5.0
    run_timeout_minutes: float = 60.0


class ArchiveConfig(BaseModel):
    """Settings for automatic archival of completed tasks."""

    enabled: bool = True
    delay_hours: float = 24.0
    interval_seconds: float = 300.0


class ApiConfig(BaseModel):
    """HTTP server bind settings."""

    host: str = "127.0.0.1"
    port: int = 8000


class ColonyConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    scheduler: SchedulerConfig = SchedulerConfig()
    archive: ArchiveConfig = ArchiveConfig()
    api: ApiConfig = ApiConfig()


def load_config(path: Optional[str] = None) -> ColonyConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to COLONY_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("COLONY_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ColonyConfig(**data)
    else:
        config = ColonyConfig()

    env_db_url = os.getenv("COLONY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    if os.getenv("ARCHIVE_ENABLED", "").lower() == "false":
        config.archive.enabled = False
    env_delay = os.getenv("ARCHIVE_DELAY_HOURS")
    if env_delay:
        config.archive.delay_hours = float(env_delay)
    return config
