"""Persistence layer for colony runs, steps, stories and tasks."""

from __future__ import annotations

from typing import Optional

from ..config import ColonyConfig, load_config
from .database import Database, normalize_url
from .models import (
    Run,
    Step,
    Story,
    Task,
    TaskActivity,
    WorkflowRecord,
    WorkflowStepRecord,
    utcnow,
)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///colony.db"

_database_instance: Database | None = None


def get_database(
    database_url: Optional[str] = None, config: Optional[ColonyConfig] = None
) -> Database:
    """Factory function to obtain the shared database helper.

    The URL can be provided explicitly, via ``COLONY_DATABASE_URL`` or
    ``DATABASE_URL`` (applied by :func:`load_config`), or from the config
    file. Without any of these a local SQLite file is used.
    """

    global _database_instance
    if _database_instance is not None and database_url is None and config is None:
        return _database_instance

    config = config or load_config()
    url = database_url or config.database_url or DEFAULT_DATABASE_URL
    _database_instance = Database(url)
    return _database_instance


__all__ = [
    "Database",
    "Run",
    "Step",
    "Story",
    "Task",
    "TaskActivity",
    "WorkflowRecord",
    "WorkflowStepRecord",
    "get_database",
    "normalize_url",
    "utcnow",
]
