from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Text
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops the offset on storage, so values read back are tagged as UTC
    again. Naive values handed in are taken to already be UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp; all stored datetimes use this form."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class WorkflowRecord(SQLModel, table=True):
    """A reusable pipeline template."""

    __tablename__ = "workflows"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True, unique=True)
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class WorkflowStepRecord(SQLModel, table=True):
    """One step definition of a workflow template."""

    __tablename__ = "workflow_steps"

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(foreign_key="workflows.id", index=True)
    step_id: str
    name: Optional[str] = None
    agent_id: str
    input_template: str = Field(sa_column=Column(Text, nullable=False))
    expects: str = Field(sa_column=Column(Text, nullable=False))
    kind: str = Field(default="single")
    loop_config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    position: int = 0


class Run(SQLModel, table=True):
    """One execution of a workflow bound to a task."""

    __tablename__ = "runs"

    id: str = Field(default_factory=new_id, primary_key=True)
    workflow_id: str = Field(foreign_key="workflows.id", index=True)
    task_id: Optional[str] = Field(default=None, index=True)
    task: Optional[str] = Field(default=None, sa_column=Column(Text))
    status: str = Field(default="pending", index=True)
    context: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Step(SQLModel, table=True):
    """A stage of a run's pipeline."""

    __tablename__ = "steps"

    id: str = Field(default_factory=new_id, primary_key=True)
    run_id: str = Field(foreign_key="runs.id", index=True)
    step_index: int
    step_id: str
    agent_id: Optional[str] = Field(default=None, index=True)
    input_template: str = Field(sa_column=Column(Text, nullable=False))
    expects: str = Field(sa_column=Column(Text, nullable=False))
    kind: str = Field(default="single")
    loop_config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    status: str = Field(default="waiting", index=True)
    output: Optional[str] = Field(default=None, sa_column=Column(Text))
    retry_count: int = 0
    max_retries: int = 3
    current_story_id: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Story(SQLModel, table=True):
    """One iteration unit of a loop step."""

    __tablename__ = "stories"

    id: str = Field(default_factory=new_id, primary_key=True)
    run_id: str = Field(foreign_key="runs.id", index=True)
    step_id: Optional[str] = Field(default=None, foreign_key="steps.id", index=True)
    story_index: int = 0
    story_id: str
    title: str
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    acceptance_criteria: Optional[str] = Field(default=None, sa_column=Column(Text))
    status: str = Field(default="pending", index=True)
    output: Optional[str] = Field(default=None, sa_column=Column(Text))
    retry_count: int = 0
    max_retries: int = 3
    claimed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Task(SQLModel, table=True):
    """Board task record; only the archival fields matter to the engine."""

    __tablename__ = "tasks"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    status: str = Field(default="todo", index=True)
    board_id: Optional[int] = Field(default=None, index=True)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    archived: bool = Field(default=False, index=True)
    archived_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    archive_scheduled: bool = False
    archive_scheduled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class TaskActivity(SQLModel, table=True):
    """Audit trail entry for a task change."""

    __tablename__ = "task_activities"

    id: Optional[int] = Field(default=None, primary_key=True)
    task_id: int = Field(index=True)
    action: str
    actor_type: str = "system"
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    note: Optional[str] = None
    source: str = "api"
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
