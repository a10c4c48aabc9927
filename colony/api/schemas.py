"""Request bodies and response helpers for the HTTP API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlmodel import SQLModel

from ..templating import deserialize_output


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkflowCreate(_Body):
    name: Optional[str] = None
    description: Optional[str] = None
    steps: List[Dict[str, Any]] = Field(default_factory=list)


class WorkflowUpdate(_Body):
    name: Optional[str] = None
    description: Optional[str] = None
    steps: Optional[List[Dict[str, Any]]] = None


class WorkflowImport(_Body):
    yaml: Optional[str] = None


class RunCreate(_Body):
    workflow_id: Optional[str] = None
    task_id: Optional[Union[str, int]] = None
    task: Optional[str] = None
    seed_context: Optional[Dict[str, Any]] = Field(default=None, alias="seedContext")
    context: Optional[Dict[str, Any]] = None


class StatusUpdate(_Body):
    status: Optional[str] = None


class ClaimRequest(_Body):
    agent_id: Optional[str] = None


class AgentClaimRequest(_Body):
    agent_id: Optional[str] = None
    run_id: Optional[str] = None


class CompleteRequest(_Body):
    output: Any = None


class FailRequest(_Body):
    error: Optional[str] = None
    output: Any = None


class ApproveRequest(_Body):
    note: Optional[str] = None


class RejectRequest(_Body):
    reason: Optional[str] = None


class StepPatch(_Body):
    status: Optional[str] = None
    output: Any = None
    current_story_id: Optional[str] = None


class StoryCreate(_Body):
    story_id: Optional[str] = None
    title: Optional[str] = None
    step_id: Optional[str] = None
    description: Optional[str] = None
    acceptance_criteria: Any = None
    story_index: Optional[int] = None
    max_retries: Optional[int] = None


class StoryPatch(_Body):
    status: Optional[str] = None
    output: Any = None


def row(record: SQLModel, **extra: Any) -> Dict[str, Any]:
    """Serialize a table row; stored JSON output is decoded back."""
    data = record.model_dump()
    if "output" in data:
        data["output"] = deserialize_output(data["output"])
    data.update(extra)
    return data


def envelope(data: Any = None, message: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    body.update(extra)
    return body
