"""Core value objects shared by the workflow engine."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

STORIES_KEY = "STORIES_JSON"
MAX_STORIES = 20
ALL_DONE = "all_done"
DEFAULT_MAX_RETRIES = 3


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    WAITING = "waiting"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"


class StoryStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


class StepKind(str, Enum):
    SINGLE = "single"
    LOOP = "loop"
    APPROVAL = "approval"


class _AliasedModel(BaseModel):
    """Accepts both snake_case and camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoopConfig(_AliasedModel):
    """Iteration settings of a loop step."""

    over: Literal["stories"] = "stories"
    completion: str = ALL_DONE
    fresh_session: bool = False
    verify_each: bool = False
    verify_step: Optional[str] = None


class _StepDefinitionBase(_AliasedModel):
    step_id: str = Field(min_length=1)
    agent_id: str = Field(min_length=1)
    input_template: str = Field(min_length=1)
    expects: str = Field(min_length=1)
    name: Optional[str] = None
    position: Optional[int] = None


class SingleStepDefinition(_StepDefinitionBase):
    kind: Literal["single"] = "single"


class ApprovalStepDefinition(_StepDefinitionBase):
    kind: Literal["approval"] = "approval"


class LoopStepDefinition(_StepDefinitionBase):
    kind: Literal["loop"] = "loop"
    loop_config: LoopConfig = Field(default_factory=LoopConfig)


StepDefinition = Annotated[
    Union[SingleStepDefinition, LoopStepDefinition, ApprovalStepDefinition],
    Field(discriminator="kind"),
]
step_definition_adapter: TypeAdapter = TypeAdapter(StepDefinition)


class WorkflowDefinition(BaseModel):
    """A reusable pipeline template as stored in the catalog."""

    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)


class StorySeed(BaseModel):
    """One story parsed from a STORIES_JSON payload."""

    story_id: str
    title: str
    description: str
    acceptance_criteria: List[str] = Field(default_factory=list)


class ClaimResult(BaseModel):
    """A unit of work handed to an agent."""

    run_id: str
    step_id: str
    step_key: str
    agent_id: Optional[str] = None
    resolved_input: str
    story_id: Optional[str] = None
    story_key: Optional[str] = None


class CompletionResult(BaseModel):
    """Outcome of completing a step or story."""

    completed: bool = True
    run_completed: bool = False
    needs_verify: bool = False
    verify_step_id: Optional[str] = None
    stories_created: int = 0


class FailureResult(BaseModel):
    """Outcome of reporting a failed step or story."""

    status: str
    will_retry: bool
    retry_count: int
    max_retries: int
    run_failed: bool = False


class SweepReport(BaseModel):
    """Per-category counts of one maintenance pass."""

    abandoned_steps: int = 0
    abandoned_stories: int = 0
    retried_steps: int = 0
    retried_stories: int = 0
    timed_out_runs: int = 0

    def total(self) -> int:
        return sum(self.model_dump().values())


Context = Dict[str, str]
