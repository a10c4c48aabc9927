"""Workflow catalog: reusable pipeline templates."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional, Union

import yaml
from pydantic import ValidationError
from sqlalchemy import delete, func
from sqlmodel import select

from .contracts import (
    ALL_DONE,
    LoopStepDefinition,
    RunStatus,
    StepDefinition,
    StepKind,
    WorkflowDefinition,
    step_definition_adapter,
)
from .db import Database, Run, Step, Story, WorkflowRecord, WorkflowStepRecord, utcnow
from .errors import InvalidInputError, NotFoundError, PreconditionError, UnsupportedPolicyError

logger = logging.getLogger(__name__)

RawStep = Union[dict, StepDefinition]

_STEP_KEY_ALIASES = {
    "stepId": "step_id",
    "agentId": "agent_id",
    "inputTemplate": "input_template",
    "loopConfig": "loop_config",
    "type": "kind",
}


def _normalize_step(raw: RawStep, index: int) -> StepDefinition:
    if not isinstance(raw, dict):
        data = raw.model_dump()
    else:
        data = {_STEP_KEY_ALIASES.get(k, k): v for k, v in raw.items()}
    kind = data.get("kind") or StepKind.SINGLE.value
    if kind not in {k.value for k in StepKind}:
        raise InvalidInputError(
            f"Invalid step type: {kind}. Must be one of: "
            + ", ".join(k.value for k in StepKind)
        )
    data["kind"] = kind
    if kind != StepKind.LOOP.value:
        data.pop("loop_config", None)
    elif data.get("loop_config") is None:
        data.pop("loop_config", None)

    for field in ("step_id", "agent_id", "input_template", "expects"):
        if not data.get(field):
            raise InvalidInputError(f"Step at index {index}: {field} is required")

    try:
        step = step_definition_adapter.validate_python(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(p) for p in first["loc"])
        raise InvalidInputError(
            f"Step at index {index} is invalid ({location}): {first['msg']}"
        ) from exc

    if step.position is None:
        step.position = index
    return step


def validate_steps(raw_steps: Iterable[RawStep]) -> List[StepDefinition]:
    """Validate step definitions and the loop settings that reference them."""
    if raw_steps is None:
        return []
    if not isinstance(raw_steps, (list, tuple)):
        raise InvalidInputError("steps must be an array")

    steps = [_normalize_step(raw, i) for i, raw in enumerate(raw_steps)]
    known = {s.step_id for s in steps}
    for step in steps:
        if not isinstance(step, LoopStepDefinition):
            continue
        config = step.loop_config
        if config.completion != ALL_DONE:
            raise UnsupportedPolicyError(
                f"Unsupported loop completion policy '{config.completion}' "
                f"for step '{step.step_id}'; only '{ALL_DONE}' is supported"
            )
        if config.verify_each:
            if not config.verify_step:
                raise InvalidInputError(
                    f"Loop step '{step.step_id}' enables verify_each without verify_step"
                )
            if config.verify_step not in known or config.verify_step == step.step_id:
                raise InvalidInputError(
                    f"Loop step '{step.step_id}' references unknown verify step "
                    f"'{config.verify_step}'"
                )
    return sorted(steps, key=lambda s: s.position)


def parse_workflow_yaml(text: str) -> dict:
    """Parse a workflow YAML document into ``create_workflow`` arguments.

    Example::

        name: feature-development
        description: Design and implement a feature
        steps:
          - step_id: design
            agent_id: architect
            input_template: |
              Design the following feature:
              {{task}}
            expects: design_document
    """

    if not text or not isinstance(text, str):
        raise InvalidInputError("YAML string is required")
    try:
        parsed = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise InvalidInputError(f"YAML parsing failed: {exc}") from exc
    if not isinstance(parsed, dict):
        raise InvalidInputError("YAML must parse to an object")
    if not parsed.get("name"):
        raise InvalidInputError("name is required in YAML")

    steps = parsed.get("steps") or []
    if not isinstance(steps, list):
        raise InvalidInputError("steps must be a list")
    for index, step in enumerate(steps):
        if not isinstance(step, dict):
            raise InvalidInputError(f"Step at index {index} must be a mapping")
        step.setdefault("position", index)

    return {
        "name": parsed["name"],
        "description": parsed.get("description"),
        "steps": steps,
    }


def _to_definition(record: WorkflowRecord, steps: List[WorkflowStepRecord]) -> WorkflowDefinition:
    definitions = []
    for row in steps:
        data: dict[str, Any] = {
            "step_id": row.step_id,
            "name": row.name,
            "agent_id": row.agent_id,
            "input_template": row.input_template,
            "expects": row.expects,
            "kind": row.kind,
            "position": row.position,
        }
        if row.kind == StepKind.LOOP.value and row.loop_config is not None:
            data["loop_config"] = row.loop_config
        definitions.append(step_definition_adapter.validate_python(data))
    return WorkflowDefinition(
        id=record.id,
        name=record.name,
        description=record.description,
        steps=definitions,
    )


def _step_rows(workflow_id: str, steps: List[StepDefinition]) -> List[WorkflowStepRecord]:
    return [
        WorkflowStepRecord(
            workflow_id=workflow_id,
            step_id=step.step_id,
            name=step.name,
            agent_id=step.agent_id,
            input_template=step.input_template,
            expects=step.expects,
            kind=step.kind,
            loop_config=(
                step.loop_config.model_dump()
                if isinstance(step, LoopStepDefinition)
                else None
            ),
            position=step.position,
        )
        for step in steps
    ]


async def _active_runs(session, workflow_id: str) -> int:
    result = await session.exec(
        select(func.count())
        .select_from(Run)
        .where(
            Run.workflow_id == workflow_id,
            Run.status.in_([RunStatus.PENDING.value, RunStatus.RUNNING.value]),
        )
    )
    return result.one()


class WorkflowCatalog:
    """Stores and retrieves workflow templates."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def _load(self, session, record: WorkflowRecord) -> WorkflowDefinition:
        result = await session.exec(
            select(WorkflowStepRecord)
            .where(WorkflowStepRecord.workflow_id == record.id)
            .order_by(WorkflowStepRecord.position, WorkflowStepRecord.id)
        )
        return _to_definition(record, list(result.all()))

    async def create_workflow(
        self,
        name: str,
        description: Optional[str] = None,
        steps: Optional[Iterable[RawStep]] = None,
    ) -> WorkflowDefinition:
        if not name:
            raise InvalidInputError("name is required")
        definitions = validate_steps(steps or [])

        async with self._db.transaction() as session:
            existing = await session.exec(
                select(WorkflowRecord).where(WorkflowRecord.name == name)
            )
            if existing.first() is not None:
                raise InvalidInputError(f"Workflow '{name}' already exists")
            record = WorkflowRecord(name=name, description=description)
            session.add(record)
            await session.flush()
            session.add_all(_step_rows(record.id, definitions))

        logger.info(f"Created workflow {name} ({record.id}) with {len(definitions)} steps")
        return await self.get_workflow(record.id)

    async def import_yaml(self, text: str) -> WorkflowDefinition:
        """Create a workflow from a YAML document."""
        return await self.create_workflow(**parse_workflow_yaml(text))

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        async with self._db.session() as session:
            record = await session.get(WorkflowRecord, workflow_id)
            if record is None:
                return None
            return await self._load(session, record)

    async def get_workflow_by_name(self, name: str) -> WorkflowDefinition | None:
        async with self._db.session() as session:
            result = await session.exec(
                select(WorkflowRecord).where(WorkflowRecord.name == name)
            )
            record = result.first()
            if record is None:
                return None
            return await self._load(session, record)

    async def list_workflows(self, name: Optional[str] = None) -> list[WorkflowDefinition]:
        async with self._db.session() as session:
            query = select(WorkflowRecord).order_by(WorkflowRecord.created_at.desc())
            if name:
                query = query.where(WorkflowRecord.name == name)
            records = (await session.exec(query)).all()
            return [await self._load(session, record) for record in records]

    async def update_workflow(
        self,
        workflow_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        steps: Optional[Iterable[RawStep]] = None,
    ) -> WorkflowDefinition:
        """Rename, redescribe or replace the steps of an idle workflow."""
        definitions = validate_steps(steps) if steps is not None else None
        if name is not None and not name:
            raise InvalidInputError("name is required")

        async with self._db.transaction() as session:
            record = await session.get(WorkflowRecord, workflow_id)
            if record is None:
                raise NotFoundError("Workflow")
            if await _active_runs(session, workflow_id):
                raise PreconditionError("Cannot update workflow with active runs")
            if name is not None and name != record.name:
                taken = await session.exec(
                    select(WorkflowRecord.id).where(
                        WorkflowRecord.name == name, WorkflowRecord.id != workflow_id
                    )
                )
                if taken.first() is not None:
                    raise InvalidInputError(f"Workflow '{name}' already exists")
                record.name = name
            if description is not None:
                record.description = description
            record.updated_at = utcnow()
            if definitions is not None:
                await session.exec(
                    delete(WorkflowStepRecord).where(
                        WorkflowStepRecord.workflow_id == workflow_id
                    )
                )
                session.add_all(_step_rows(workflow_id, definitions))

        logger.info(f"Updated workflow {workflow_id}")
        return await self.get_workflow(workflow_id)

    async def delete_workflow(self, workflow_id: str) -> None:
        """Remove a workflow unless one of its runs is still active."""
        async with self._db.transaction() as session:
            record = await session.get(WorkflowRecord, workflow_id)
            if record is None:
                raise NotFoundError("Workflow")
            if await _active_runs(session, workflow_id):
                raise PreconditionError("Cannot delete workflow with active runs")
            finished = select(Run.id).where(Run.workflow_id == workflow_id)
            await session.exec(delete(Story).where(Story.run_id.in_(finished)))
            await session.exec(delete(Step).where(Step.run_id.in_(finished)))
            await session.exec(delete(Run).where(Run.workflow_id == workflow_id))
            await session.exec(
                delete(WorkflowStepRecord).where(
                    WorkflowStepRecord.workflow_id == workflow_id
                )
            )
            await session.delete(record)
        logger.info(f"Deleted workflow {workflow_id}")
