"""Run orchestrator: public run, step and story operations."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlmodel import select

from .catalog import WorkflowCatalog
from .claims import ClaimEngine
from .contracts import (
    DEFAULT_MAX_RETRIES,
    CompletionResult,
    FailureResult,
    LoopStepDefinition,
    RunStatus,
    StepStatus,
    StoryStatus,
)
from .db import Database, Run, Step, Story, utcnow
from .errors import InvalidInputError, NotFoundError, PreconditionError
from .pipeline import PipelineAdvancer
from .templating import render_criteria, serialize_output
from .transitions import reload_step, reload_story, transition_step, transition_story

logger = logging.getLogger(__name__)

STEP_TRANSITIONS: Dict[str, frozenset] = {
    StepStatus.WAITING.value: frozenset(
        {StepStatus.PENDING.value, StepStatus.RUNNING.value, StepStatus.AWAITING_APPROVAL.value}
    ),
    StepStatus.PENDING.value: frozenset({StepStatus.RUNNING.value, StepStatus.WAITING.value}),
    StepStatus.RUNNING.value: frozenset(
        {
            StepStatus.COMPLETED.value,
            StepStatus.FAILED.value,
            StepStatus.AWAITING_APPROVAL.value,
            StepStatus.WAITING.value,
            StepStatus.PENDING.value,
        }
    ),
    StepStatus.AWAITING_APPROVAL.value: frozenset(
        {StepStatus.RUNNING.value, StepStatus.COMPLETED.value, StepStatus.FAILED.value}
    ),
    StepStatus.COMPLETED.value: frozenset(),
    StepStatus.FAILED.value: frozenset(),
}

STORY_TRANSITIONS: Dict[str, frozenset] = {
    StoryStatus.PENDING.value: frozenset({StoryStatus.RUNNING.value}),
    StoryStatus.RUNNING.value: frozenset({StoryStatus.COMPLETED.value, StoryStatus.FAILED.value}),
    StoryStatus.VERIFYING.value: frozenset({StoryStatus.FAILED.value}),
    StoryStatus.FAILED.value: frozenset({StoryStatus.PENDING.value}),
    StoryStatus.COMPLETED.value: frozenset(),
}

_UNSET: Any = object()


def _check_status(value: str, allowed) -> str:
    values = [s.value for s in allowed]
    if value not in values:
        raise InvalidInputError(
            f"Invalid status: {value}. Must be one of: {', '.join(values)}"
        )
    return value


def _seed_context(task: Optional[str], context: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    seeded = {str(k).lower(): str(v) for k, v in (context or {}).items()}
    if task and "task" not in seeded:
        seeded["task"] = task
    return seeded


class RunOrchestrator:
    """Facade used by the HTTP layer and the CLI."""

    def __init__(
        self,
        db: Database,
        catalog: Optional[WorkflowCatalog] = None,
        claims: Optional[ClaimEngine] = None,
        pipeline: Optional[PipelineAdvancer] = None,
    ) -> None:
        self.db = db
        self.catalog = catalog or WorkflowCatalog(db)
        self.claims = claims or ClaimEngine(db)
        self.pipeline = pipeline or PipelineAdvancer(db)

    # runs

    async def create_run(
        self,
        workflow_id: str,
        task_id: Optional[str] = None,
        task: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Run:
        """Instantiate a workflow: first step pending, the rest waiting."""
        workflow = await self.catalog.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow")

        now = utcnow()
        run = Run(
            workflow_id=workflow.id,
            task_id=str(task_id) if task_id is not None else None,
            task=task,
            status=RunStatus.RUNNING.value if workflow.steps else RunStatus.COMPLETED.value,
            context=_seed_context(task, context),
            started_at=now,
            completed_at=None if workflow.steps else now,
        )
        async with self.db.transaction() as session:
            session.add(run)
            await session.flush()
            for index, definition in enumerate(workflow.steps):
                session.add(
                    Step(
                        run_id=run.id,
                        step_index=index,
                        step_id=definition.step_id,
                        agent_id=definition.agent_id,
                        input_template=definition.input_template,
                        expects=definition.expects,
                        kind=definition.kind,
                        loop_config=(
                            definition.loop_config.model_dump()
                            if isinstance(definition, LoopStepDefinition)
                            else None
                        ),
                        status=(
                            StepStatus.PENDING.value if index == 0 else StepStatus.WAITING.value
                        ),
                        max_retries=DEFAULT_MAX_RETRIES,
                    )
                )

        logger.info(
            f"Created run {run.id} of workflow {workflow.name} with {len(workflow.steps)} steps"
        )
        return run

    async def get_run(self, run_id: str) -> Run:
        async with self.db.session() as session:
            run = await session.get(Run, run_id)
        if run is None:
            raise NotFoundError("Run")
        return run

    async def list_runs(
        self, status: Optional[str] = None, task_id: Optional[str] = None
    ) -> List[Run]:
        query = select(Run).order_by(Run.created_at.desc())
        if status is not None:
            query = query.where(Run.status == _check_status(status, RunStatus))
        if task_id is not None:
            query = query.where(Run.task_id == str(task_id))
        async with self.db.session() as session:
            return list((await session.exec(query)).all())

    async def update_run_status(self, run_id: str, status: str) -> Run:
        """Direct override, e.g. cancelling a run."""
        _check_status(status, RunStatus)
        async with self.db.transaction() as session:
            run = await session.get(Run, run_id)
            if run is None:
                raise NotFoundError("Run")
            previous = run.status
            now = utcnow()
            run.status = status
            run.updated_at = now
            if status == RunStatus.RUNNING.value and run.started_at is None:
                run.started_at = now
            if status == RunStatus.COMPLETED.value:
                run.completed_at = now
            session.add(run)
        logger.info(f"Run {run_id} status {previous} -> {status}")
        return run

    # steps

    async def list_steps(self, run_id: str) -> List[Step]:
        await self.get_run(run_id)
        async with self.db.session() as session:
            result = await session.exec(
                select(Step).where(Step.run_id == run_id).order_by(Step.step_index)
            )
            return list(result.all())

    async def get_step(self, run_id: str, step_id: str) -> Step:
        await self.get_run(run_id)
        async with self.db.session() as session:
            step = await session.get(Step, step_id)
        if step is None or step.run_id != run_id:
            raise NotFoundError("Step")
        return step

    async def get_pending_step(self, run_id: str) -> Optional[Step]:
        """The step currently open for claiming, if any."""
        await self.get_run(run_id)
        async with self.db.session() as session:
            result = await session.exec(
                select(Step)
                .where(Step.run_id == run_id, Step.status == StepStatus.PENDING.value)
                .order_by(Step.step_index)
                .limit(1)
            )
            return result.first()

    async def update_step(
        self,
        run_id: str,
        step_id: str,
        status: Optional[str] = None,
        output: Any = _UNSET,
        current_story_id: Any = _UNSET,
    ) -> Step:
        """Partial update used for approval and manual transitions.

        Finishing a step this way goes through the pipeline so the run still
        advances: ``completed`` completes or approves it, ``failed`` on a step
        awaiting approval rejects it.
        """

        step = await self.get_step(run_id, step_id)
        if status is not None:
            _check_status(status, StepStatus)
            if status != step.status and status not in STEP_TRANSITIONS[step.status]:
                raise PreconditionError(
                    f"Invalid status transition from {step.status} to {status}",
                    current_status=step.status,
                )
            raw = None if output is _UNSET else output
            if status == StepStatus.COMPLETED.value and status != step.status:
                if step.status == StepStatus.AWAITING_APPROVAL.value:
                    await self.pipeline.approve_step(
                        step_id, note=serialize_output(raw), run_id=run_id
                    )
                else:
                    await self.pipeline.complete_step(step_id, raw, run_id=run_id)
                return await self.get_step(run_id, step_id)
            if status == StepStatus.FAILED.value and status != step.status:
                if step.status == StepStatus.AWAITING_APPROVAL.value:
                    await self.pipeline.reject_step(
                        step_id, serialize_output(raw) or "rejected", run_id=run_id
                    )
                else:
                    await self.pipeline.fail_step(
                        step_id, serialize_output(raw) or "failed", run_id=run_id
                    )
                return await self.get_step(run_id, step_id)

        values: Dict[str, Any] = {}
        if status is not None:
            values["status"] = status
        if output is not _UNSET:
            values["output"] = serialize_output(output)
        if current_story_id is not _UNSET:
            values["current_story_id"] = current_story_id
        if not values:
            return step

        async with self.db.transaction() as session:
            if not await transition_step(session, step_id, [step.status], **values):
                current = await reload_step(session, step_id)
                raise PreconditionError(
                    f"Step changed concurrently. Current status: {current.status}",
                    current_status=current.status,
                )
            step = await reload_step(session, step_id)
        return step

    async def complete_step(self, run_id: str, step_id: str, output: Any) -> CompletionResult:
        await self.get_step(run_id, step_id)
        return await self.pipeline.complete_step(step_id, output, run_id=run_id)

    async def fail_step(
        self, run_id: str, step_id: str, error: str, output: Any = None
    ) -> FailureResult:
        await self.get_step(run_id, step_id)
        return await self.pipeline.fail_step(step_id, error, output, run_id=run_id)

    # stories

    async def list_stories(self, run_id: str, step_id: Optional[str] = None) -> List[Story]:
        await self.get_run(run_id)
        query = select(Story).where(Story.run_id == run_id)
        if step_id is not None:
            query = query.where(Story.step_id == step_id)
        async with self.db.session() as session:
            result = await session.exec(query.order_by(Story.story_index, Story.story_id))
            return list(result.all())

    async def get_story(self, run_id: str, story_id: str) -> Story:
        await self.get_run(run_id)
        async with self.db.session() as session:
            story = await session.get(Story, story_id)
        if story is None or story.run_id != run_id:
            raise NotFoundError("Story")
        return story

    async def create_story(
        self,
        run_id: str,
        story_id: str,
        title: str,
        step_id: Optional[str] = None,
        description: Optional[str] = None,
        acceptance_criteria: Any = None,
        story_index: Optional[int] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> Story:
        if not title:
            raise InvalidInputError("title is required")
        if not story_id:
            raise InvalidInputError("story_id is required")
        await self.get_run(run_id)
        if step_id is not None:
            await self.get_step(run_id, step_id)

        async with self.db.transaction() as session:
            if story_index is None:
                siblings = await session.exec(
                    select(Story.id).where(Story.run_id == run_id, Story.step_id == step_id)
                )
                story_index = len(siblings.all())
            story = Story(
                run_id=run_id,
                step_id=step_id,
                story_index=story_index,
                story_id=story_id,
                title=title,
                description=description,
                acceptance_criteria=render_criteria(acceptance_criteria),
                max_retries=max_retries,
            )
            session.add(story)
        logger.info(f"Created story {story_id} in run {run_id}")
        return story

    async def update_story(
        self, run_id: str, story_id: str, status: Optional[str] = None, output: Any = _UNSET
    ) -> Story:
        """Partial update of a story.

        Starting, completing and failing go through the claim engine and the
        pipeline so the loop step and the run follow the story.
        """

        story = await self.get_story(run_id, story_id)
        if status is not None:
            _check_status(status, StoryStatus)
        if status is not None and status != story.status:
            if status not in STORY_TRANSITIONS[story.status]:
                raise PreconditionError(
                    f"Invalid status transition from {story.status} to {status}",
                    current_status=story.status,
                )
            raw = None if output is _UNSET else output
            if status == StoryStatus.RUNNING.value:
                return await self.claims.start_story(run_id, story_id)
            if status == StoryStatus.COMPLETED.value:
                await self.pipeline.complete_story(run_id, story_id, raw)
                return await self.get_story(run_id, story_id)
            if status == StoryStatus.FAILED.value:
                await self.pipeline.fail_story(
                    run_id, story_id, serialize_output(raw) or "failed"
                )
                return await self.get_story(run_id, story_id)

        values: Dict[str, Any] = {}
        if status is not None:
            values["status"] = status
        if output is not _UNSET:
            values["output"] = serialize_output(output)
        if not values:
            return story
        async with self.db.transaction() as session:
            if not await transition_story(session, story_id, [story.status], **values):
                current = await reload_story(session, story_id)
                raise PreconditionError(
                    f"Story changed concurrently. Current status: {current.status}",
                    current_status=current.status,
                )
            story = await reload_story(session, story_id)
        return story

    async def start_story(self, run_id: str, story_id: str) -> Story:
        return await self.claims.start_story(run_id, story_id)

    async def complete_story(self, run_id: str, story_id: str, output: Any) -> CompletionResult:
        await self.get_story(run_id, story_id)
        return await self.pipeline.complete_story(run_id, story_id, output)

    async def fail_story(
        self, run_id: str, story_id: str, error: str, output: Any = None
    ) -> FailureResult:
        await self.get_story(run_id, story_id)
        return await self.pipeline.fail_story(run_id, story_id, error, output)
