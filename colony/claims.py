"""Claim engine: hands each step or story to exactly one agent."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .contracts import ClaimResult, RunStatus, StepKind, StepStatus, StoryStatus
from .db import Database, Run, Step, Story, utcnow
from .errors import AgentMismatchError, ClaimConflictError, NotFoundError, PreconditionError
from .templating import (
    format_completed_stories,
    format_story_for_template,
    parse_criteria,
    resolve_template,
)
from .transitions import (
    CLAIMABLE_STEP_STATUSES,
    next_pending_story,
    reload_step,
    reload_story,
    step_stories,
    touch_run,
    transition_step,
    transition_story,
)

logger = logging.getLogger(__name__)

# Candidates examined per poll before giving up with "nothing to claim".
CANDIDATE_LIMIT = 25


class _LostRace(Exception):
    """Raised inside a claim transaction to roll back a half-won claim."""


async def build_input(
    session: AsyncSession, step: Step, run: Run, story: Optional[Story] = None
) -> str:
    """Render a step's input template against the run context.

    Story-bound claims (loop iterations and their verification) also see
    ``current_story``, ``current_story_id`` and ``completed_stories``.
    """

    context = dict(run.context or {})
    if story is not None:
        context["current_story"] = format_story_for_template(
            story.story_id,
            story.title,
            story.description,
            parse_criteria(story.acceptance_criteria),
        )
        context["current_story_id"] = story.story_id
        context["current_story_title"] = story.title
        siblings = await step_stories(session, story.step_id) if story.step_id else []
        context["completed_stories"] = format_completed_stories(siblings)
    return resolve_template(step.input_template, context)


class ClaimEngine:
    """Atomic transitions from claimable to ``running``.

    Losing a race is not an error: polling methods return ``None`` and the
    agent is expected to poll again.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def _try_claim(
        self,
        step_id: str,
        agent_id: Optional[str],
        expected: Iterable[StepStatus],
    ) -> Optional[ClaimResult]:
        try:
            async with self._db.transaction() as session:
                step = await reload_step(session, step_id)
                if step is None:
                    return None
                run = await session.get(Run, step.run_id)
                if run is None or run.status != RunStatus.RUNNING.value:
                    return None
                now = utcnow()

                story: Optional[Story] = None
                if step.kind == StepKind.LOOP.value:
                    story = await next_pending_story(session, step.id)
                    if story is None:
                        return None
                    won = await transition_step(
                        session,
                        step.id,
                        expected,
                        require_running_run=True,
                        status=StepStatus.RUNNING.value,
                        current_story_id=story.id,
                        claimed_by=agent_id,
                        claimed_at=now,
                    )
                    if not won:
                        return None
                    if not await transition_story(
                        session,
                        story.id,
                        [StoryStatus.PENDING],
                        status=StoryStatus.RUNNING.value,
                        claimed_at=now,
                    ):
                        raise _LostRace()
                    story = await reload_story(session, story.id)
                else:
                    won = await transition_step(
                        session,
                        step.id,
                        expected,
                        require_running_run=True,
                        status=StepStatus.RUNNING.value,
                        claimed_by=agent_id,
                        claimed_at=now,
                    )
                    if not won:
                        return None
                    if step.current_story_id:
                        # verification of a story finished by a loop step
                        story = await reload_story(session, step.current_story_id)

                await touch_run(session, run.id)
                resolved = await build_input(session, step, run, story)
        except _LostRace:
            return None

        logger.info(
            f"Agent {agent_id} claimed step {step.step_id} ({step.id}) of run {run.id}"
            + (f", story {story.story_id}" if story is not None else "")
        )
        return ClaimResult(
            run_id=run.id,
            step_id=step.id,
            step_key=step.step_id,
            agent_id=agent_id,
            resolved_input=resolved,
            story_id=story.id if story is not None else None,
            story_key=story.story_id if story is not None else None,
        )

    async def claim_next(
        self, agent_id: str, run_id: Optional[str] = None
    ) -> Optional[ClaimResult]:
        """Claim the oldest pending step assigned to ``agent_id``."""
        async with self._db.session() as session:
            query = (
                select(Step.id)
                .join(Run, Run.id == Step.run_id)
                .where(
                    Step.status == StepStatus.PENDING.value,
                    Step.agent_id == agent_id,
                    Run.status == RunStatus.RUNNING.value,
                )
                .order_by(Run.created_at, Step.step_index)
                .limit(CANDIDATE_LIMIT)
            )
            if run_id is not None:
                query = query.where(Step.run_id == run_id)
            candidates = list((await session.exec(query)).all())

        for step_id in candidates:
            claim = await self._try_claim(step_id, agent_id, [StepStatus.PENDING])
            if claim is not None:
                return claim
        return None

    async def claim_story(
        self, step_id: str, agent_id: Optional[str] = None
    ) -> Optional[ClaimResult]:
        """Claim the next pending story of a pending loop step."""
        async with self._db.session() as session:
            step = await session.get(Step, step_id)
            if step is None or step.kind != StepKind.LOOP.value:
                return None
        return await self._try_claim(step_id, agent_id, [StepStatus.PENDING])

    async def claim_step(self, run_id: str, step_id: str, agent_id: str) -> ClaimResult:
        """Explicit claim of one step; every refusal is reported with its reason."""
        async with self._db.session() as session:
            run = await session.get(Run, run_id)
            if run is None:
                raise NotFoundError("Run")
            if run.status != RunStatus.RUNNING.value:
                raise PreconditionError(
                    f"Cannot claim step. Run status is '{run.status}', not 'running'",
                    details={"run_status": run.status},
                )
            step = await session.get(Step, step_id)
            if step is None or step.run_id != run_id:
                raise NotFoundError("Step")
            if step.agent_id and step.agent_id != agent_id:
                raise AgentMismatchError(
                    f"Step is assigned to agent '{step.agent_id}', not '{agent_id}'",
                    details={"assigned_agent": step.agent_id},
                )
            if step.status not in {s.value for s in CLAIMABLE_STEP_STATUSES}:
                raise ClaimConflictError(
                    f"Step cannot be claimed. Current status: {step.status}",
                    current_status=step.status,
                )
            blocking = await session.exec(
                select(Step.step_id).where(
                    Step.run_id == run_id,
                    Step.step_index < step.step_index,
                    Step.status != StepStatus.COMPLETED.value,
                )
            )
            pending_steps = list(blocking.all())
            if pending_steps:
                raise PreconditionError(
                    "Previous steps not completed",
                    details={"pending_steps": pending_steps},
                )

        claim = await self._try_claim(step_id, agent_id, CLAIMABLE_STEP_STATUSES)
        if claim is not None:
            return claim

        async with self._db.session() as session:
            current = await session.get(Step, step_id)
        status = current.status if current is not None else "unknown"
        if status in {s.value for s in CLAIMABLE_STEP_STATUSES}:
            raise ClaimConflictError(
                "Step has no pending story to claim", current_status=status
            )
        raise ClaimConflictError(
            f"Step cannot be claimed. Current status: {status}", current_status=status
        )

    async def start_story(self, run_id: str, story_id: str) -> Story:
        """Move one specific pending story to ``running``."""
        async with self._db.session() as session:
            run = await session.get(Run, run_id)
            if run is None:
                raise NotFoundError("Run")
            story = await session.get(Story, story_id)
            if story is None or story.run_id != run_id:
                raise NotFoundError("Story")
            if run.status != RunStatus.RUNNING.value:
                raise PreconditionError(
                    f"Cannot start story. Run status is '{run.status}', not 'running'",
                    details={"run_status": run.status},
                )
            if story.status != StoryStatus.PENDING.value:
                raise PreconditionError(
                    f"Story cannot be started. Current status: {story.status}",
                    current_status=story.status,
                )

        async with self._db.transaction() as session:
            now = utcnow()
            won = await transition_story(
                session,
                story_id,
                [StoryStatus.PENDING],
                status=StoryStatus.RUNNING.value,
                claimed_at=now,
            )
            if not won:
                current = await reload_story(session, story_id)
                raise ClaimConflictError(
                    f"Story cannot be started. Current status: {current.status}",
                    current_status=current.status,
                )
            if story.step_id:
                # bind an idle loop step to the story; a busy one keeps its own
                await transition_step(
                    session,
                    story.step_id,
                    [StepStatus.PENDING],
                    status=StepStatus.RUNNING.value,
                    current_story_id=story_id,
                    claimed_at=now,
                )
            await touch_run(session, run_id)
            story = await reload_story(session, story_id)

        logger.info(f"Started story {story.story_id} ({story.id}) of run {run_id}")
        return story
