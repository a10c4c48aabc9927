"""Pipeline advancer: completion, failure and approval of claimed work.

Each public operation runs in one transaction: the context merge, the unit's
own transition, story creation, promotion of the next step and the run's
final status commit together or not at all.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

from sqlalchemy import update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .contracts import (
    ALL_DONE,
    DEFAULT_MAX_RETRIES,
    CompletionResult,
    FailureResult,
    LoopConfig,
    RunStatus,
    StepKind,
    StepStatus,
    StorySeed,
    StoryStatus,
)
from .db import Database, Run, Step, Story, utcnow
from .errors import (
    ClaimConflictError,
    InvalidInputError,
    MaxRetriesExceededError,
    NotFoundError,
    PreconditionError,
    UnsupportedPolicyError,
)
from .templating import (
    format_completed_stories,
    merge_context_from_output,
    parse_structured_stories,
    render_criteria,
    serialize_output,
)
from .transitions import (
    fail_run,
    lock_run,
    owning_run_id,
    reload_step,
    reload_story,
    run_steps,
    step_stories,
    transition_run,
    transition_step,
    transition_story,
)

logger = logging.getLogger(__name__)

_LIVE_STEP = [StepStatus.WAITING, StepStatus.PENDING, StepStatus.RUNNING]


def loop_config_of(step: Step) -> LoopConfig:
    config = LoopConfig.model_validate(step.loop_config or {})
    if config.completion != ALL_DONE:
        raise UnsupportedPolicyError(
            f"Unsupported loop completion policy '{config.completion}' "
            f"for step '{step.step_id}'"
        )
    return config


async def step_by_key(session: AsyncSession, run_id: str, step_key: str) -> Optional[Step]:
    result = await session.exec(
        select(Step)
        .where(Step.run_id == run_id, Step.step_id == step_key)
        .execution_options(populate_existing=True)
    )
    return result.first()


async def advance(session: AsyncSession, run_id: str) -> bool:
    """Promote the next waiting step, or complete the run when none is left.

    Returns ``True`` when this call completed the run.
    """

    steps = await run_steps(session, run_id)
    waiting = next((s for s in steps if s.status == StepStatus.WAITING.value), None)
    if waiting is not None:
        await transition_step(
            session, waiting.id, [StepStatus.WAITING], status=StepStatus.PENDING.value
        )
        logger.info(f"Run {run_id}: step {waiting.step_id} is now pending")
        return False
    if all(s.status == StepStatus.COMPLETED.value for s in steps):
        done = await transition_run(
            session,
            run_id,
            [RunStatus.PENDING, RunStatus.RUNNING],
            status=RunStatus.COMPLETED.value,
            completed_at=utcnow(),
        )
        if done:
            logger.info(f"Run {run_id} completed")
        return done
    return False


async def store_stories(
    session: AsyncSession, run: Run, step: Step, seeds: List[StorySeed]
) -> int:
    """Persist parsed stories under the loop step they belong to.

    Stories emitted by a loop step stay with it; any other step hands them to
    the next loop step of the run. Story ids already present are skipped.
    """

    if not seeds:
        return 0
    target: Optional[Step] = step if step.kind == StepKind.LOOP.value else None
    if target is None:
        target = next(
            (
                s
                for s in await run_steps(session, run.id)
                if s.kind == StepKind.LOOP.value and s.step_index > step.step_index
            ),
            None,
        )
    if target is None:
        logger.warning(
            f"Run {run.id}: step {step.step_id} emitted stories but no loop step follows"
        )
        return 0

    existing = await step_stories(session, target.id)
    known = {s.story_id for s in existing}
    created = 0
    for seed in seeds:
        if seed.story_id in known:
            continue
        session.add(
            Story(
                run_id=run.id,
                step_id=target.id,
                story_index=len(existing) + created,
                story_id=seed.story_id,
                title=seed.title,
                description=seed.description,
                acceptance_criteria=render_criteria(seed.acceptance_criteria),
                max_retries=DEFAULT_MAX_RETRIES,
            )
        )
        known.add(seed.story_id)
        created += 1
    await session.flush()
    if created:
        logger.info(f"Run {run.id}: created {created} stories for step {target.step_id}")
    return created


async def settle_loop(
    session: AsyncSession, run: Run, loop_step: Step, stories_created: int = 0
) -> CompletionResult:
    """Re-evaluate a loop step after one of its stories changed state."""
    config = loop_config_of(loop_step)
    stories = await step_stories(session, loop_step.id)

    if stories and all(s.status == StoryStatus.COMPLETED.value for s in stories):
        await transition_step(
            session,
            loop_step.id,
            _LIVE_STEP,
            status=StepStatus.COMPLETED.value,
            current_story_id=None,
            output=format_completed_stories(stories),
        )
        if config.verify_each and config.verify_step:
            verify = await step_by_key(session, run.id, config.verify_step)
            if verify is not None:
                await transition_step(
                    session,
                    verify.id,
                    _LIVE_STEP,
                    status=StepStatus.COMPLETED.value,
                    current_story_id=None,
                )
        logger.info(f"Run {run.id}: loop step {loop_step.step_id} finished all stories")
        return CompletionResult(
            run_completed=await advance(session, run.id),
            stories_created=stories_created,
        )

    running = next((s for s in stories if s.status == StoryStatus.RUNNING.value), None)
    verifying = any(s.status == StoryStatus.VERIFYING.value for s in stories)
    if running is not None:
        await transition_step(
            session,
            loop_step.id,
            _LIVE_STEP,
            status=StepStatus.RUNNING.value,
            current_story_id=running.id,
        )
    elif verifying:
        await transition_step(
            session,
            loop_step.id,
            _LIVE_STEP,
            status=StepStatus.WAITING.value,
            current_story_id=None,
        )
    else:
        await transition_step(
            session,
            loop_step.id,
            [StepStatus.WAITING, StepStatus.RUNNING],
            status=StepStatus.PENDING.value,
            current_story_id=None,
        )
    return CompletionResult(stories_created=stories_created)


def _failure_payload(error: str, output: Any) -> str:
    return serialize_output({"error": error, "output": output})


class PipelineAdvancer:
    """Completes, fails and approves running work and moves the run along."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def _running_step(
        self, session: AsyncSession, step_id: str, run_id: Optional[str], verb: str
    ) -> Tuple[Run, Step]:
        """Lock the owning run, then read the step it must still be running."""
        owner = await owning_run_id(session, Step, step_id)
        if owner is None or (run_id is not None and owner != run_id):
            raise NotFoundError("Step")
        run = await lock_run(session, owner)
        step = await reload_step(session, step_id)
        if step.status != StepStatus.RUNNING.value:
            raise PreconditionError(
                f"Step cannot be {verb}. Current status: {step.status}",
                current_status=step.status,
            )
        return run, step

    async def _story_in_run(
        self, session: AsyncSession, run_id: str, story_id: str
    ) -> Tuple[Run, Story]:
        owner = await owning_run_id(session, Story, story_id)
        if owner is None or owner != run_id:
            raise NotFoundError("Story")
        run = await lock_run(session, run_id)
        return run, await reload_story(session, story_id)

    async def _merge_output(self, session: AsyncSession, run: Run, text: Optional[str]) -> None:
        if text:
            run.context = merge_context_from_output(text, run.context or {})
        run.updated_at = utcnow()
        session.add(run)
        await session.flush()

    async def complete_step(
        self, step_id: str, output: Any = None, run_id: Optional[str] = None
    ) -> CompletionResult:
        """Complete a running step with the agent's raw output."""
        text = serialize_output(output)
        seeds = parse_structured_stories(text) if text else []

        async with self._db.transaction() as session:
            run, step = await self._running_step(session, step_id, run_id, "completed")
            await self._merge_output(session, run, text)

            if step.kind == StepKind.LOOP.value:
                if not step.current_story_id:
                    raise PreconditionError(
                        "Loop step has no current story", current_status=step.status
                    )
                story = await reload_story(session, step.current_story_id)
                result = await self._finish_story(session, run, step, story, text, seeds)
            elif step.current_story_id:
                result = await self._finish_verification(session, run, step, text, seeds)
            else:
                if not await transition_step(
                    session,
                    step.id,
                    [StepStatus.RUNNING],
                    status=StepStatus.COMPLETED.value,
                    output=text,
                ):
                    raise ClaimConflictError(
                        "Step changed while completing", current_status=step.status
                    )
                created = await store_stories(session, run, step, seeds)
                result = CompletionResult(
                    run_completed=await advance(session, run.id),
                    stories_created=created,
                )

        logger.info(f"Completed step {step.step_id} ({step.id}) of run {step.run_id}")
        return result

    async def complete_story(
        self, run_id: str, story_id: str, output: Any = None
    ) -> CompletionResult:
        text = serialize_output(output)
        seeds = parse_structured_stories(text) if text else []

        async with self._db.transaction() as session:
            run, story = await self._story_in_run(session, run_id, story_id)
            step = await reload_step(session, story.step_id) if story.step_id else None
            await self._merge_output(session, run, text)
            result = await self._finish_story(session, run, step, story, text, seeds)

        logger.info(f"Completed story {story.story_id} ({story.id}) of run {run_id}")
        return result

    async def _finish_story(
        self,
        session: AsyncSession,
        run: Run,
        step: Optional[Step],
        story: Optional[Story],
        text: Optional[str],
        seeds: List[StorySeed],
    ) -> CompletionResult:
        if story is None:
            raise NotFoundError("Story")
        if story.status != StoryStatus.RUNNING.value:
            raise PreconditionError(
                f"Story cannot be completed. Current status: {story.status}",
                current_status=story.status,
            )
        if step is None:
            await self._settle_story(session, story, StoryStatus.COMPLETED, text)
            return CompletionResult()

        config = loop_config_of(step)
        created = await store_stories(session, run, step, seeds)

        if config.verify_each and config.verify_step:
            verify = await step_by_key(session, run.id, config.verify_step)
            if verify is None:
                raise PreconditionError(
                    f"Verify step '{config.verify_step}' not found in run"
                )
            await self._settle_story(session, story, StoryStatus.VERIFYING, text)
            if step.current_story_id == story.id:
                await settle_loop(session, run, step)
            promoted = await transition_step(
                session,
                verify.id,
                [StepStatus.WAITING],
                status=StepStatus.PENDING.value,
                current_story_id=story.id,
            )
            if not promoted:
                logger.info(
                    f"Run {run.id}: verify step {verify.step_id} busy, "
                    f"story {story.story_id} queued for verification"
                )
            return CompletionResult(
                needs_verify=True, verify_step_id=verify.id, stories_created=created
            )

        await self._settle_story(session, story, StoryStatus.COMPLETED, text)
        return await settle_loop(session, run, step, created)

    async def _settle_story(
        self, session: AsyncSession, story: Story, status: StoryStatus, text: Optional[str]
    ) -> None:
        if not await transition_story(
            session, story.id, [StoryStatus.RUNNING], status=status.value, output=text
        ):
            raise ClaimConflictError(
                "Story changed while completing", current_status=story.status
            )

    async def _finish_verification(
        self,
        session: AsyncSession,
        run: Run,
        verify: Step,
        text: Optional[str],
        seeds: List[StorySeed],
    ) -> CompletionResult:
        story = await reload_story(session, verify.current_story_id)
        if not await transition_step(
            session,
            verify.id,
            [StepStatus.RUNNING],
            status=StepStatus.WAITING.value,
            current_story_id=None,
            output=text,
        ):
            raise ClaimConflictError(
                "Step changed while completing", current_status=verify.status
            )
        if story is None or story.step_id is None:
            return CompletionResult(run_completed=await advance(session, run.id))

        await transition_story(
            session,
            story.id,
            [StoryStatus.VERIFYING],
            status=StoryStatus.COMPLETED.value,
        )
        loop_step = await reload_step(session, story.step_id)
        created = await store_stories(session, run, loop_step, seeds)

        queued = next(
            (
                s
                for s in await step_stories(session, loop_step.id)
                if s.status == StoryStatus.VERIFYING.value
            ),
            None,
        )
        if queued is not None:
            await transition_step(
                session,
                verify.id,
                [StepStatus.WAITING],
                status=StepStatus.PENDING.value,
                current_story_id=queued.id,
            )
            return CompletionResult(
                needs_verify=True, verify_step_id=verify.id, stories_created=created
            )
        return await settle_loop(session, run, loop_step, created)

    async def fail_step(
        self,
        step_id: str,
        error: str,
        output: Any = None,
        run_id: Optional[str] = None,
    ) -> FailureResult:
        """Report a running step as failed.

        With retries left the step stays ``failed`` until the retry sweep
        requeues it. Otherwise the failure is permanent and fails the run.
        """

        if not error:
            raise InvalidInputError("error message is required")
        payload = _failure_payload(error, output)

        async with self._db.transaction() as session:
            run, step = await self._running_step(session, step_id, run_id, "failed")

            if step.kind == StepKind.LOOP.value and step.current_story_id:
                story = await reload_story(session, step.current_story_id)
                return await self._fail_story(session, run, step, story, payload)

            if step.current_story_id:
                return await self._fail_verification(session, run, step, payload)

            will_retry = step.retry_count < step.max_retries
            if not await transition_step(
                session,
                step.id,
                [StepStatus.RUNNING],
                status=StepStatus.FAILED.value,
                output=payload,
                current_story_id=None,
            ):
                raise ClaimConflictError(
                    "Step changed while failing", current_status=step.status
                )
            if not will_retry:
                await fail_run(session, run.id)
                logger.warning(f"Step {step.step_id} of run {run.id} exhausted its retries")
            else:
                logger.info(f"Step {step.step_id} of run {run.id} failed, will retry")
            return FailureResult(
                status=StepStatus.FAILED.value,
                will_retry=will_retry,
                retry_count=step.retry_count,
                max_retries=step.max_retries,
                run_failed=not will_retry,
            )

    async def fail_story(
        self, run_id: str, story_id: str, error: str, output: Any = None
    ) -> FailureResult:
        if not error:
            raise InvalidInputError("error message is required")
        payload = _failure_payload(error, output)

        async with self._db.transaction() as session:
            run, story = await self._story_in_run(session, run_id, story_id)
            step = await reload_step(session, story.step_id) if story.step_id else None
            return await self._fail_story(session, run, step, story, payload)

    async def _fail_story(
        self,
        session: AsyncSession,
        run: Run,
        step: Optional[Step],
        story: Optional[Story],
        payload: str,
    ) -> FailureResult:
        if story is None:
            raise NotFoundError("Story")
        if story.status not in (StoryStatus.RUNNING.value, StoryStatus.VERIFYING.value):
            raise PreconditionError(
                f"Story cannot be failed. Current status: {story.status}",
                current_status=story.status,
            )
        will_retry = story.retry_count < story.max_retries
        if not await transition_story(
            session,
            story.id,
            [StoryStatus.RUNNING, StoryStatus.VERIFYING],
            status=StoryStatus.FAILED.value,
            output=payload,
        ):
            raise ClaimConflictError(
                "Story changed while failing", current_status=story.status
            )
        if will_retry:
            logger.info(f"Story {story.story_id} of run {run.id} failed, will retry")
            if step is not None:
                await settle_loop(session, run, step)
        else:
            logger.warning(f"Story {story.story_id} of run {run.id} exhausted its retries")
            if step is not None:
                await transition_step(
                    session,
                    step.id,
                    _LIVE_STEP,
                    status=StepStatus.FAILED.value,
                    current_story_id=None,
                )
            await fail_run(session, run.id)
        return FailureResult(
            status=StoryStatus.FAILED.value,
            will_retry=will_retry,
            retry_count=story.retry_count,
            max_retries=story.max_retries,
            run_failed=not will_retry,
        )

    async def _fail_verification(
        self, session: AsyncSession, run: Run, verify: Step, payload: str
    ) -> FailureResult:
        story = await reload_story(session, verify.current_story_id)
        loop_step = (
            await reload_step(session, story.step_id)
            if story is not None and story.step_id
            else None
        )
        result = await self._fail_story(session, run, loop_step, story, payload)
        if result.will_retry:
            await transition_step(
                session,
                verify.id,
                [StepStatus.RUNNING],
                status=StepStatus.WAITING.value,
                current_story_id=None,
                output=payload,
            )
            status = StepStatus.WAITING.value
            queued = next(
                (
                    s
                    for s in (await step_stories(session, loop_step.id) if loop_step else [])
                    if s.status == StoryStatus.VERIFYING.value
                ),
                None,
            )
            if queued is not None and await transition_step(
                session,
                verify.id,
                [StepStatus.WAITING],
                status=StepStatus.PENDING.value,
                current_story_id=queued.id,
            ):
                status = StepStatus.PENDING.value
        else:
            await transition_step(
                session,
                verify.id,
                [StepStatus.RUNNING],
                status=StepStatus.FAILED.value,
                output=payload,
            )
            status = StepStatus.FAILED.value
        return result.model_copy(update={"status": status})

    async def approve_step(
        self, step_id: str, note: Optional[str] = None, run_id: Optional[str] = None
    ) -> CompletionResult:
        text = f"APPROVED: {note}" if note else "APPROVED"
        async with self._db.transaction() as session:
            step = await reload_step(session, step_id)
            if step is None or (run_id is not None and step.run_id != run_id):
                raise NotFoundError("Step")
            if not await transition_step(
                session,
                step.id,
                [StepStatus.AWAITING_APPROVAL],
                status=StepStatus.COMPLETED.value,
                output=text,
            ):
                raise PreconditionError(
                    f"Step is not awaiting approval. Current status: {step.status}",
                    current_status=step.status,
                )
            run = await lock_run(session, step.run_id)
            await self._merge_output(session, run, None)
            result = CompletionResult(run_completed=await advance(session, run.id))
        logger.info(f"Approved step {step.step_id} of run {step.run_id}")
        return result

    async def reject_step(
        self, step_id: str, reason: str, run_id: Optional[str] = None
    ) -> FailureResult:
        if not reason:
            raise InvalidInputError("reason is required")
        async with self._db.transaction() as session:
            step = await reload_step(session, step_id)
            if step is None or (run_id is not None and step.run_id != run_id):
                raise NotFoundError("Step")
            if not await transition_step(
                session,
                step.id,
                [StepStatus.AWAITING_APPROVAL],
                status=StepStatus.FAILED.value,
                output=f"REJECTED: {reason}",
            ):
                raise PreconditionError(
                    f"Step is not awaiting approval. Current status: {step.status}",
                    current_status=step.status,
                )
            await fail_run(session, step.run_id)
        logger.info(f"Rejected step {step.step_id} of run {step.run_id}: {reason}")
        return FailureResult(
            status=StepStatus.FAILED.value,
            will_retry=False,
            retry_count=step.retry_count,
            max_retries=step.max_retries,
            run_failed=True,
        )

    async def increment_step_retry(self, step_id: str) -> Step:
        """Count one more attempt; past the maximum the step fails for good."""
        exceeded = None
        async with self._db.transaction() as session:
            step = await reload_step(session, step_id)
            if step is None:
                raise NotFoundError("Step")
            result = await session.exec(
                update(Step)
                .where(Step.id == step_id, Step.retry_count < Step.max_retries)
                .values(retry_count=Step.retry_count + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exceeded = {"retry_count": step.retry_count, "max_retries": step.max_retries}
                await transition_step(
                    session,
                    step_id,
                    [*_LIVE_STEP, StepStatus.AWAITING_APPROVAL],
                    status=StepStatus.FAILED.value,
                )
                await fail_run(session, step.run_id)
            step = await reload_step(session, step_id)
        if exceeded is not None:
            logger.warning(f"Step {step.step_id} of run {step.run_id} exceeded max retries")
            raise MaxRetriesExceededError(exceeded)
        return step

    async def increment_story_retry(self, story_id: str) -> Story:
        exceeded = None
        async with self._db.transaction() as session:
            story = await reload_story(session, story_id)
            if story is None:
                raise NotFoundError("Story")
            result = await session.exec(
                update(Story)
                .where(Story.id == story_id, Story.retry_count < Story.max_retries)
                .values(retry_count=Story.retry_count + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exceeded = {"retry_count": story.retry_count, "max_retries": story.max_retries}
                await transition_story(
                    session,
                    story_id,
                    [StoryStatus.PENDING, StoryStatus.RUNNING, StoryStatus.VERIFYING],
                    status=StoryStatus.FAILED.value,
                )
                if story.step_id:
                    await transition_step(
                        session,
                        story.step_id,
                        _LIVE_STEP,
                        status=StepStatus.FAILED.value,
                        current_story_id=None,
                    )
                await fail_run(session, story.run_id)
            story = await reload_story(session, story_id)
        if exceeded is not None:
            logger.warning(f"Story {story.story_id} of run {story.run_id} exceeded max retries")
            raise MaxRetriesExceededError(exceeded)
        return story
