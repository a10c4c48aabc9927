"""Maintenance sweeps for the workflow engine and the loop that drives them."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import update
from sqlmodel import select

from .config import SchedulerConfig
from .contracts import RunStatus, StepKind, StepStatus, StoryStatus, SweepReport
from .db import Database, Run, Step, Story, utcnow
from .transitions import touch_run, transition_run, transition_step, transition_story

logger = logging.getLogger(__name__)


def _running_runs():
    return select(Run.id).where(Run.status == RunStatus.RUNNING.value)


class PeriodicSweep:
    """Runs an async job every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        run_immediately: bool = True,
    ) -> None:
        self.name = name
        self._job = job
        self._interval = interval_seconds
        self._run_immediately = run_immediately
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"{self.name} started (every {self._interval}s)")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug(f"{self.name} task cancelled")
            self._task = None
        logger.info(f"{self.name} stopped")

    async def _loop(self) -> None:
        if not self._run_immediately:
            if await self._wait():
                return
        while not self._stop_event.is_set():
            try:
                await self._job()
            except Exception:
                logger.exception(f"{self.name} failed")
            if await self._wait():
                return

    async def _wait(self) -> bool:
        """Sleep one interval; ``True`` when stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            return False
        return True


class SchedulerSweeper:
    """Reclaims abandoned work, requeues cooled-down failures, times out runs.

    Every sweep selects candidates first and then moves each one with a
    conditional write that repeats the staleness predicate, so a unit touched
    by live traffic in between is left alone. Running a sweep twice in a row
    changes nothing the second time.
    """

    def __init__(self, db: Database, config: Optional[SchedulerConfig] = None) -> None:
        self._db = db
        self.config = config or SchedulerConfig()
        self._loop = PeriodicSweep(
            "Workflow scheduler", self.run_all_scheduled, self.config.interval_seconds
        )

    async def reclaim_abandoned_steps(self, max_age_minutes: Optional[float] = None) -> int:
        """Return running steps with no progress for ``max_age_minutes`` to pending."""
        age = max_age_minutes if max_age_minutes is not None else self.config.abandoned_step_age_minutes
        cutoff = utcnow() - timedelta(minutes=age)
        async with self._db.session() as session:
            result = await session.exec(
                select(Step).where(
                    Step.status == StepStatus.RUNNING.value,
                    Step.updated_at < cutoff,
                    Step.run_id.in_(_running_runs()),
                )
            )
            candidates = list(result.all())

        reclaimed = 0
        for step in candidates:
            is_loop = step.kind == StepKind.LOOP.value
            values: Dict[str, Any] = {
                "status": StepStatus.PENDING.value,
                "claimed_by": None,
                "claimed_at": None,
                "output": f"RESET: Step abandoned (stuck >{age:g} min)",
            }
            if is_loop:
                values["current_story_id"] = None
            async with self._db.transaction() as session:
                won = await transition_step(
                    session,
                    step.id,
                    [StepStatus.RUNNING],
                    require_running_run=True,
                    extra_where=[Step.updated_at < cutoff],
                    **values,
                )
                if not won:
                    continue
                if is_loop and step.current_story_id:
                    await transition_story(
                        session,
                        step.current_story_id,
                        [StoryStatus.RUNNING],
                        status=StoryStatus.PENDING.value,
                        claimed_at=None,
                    )
            reclaimed += 1
            logger.info(f"Reclaimed abandoned step {step.step_id} ({step.id}) of run {step.run_id}")
        return reclaimed

    async def reclaim_abandoned_stories(self, max_age_minutes: Optional[float] = None) -> int:
        """Return stale running stories to pending."""
        age = max_age_minutes if max_age_minutes is not None else self.config.abandoned_step_age_minutes
        cutoff = utcnow() - timedelta(minutes=age)
        async with self._db.session() as session:
            result = await session.exec(
                select(Story).where(
                    Story.status == StoryStatus.RUNNING.value,
                    Story.updated_at < cutoff,
                    Story.run_id.in_(_running_runs()),
                )
            )
            candidates = list(result.all())

        reclaimed = 0
        for story in candidates:
            async with self._db.transaction() as session:
                won = await transition_story(
                    session,
                    story.id,
                    [StoryStatus.RUNNING],
                    extra_where=[Story.updated_at < cutoff, Story.run_id.in_(_running_runs())],
                    status=StoryStatus.PENDING.value,
                    claimed_at=None,
                    output=f"RESET: Story abandoned (stuck >{age:g} min)",
                )
                if not won:
                    continue
                if story.step_id:
                    await transition_step(
                        session,
                        story.step_id,
                        [StepStatus.RUNNING],
                        extra_where=[Step.current_story_id == story.id],
                        status=StepStatus.PENDING.value,
                        current_story_id=None,
                        claimed_by=None,
                        claimed_at=None,
                    )
            reclaimed += 1
            logger.info(f"Reclaimed abandoned story {story.story_id} ({story.id}) of run {story.run_id}")
        return reclaimed

    async def retry_failed_steps(self, cooldown_minutes: Optional[float] = None) -> int:
        """Requeue failed steps that still have retries, after a cooldown."""
        cooldown = cooldown_minutes if cooldown_minutes is not None else self.config.retry_cooldown_minutes
        cutoff = utcnow() - timedelta(minutes=cooldown)
        async with self._db.session() as session:
            result = await session.exec(
                select(Step).where(
                    Step.status == StepStatus.FAILED.value,
                    Step.retry_count < Step.max_retries,
                    Step.updated_at < cutoff,
                    Step.run_id.in_(_running_runs()),
                )
            )
            candidates = list(result.all())

        retried = 0
        for step in candidates:
            async with self._db.transaction() as session:
                won = await transition_step(
                    session,
                    step.id,
                    [StepStatus.FAILED],
                    require_running_run=True,
                    extra_where=[
                        Step.updated_at < cutoff,
                        Step.retry_count == step.retry_count,
                        Step.retry_count < Step.max_retries,
                    ],
                    status=StepStatus.PENDING.value,
                    retry_count=step.retry_count + 1,
                    claimed_by=None,
                    claimed_at=None,
                    output=f"RETRY: Attempt {step.retry_count + 1}/{step.max_retries}",
                )
                if won:
                    await touch_run(session, step.run_id)
            if won:
                retried += 1
                logger.info(
                    f"Requeued step {step.step_id} of run {step.run_id} "
                    f"(attempt {step.retry_count + 1}/{step.max_retries})"
                )
        return retried

    async def retry_failed_stories(self, cooldown_minutes: Optional[float] = None) -> int:
        cooldown = cooldown_minutes if cooldown_minutes is not None else self.config.retry_cooldown_minutes
        cutoff = utcnow() - timedelta(minutes=cooldown)
        async with self._db.session() as session:
            result = await session.exec(
                select(Story).where(
                    Story.status == StoryStatus.FAILED.value,
                    Story.retry_count < Story.max_retries,
                    Story.updated_at < cutoff,
                    Story.run_id.in_(_running_runs()),
                )
            )
            candidates = list(result.all())

        retried = 0
        for story in candidates:
            async with self._db.transaction() as session:
                won = await transition_story(
                    session,
                    story.id,
                    [StoryStatus.FAILED],
                    extra_where=[
                        Story.updated_at < cutoff,
                        Story.retry_count == story.retry_count,
                        Story.retry_count < Story.max_retries,
                        Story.run_id.in_(_running_runs()),
                    ],
                    status=StoryStatus.PENDING.value,
                    retry_count=story.retry_count + 1,
                    claimed_at=None,
                    output=f"RETRY: Attempt {story.retry_count + 1}/{story.max_retries}",
                )
                if won:
                    await touch_run(session, story.run_id)
            if won:
                retried += 1
                logger.info(
                    f"Requeued story {story.story_id} of run {story.run_id} "
                    f"(attempt {story.retry_count + 1}/{story.max_retries})"
                )
        return retried

    async def timeout_stuck_runs(self, timeout_minutes: Optional[float] = None) -> int:
        """Fail running runs without progress, together with their in-flight work."""
        timeout = timeout_minutes if timeout_minutes is not None else self.config.run_timeout_minutes
        cutoff = utcnow() - timedelta(minutes=timeout)
        async with self._db.session() as session:
            result = await session.exec(
                select(Run.id).where(
                    Run.status == RunStatus.RUNNING.value, Run.updated_at < cutoff
                )
            )
            candidates = list(result.all())

        timed_out = 0
        for run_id in candidates:
            async with self._db.transaction() as session:
                won = await transition_run(
                    session,
                    run_id,
                    [RunStatus.RUNNING],
                    extra_where=[Run.updated_at < cutoff],
                    status=RunStatus.FAILED.value,
                )
                if not won:
                    continue
                now = utcnow()
                await session.exec(
                    update(Step)
                    .where(Step.run_id == run_id, Step.status == StepStatus.RUNNING.value)
                    .values(status=StepStatus.FAILED.value, output="RUN_TIMEOUT", updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await session.exec(
                    update(Story)
                    .where(Story.run_id == run_id, Story.status == StoryStatus.RUNNING.value)
                    .values(status=StoryStatus.FAILED.value, output="RUN_TIMEOUT", updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            timed_out += 1
            logger.warning(f"Run {run_id} timed out after {timeout} minutes without progress")
        return timed_out

    async def run_all_scheduled(self) -> SweepReport:
        """One pass of every sweep."""
        report = SweepReport(
            abandoned_steps=await self.reclaim_abandoned_steps(),
            abandoned_stories=await self.reclaim_abandoned_stories(),
            retried_steps=await self.retry_failed_steps(),
            retried_stories=await self.retry_failed_stories(),
            timed_out_runs=await self.timeout_stuck_runs(),
        )
        if report.total():
            logger.info(f"Scheduled sweep: {report.model_dump()}")
        return report

    @property
    def running(self) -> bool:
        return self._loop.running

    async def start(self) -> None:
        if not self.config.enabled:
            logger.info("Workflow scheduler disabled")
            return
        await self._loop.start()

    async def stop(self) -> None:
        await self._loop.stop()
