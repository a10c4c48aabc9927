"""Conditional status writes shared by the engine services.

Every status change is a single ``UPDATE ... WHERE id = ? AND status IN (...)``
and reports whether it won. Callers treat a lost write as "somebody else got
there first", never as an error of their own.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional

from sqlalchemy import update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .contracts import RunStatus, StepStatus, StoryStatus
from .db import Run, Step, Story, utcnow


def _values(values: dict[str, Any]) -> dict[str, Any]:
    values.setdefault("updated_at", utcnow())
    return values


def _statuses(expected: Iterable[Any]) -> List[str]:
    return [getattr(s, "value", s) for s in expected]


async def transition_step(
    session: AsyncSession,
    step_id: str,
    expected: Iterable[Any],
    *,
    require_running_run: bool = False,
    extra_where: Iterable[Any] = (),
    **values: Any,
) -> bool:
    """Move a step out of one of ``expected`` statuses; ``True`` if it won."""
    statement = update(Step).where(Step.id == step_id, Step.status.in_(_statuses(expected)))
    for clause in extra_where:
        statement = statement.where(clause)
    if require_running_run:
        statement = statement.where(
            Step.run_id.in_(select(Run.id).where(Run.status == RunStatus.RUNNING.value))
        )
    result = await session.exec(
        statement.values(**_values(values)).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def transition_story(
    session: AsyncSession,
    story_id: str,
    expected: Iterable[Any],
    *,
    extra_where: Iterable[Any] = (),
    **values: Any,
) -> bool:
    """Story counterpart of :func:`transition_step`."""
    statement = update(Story).where(
        Story.id == story_id, Story.status.in_(_statuses(expected))
    )
    for clause in extra_where:
        statement = statement.where(clause)
    result = await session.exec(
        statement.values(**_values(values)).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def transition_run(
    session: AsyncSession,
    run_id: str,
    expected: Iterable[Any],
    *,
    extra_where: Iterable[Any] = (),
    **values: Any,
) -> bool:
    statement = update(Run).where(Run.id == run_id, Run.status.in_(_statuses(expected)))
    for clause in extra_where:
        statement = statement.where(clause)
    result = await session.exec(
        statement.values(**_values(values)).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def touch_run(session: AsyncSession, run_id: str, **values: Any) -> None:
    """Record progress on a run (feeds the stuck-run timeout)."""
    await session.exec(
        update(Run)
        .where(Run.id == run_id)
        .values(**_values(values))
        .execution_options(synchronize_session=False)
    )


async def fail_run(session: AsyncSession, run_id: str) -> bool:
    return await transition_run(
        session,
        run_id,
        [RunStatus.PENDING, RunStatus.RUNNING],
        status=RunStatus.FAILED.value,
    )


async def lock_run(session: AsyncSession, run_id: str) -> Optional[Run]:
    """Fresh copy of the run, read only after its row has been written.

    The touch comes first so concurrent writers of the same run queue on the
    row lock (or on the SQLite write lock) before any of them reads it.
    """
    await touch_run(session, run_id)
    result = await session.exec(
        select(Run)
        .where(Run.id == run_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.first()


async def owning_run_id(session: AsyncSession, model: Any, row_id: str) -> Optional[str]:
    """Run id of a step or story; it never changes once the row exists."""
    result = await session.exec(select(model.run_id).where(model.id == row_id))
    return result.first()


async def reload_step(session: AsyncSession, step_id: str) -> Optional[Step]:
    result = await session.exec(
        select(Step).where(Step.id == step_id).execution_options(populate_existing=True)
    )
    return result.first()


async def reload_story(session: AsyncSession, story_id: str) -> Optional[Story]:
    result = await session.exec(
        select(Story).where(Story.id == story_id).execution_options(populate_existing=True)
    )
    return result.first()


async def run_steps(session: AsyncSession, run_id: str) -> List[Step]:
    result = await session.exec(
        select(Step)
        .where(Step.run_id == run_id)
        .order_by(Step.step_index)
        .execution_options(populate_existing=True)
    )
    return list(result.all())


async def step_stories(session: AsyncSession, step_id: str) -> List[Story]:
    result = await session.exec(
        select(Story)
        .where(Story.step_id == step_id)
        .order_by(Story.story_index, Story.story_id)
        .execution_options(populate_existing=True)
    )
    return list(result.all())


async def next_pending_story(session: AsyncSession, step_id: str) -> Optional[Story]:
    result = await session.exec(
        select(Story)
        .where(Story.step_id == step_id, Story.status == StoryStatus.PENDING.value)
        .order_by(Story.story_index, Story.story_id)
        .limit(1)
    )
    return result.first()


CLAIMABLE_STEP_STATUSES = (StepStatus.WAITING, StepStatus.PENDING)
