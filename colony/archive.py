"""Archival of completed tasks, on a delay or on request."""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .config import ArchiveConfig
from .db import Database, Task, TaskActivity, utcnow
from .errors import InvalidInputError, NotFoundError, PreconditionError
from .scheduler import PeriodicSweep

logger = logging.getLogger(__name__)

TASK_COMPLETED = "completed"
MAX_PAGE_SIZE = 200


class ArchiveSweeper:
    """Archives completed tasks and keeps an activity trail of every change."""

    def __init__(self, db: Database, config: Optional[ArchiveConfig] = None) -> None:
        self._db = db
        self.config = config or ArchiveConfig()
        self._loop = PeriodicSweep(
            "Archive scheduler", self.sweep, self.config.interval_seconds
        )

    async def _archive(
        self, session: AsyncSession, task_id: int, source: str, actor_type: str
    ) -> bool:
        now = utcnow()
        result = await session.exec(
            update(Task)
            .where(
                Task.id == task_id,
                Task.status == TASK_COMPLETED,
                Task.archived == False,  # noqa: E712
            )
            .values(
                archived=True,
                archived_at=now,
                archive_scheduled=False,
                archive_scheduled_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        session.add(
            TaskActivity(
                task_id=task_id,
                action="archived",
                actor_type=actor_type,
                field_name="archived",
                old_value="false",
                new_value="true",
                source=source,
            )
        )
        return True

    async def sweep(self, delay_hours: Optional[float] = None) -> int:
        """Archive tasks completed more than ``delay_hours`` ago."""
        delay = delay_hours if delay_hours is not None else self.config.delay_hours
        cutoff = utcnow() - timedelta(hours=delay)
        async with self._db.session() as session:
            result = await session.exec(
                select(Task.id).where(
                    Task.status == TASK_COMPLETED,
                    Task.archived == False,  # noqa: E712
                    Task.completed_at.is_not(None),
                    Task.completed_at < cutoff,
                )
            )
            candidates = list(result.all())

        archived = 0
        for task_id in candidates:
            async with self._db.transaction() as session:
                if await self._archive(session, task_id, "scheduler", "system"):
                    archived += 1
        if archived:
            logger.info(f"Archived {archived} completed tasks")
        return archived

    async def schedule_immediate_archive(self, task_id: int) -> Task:
        """Archive one completed task now, on a user's request."""
        async with self._db.transaction() as session:
            task = await session.get(Task, task_id)
            if task is None:
                raise NotFoundError("Task")
            if task.archived:
                raise PreconditionError("Task is already archived")
            if task.status != TASK_COMPLETED:
                raise PreconditionError(
                    "Only completed tasks can be archived", current_status=task.status
                )
            if not await self._archive(session, task_id, "manual", "user"):
                raise PreconditionError(
                    "Task changed while archiving", current_status=task.status
                )
            await session.refresh(task)
        logger.info(f"Archived task {task_id} on request")
        return task

    async def unarchive(self, task_id: int) -> Task:
        async with self._db.transaction() as session:
            task = await session.get(Task, task_id)
            if task is None:
                raise NotFoundError("Task")
            if not task.archived:
                raise PreconditionError("Task is not archived")
            task.archived = False
            task.archived_at = None
            task.updated_at = utcnow()
            session.add(task)
            session.add(
                TaskActivity(
                    task_id=task_id,
                    action="unarchived",
                    actor_type="user",
                    field_name="archived",
                    old_value="true",
                    new_value="false",
                    source="api",
                )
            )
        logger.info(f"Unarchived task {task_id}")
        return task

    async def list_archived(
        self, board_id: Optional[int] = None, page: int = 1, limit: int = 50
    ) -> Tuple[List[Task], dict]:
        """One page of archived tasks, newest archival first, plus paging meta."""
        if page < 1:
            raise InvalidInputError("page must be at least 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        conditions = [Task.archived == True]  # noqa: E712
        if board_id is not None:
            conditions.append(Task.board_id == board_id)
        async with self._db.session() as session:
            total = (
                await session.exec(select(func.count()).select_from(Task).where(*conditions))
            ).one()
            result = await session.exec(
                select(Task)
                .where(*conditions)
                .order_by(Task.archived_at.desc(), Task.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            tasks = list(result.all())
        meta = {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total else 0,
        }
        return tasks, meta

    async def delete_archived(self, task_id: int) -> None:
        """Permanently remove an archived task and its activity trail."""
        async with self._db.transaction() as session:
            task = await session.get(Task, task_id)
            if task is None:
                raise NotFoundError("Task")
            if not task.archived:
                raise PreconditionError("Only archived tasks can be permanently deleted")
            await session.exec(delete(TaskActivity).where(TaskActivity.task_id == task_id))
            await session.delete(task)
        logger.info(f"Deleted archived task {task_id}")

    @property
    def running(self) -> bool:
        return self._loop.running

    async def start(self) -> None:
        if not self.config.enabled:
            logger.info("Archive scheduler disabled")
            return
        await self._loop.start()

    async def stop(self) -> None:
        await self._loop.stop()
