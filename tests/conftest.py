from __future__ import annotations

from datetime import timedelta

import pytest_asyncio
from sqlalchemy import update

from colony.db import Database, utcnow
from colony.runs import RunOrchestrator


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'colony.db'}")
    await database.init_db()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def orchestrator(db):
    return RunOrchestrator(db)


async def backdate(db: Database, model, row_id, minutes: float) -> None:
    """Pretend a row was last touched ``minutes`` ago."""
    async with db.transaction() as session:
        await session.exec(
            update(model)
            .where(model.id == row_id)
            .values(updated_at=utcnow() - timedelta(minutes=minutes))
            .execution_options(synchronize_session=False)
        )


async def set_fields(db: Database, model, row_id, **values) -> None:
    async with db.transaction() as session:
        await session.exec(
            update(model)
            .where(model.id == row_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


def single_step(step_id: str, agent_id: str, template: str = "Do {{task}}") -> dict:
    return {
        "step_id": step_id,
        "agent_id": agent_id,
        "input_template": template,
        "expects": "STATUS: done",
    }
