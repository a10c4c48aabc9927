from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import SQLModel

from . import models  # noqa: F401  registers tables on SQLModel.metadata


def normalize_url(database_url: str) -> str:
    """Map plain ``sqlite://`` / ``postgres://`` URLs to async drivers."""
    if database_url.startswith("sqlite://") and "+" not in database_url.split("://")[0]:
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return database_url.replace(prefix, "postgresql+asyncpg://", 1)
    return database_url


class Database:
    """Async database helper shared by the engine services."""

    def __init__(self, database_url: str) -> None:
        self.url = normalize_url(database_url)
        connect_args = {}
        if self.url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_async_engine(
            self.url, echo=False, future=True, connect_args=connect_args
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session whose work commits together or not at all."""
        async with self.session() as session:
            async with session.begin():
                yield session
