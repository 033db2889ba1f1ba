from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from . import models  # noqa: F401  registers tables on SQLModel.metadata


def normalize_url(database_url: str) -> str:
    """Map plain ``sqlite://`` and ``postgres://`` URLs onto async drivers."""
    if database_url.startswith("sqlite://") and "+aiosqlite" not in database_url:
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return database_url.replace(prefix, "postgresql+asyncpg://", 1)
    return database_url


class WorkflowDB:
    """Async engine and session helper for the workflow tables."""

    def __init__(self, database_url: str) -> None:
        self.url = normalize_url(database_url)
        connect_args = {"check_same_thread": False} if self.url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            self.url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def dispose(self) -> None:
        await self.engine.dispose()
