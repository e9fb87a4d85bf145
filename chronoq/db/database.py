"""
Async engine and session factory.

One `Database` is created per process at startup and disposed at shutdown;
everything that needs a session receives it explicitly.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from . import models  # noqa: F401  (registers tables on SQLModel.metadata)

logger = structlog.get_logger(__name__)


class Database:
    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        engine_kwargs = {"echo": echo, "pool_pre_ping": True}
        self.engine = create_async_engine(url, **engine_kwargs)
        self._sessionmaker = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as session:
            yield session

    async def create_all(self) -> None:
        """Create tables directly (tests, local runs). Deployments use the alembic migration."""
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("database_schema_created", url=self.engine.url.render_as_string(hide_password=True))

    async def dispose(self) -> None:
        await self.engine.dispose()
