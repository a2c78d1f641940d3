"""Async engine for the conversation store.

SQLite (aiosqlite) by default; any SQLAlchemy async URL works, e.g.
postgresql+asyncpg with the postgres extra installed.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from anvil.config import Settings
from anvil.storage.models import Base

logger = logging.getLogger(__name__)


class Database:
    def __init__(self, settings: Settings) -> None:
        self.url = make_url(settings.db_url)
        self.is_sqlite = self.url.get_backend_name() == "sqlite"
        pool_options = {}
        if not self.is_sqlite:
            pool_options = {"pool_size": settings.db_pool_size, "max_overflow": settings.db_max_overflow}
        self.engine = create_async_engine(self.url, echo=settings.log_level == "debug", **pool_options)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def connect(self) -> None:
        """Create the SQLite file's directory and any missing tables."""
        if self.is_sqlite and self.url.database not in (None, "", ":memory:"):
            Path(self.url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database ready (%s)", self.url.render_as_string(hide_password=True))

    async def disconnect(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.disconnect()
