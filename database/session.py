"""
Async database access for the SQL history backend.

``init_db(url)`` opens the process-wide ``HistoryDatabase`` and creates
its tables; ``get_session()`` yields a transactional session on it;
``close_db()`` disposes the pool. Plain URLs are mapped to async drivers:

  postgresql:// → postgresql+asyncpg   (postgres extra)
  mysql://      → mysql+aiomysql       (mysql extra)
  sqlite://     → sqlite+aiosqlite
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)


def _to_async_url(db_url: str) -> str:
    for plain, driver in ASYNC_DRIVERS:
        if db_url.startswith(plain):
            return driver + db_url[len(plain):]
    return db_url


def _redacted(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


class HistoryDatabase:
    """Engine plus session factory for one database URL."""

    def __init__(self, db_url: str, echo: bool = False):
        self.url = _to_async_url(db_url)
        if self.url.startswith("sqlite"):
            options = {"connect_args": {"check_same_thread": False}}
        else:
            options = {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_timeout": 30,
                "pool_recycle": 1800,
                "pool_pre_ping": True,
            }
        self.engine: AsyncEngine = create_async_engine(self.url, echo=echo, **options)
        self.sessions = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        logger.info("database_engine_created", dialect=self.engine.dialect.name, url=_redacted(self.url))

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_initialized", dialect=self.engine.dialect.name,
                    tables=sorted(Base.metadata.tables))

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.sessions() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("database_closed", url=_redacted(self.url))


_database: Optional[HistoryDatabase] = None


def _current(db_url: str = None) -> HistoryDatabase:
    global _database
    if _database is None:
        settings = get_settings()
        _database = HistoryDatabase(db_url or settings.database.url, echo=settings.debug)
    return _database


def get_engine(db_url: str = None) -> AsyncEngine:
    return _current(db_url).engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with _current().session() as db:
        yield db


async def init_db(db_url: str = None) -> None:
    """Open the database (from *db_url* or settings) and create missing tables."""
    await _current(db_url).create_tables()


async def close_db() -> None:
    global _database
    if _database is not None:
        await _database.dispose()
        _database = None
