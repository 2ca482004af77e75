# catalog_sync/db.py
from __future__ import annotations

import pathlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)

logger = logging.getLogger("uvicorn.error")


class Base(DeclarativeBase):
    pass


def _ensure_sqlite_dir(dsn: str) -> None:
    """Make sure the folder exists so SQLAlchemy can create the SQLite file."""
    if not dsn.startswith("sqlite") or ":memory:" in dsn:
        return
    try:
        # Handle sqlite+aiosqlite:///./data/catalog_sync.db
        # or sqlite+aiosqlite:////code/data/catalog_sync.db
        sep = "///" if "///" in dsn else "//"
        path_part = dsn.split(sep, 1)[1] if sep in dsn else ""
        if path_part:
            path = pathlib.Path(path_part).resolve()
            path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning("[DB] Could not ensure SQLite directory exists: %s", e)


class Database:
    """
    Owns the async engine and session factory for the stage store.

    Constructed explicitly and opened/closed by the application's
    startup/shutdown hooks (or by a test fixture); nothing is created lazily
    on first use.
    """

    def __init__(self, dsn: str, *, echo: bool = False):
        self.dsn = dsn
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not connected; call connect() first")
        return self._engine

    async def connect(self, create_tables: bool = True) -> None:
        if self._engine is not None:
            return
        _ensure_sqlite_dir(self.dsn)
        kwargs = {"echo": self.echo, "pool_pre_ping": True}
        if self.dsn.startswith("sqlite") and ":memory:" in self.dsn:
            # one shared connection, otherwise every checkout sees an empty database
            kwargs = {"echo": self.echo, "poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        self._engine = create_async_engine(self.dsn, **kwargs)
        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)
        try:
            async with self._engine.begin() as conn:
                if create_tables:
                    # register ORM tables on Base.metadata
                    from catalog_sync.models import staging  # noqa: F401
                    await conn.run_sync(Base.metadata.create_all)
                else:
                    await conn.run_sync(lambda _: None)
        except Exception as e:
            logger.error("[DB] initial connect failed: %s", e)
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
            raise
        logger.info("[DB] engine initialized for %s", self.dsn)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("[DB] engine disposed")
        self._engine = None
        self._sessionmaker = None

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not connected; call connect() first")
        async with self._sessionmaker() as s:
            yield s

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.run_sync(lambda _: None)
            return True
        except Exception as e:
            logger.warning("[DB] ping failed: %s", e)
            return False
