"""Async SQLAlchemy engine and the DB gate.

Session work goes through `gated()`, a semaphore sized to the connection
pool unless DB_GATE_LIMIT says otherwise.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

SQLITE_PRAGMAS = (
    "journal_mode=WAL",
    "busy_timeout=5000",
    "synchronous=NORMAL",
    "foreign_keys=ON",
)


def async_url(url: str) -> str:
    for prefix, driver in _ASYNC_DRIVERS:
        if url.startswith(prefix):
            return driver + url[len(prefix):]
    return url


def _sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(f"PRAGMA {pragma};")
        cur.close()


def make_async_engine(
    database_url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    gate_limit: Optional[int] = None,
):
    """Returns (engine, session factory, gate semaphore, gated)."""
    url = async_url(database_url)
    kw = {"pool_pre_ping": True}
    if url.startswith("postgresql+asyncpg://"):
        kw.update(pool_size=pool_size, max_overflow=max_overflow,
                  pool_timeout=pool_timeout)

    engine = create_async_engine(url, **kw)
    if url.startswith("sqlite+aiosqlite://"):
        _sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False,
    )
    gate = asyncio.Semaphore(max(1, gate_limit or pool_size))

    @asynccontextmanager
    async def gated() -> AsyncIterator[None]:
        async with gate:
            yield

    return engine, SessionAsync, gate, gated


def engine_from_settings(settings):
    return make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )
