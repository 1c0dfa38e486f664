# infra/sql.py
from __future__ import annotations
import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

Gated = Callable[[], AsyncContextManager[None]]

# plain URLs as found in env files -> their async driver
ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def normalize_async_url(url: str) -> str:
    for plain, driver in ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _enable_sqlite_pragmas(dbapi_connection, _record) -> None:
    cur = dbapi_connection.cursor()
    for pragma in ("journal_mode=WAL", "busy_timeout=5000",
                   "foreign_keys=ON"):
        cur.execute(f"PRAGMA {pragma};")
    cur.close()


@dataclass
class Database:
    """Engine, session factory and the gate that keeps concurrent DB work
    within what the pool can serve."""
    engine: AsyncEngine
    sessions: async_sessionmaker
    gate: asyncio.Semaphore

    @asynccontextmanager
    async def gated(self) -> AsyncIterator[None]:
        async with self.gate:
            yield

    async def create_all(self, metadata: MetaData) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def make_database(database_url: str) -> Database:
    url = normalize_async_url(database_url)
    options: Dict[str, Any] = {"pool_pre_ping": True}

    gate_limit = 10
    if url.startswith("postgresql+asyncpg://"):
        gate_limit = _env_int("DB_POOL_SIZE", 10)
        options.update(
            pool_size=gate_limit,
            max_overflow=_env_int("DB_MAX_OVERFLOW", 10),
            pool_timeout=_env_int("DB_POOL_TIMEOUT", 30),
        )
    gate_limit = _env_int("DB_GATE_LIMIT", gate_limit)

    engine = create_async_engine(url, **options)
    if url.startswith("sqlite+aiosqlite://"):
        event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)

    return Database(
        engine=engine,
        sessions=async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        ),
        gate=asyncio.Semaphore(max(1, gate_limit)),
    )
