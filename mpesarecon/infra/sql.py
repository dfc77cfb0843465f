import os
import asyncio
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, Dict, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
)
from contextlib import asynccontextmanager

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

# applied on every new SQLite connection; busy_timeout makes concurrent
# callbacks queue for the write lock instead of failing with "locked"
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


def normalize_async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite://")


# DB-GATE: at most `limit` callbacks hold a connection at once, the rest
# wait on the semaphore in the event loop rather than in the pool
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@dataclass
class Database:
    engine: AsyncEngine
    SessionAsync: async_sessionmaker[AsyncSession]
    gated: Gated

    async def dispose(self) -> None:
        await self.engine.dispose()


def _pool_settings(db_url: str) -> Dict[str, Any]:
    if not db_url.startswith("postgresql+asyncpg://"):
        return {}
    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
    }


def make_database(database_url: str) -> Database:
    """Engine, session factory and gate for one process."""
    db_url = normalize_async_url(database_url)
    pool = _pool_settings(db_url)
    engine = create_async_engine(
        db_url, future=True, pool_pre_ping=True, **pool
    )

    if is_sqlite(db_url):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            for pragma in SQLITE_PRAGMAS:
                cur.execute(pragma)
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # default the gate to the pool size so nobody waits inside the pool
    gate_limit = int(os.getenv("DB_GATE_LIMIT", pool.get("pool_size", 10)))
    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return Database(engine=engine, SessionAsync=SessionAsync, gated=gated)
