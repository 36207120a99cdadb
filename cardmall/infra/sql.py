# cardmall/infra/sql.py
"""
One `Database` per process: async engine, session factory and the DB gate.

Every unit of work runs as

    async with db.gated():
        async with db.session.begin():
            ...

where `db` is the `GatedAsyncSession` handed out by `Database.open()`.
The gate bounds concurrent transactions. On SQLite it defaults to 1: the
dialect drops FOR UPDATE, so writers must not interleave.
"""
import os
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, AsyncContextManager, Optional

from sqlalchemy import event, MetaData
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
)

Gated = Callable[[], AsyncContextManager[None]]


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


def _async_url(url: str) -> str:
    for plain, driver in (
        ("sqlite://", "sqlite+aiosqlite://"),
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
    ):
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite://")


def _pool_size(url: str) -> Optional[int]:
    if url.startswith("postgresql+asyncpg://"):
        return int(os.getenv("DB_POOL_SIZE", "10"))
    return None


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _pragmas(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in (
            "journal_mode=WAL",
            "busy_timeout=5000",
            "synchronous=NORMAL",
            "foreign_keys=ON",
        ):
            cur.execute(f"PRAGMA {pragma};")
        cur.close()


@asynccontextmanager
async def _hold(sem: asyncio.Semaphore) -> AsyncIterator[None]:
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@dataclass
class Database:
    engine: AsyncEngine
    sessions: async_sessionmaker
    gate: asyncio.Semaphore

    def gated(self) -> AsyncContextManager[None]:
        return _hold(self.gate)

    @asynccontextmanager
    async def open(self) -> AsyncIterator[GatedAsyncSession]:
        async with self.sessions() as session:
            yield GatedAsyncSession(session=session, gated=self.gated)

    async def create_all(self, metadata: MetaData) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def make_database(database_url: str) -> Database:
    url = _async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = _pool_size(url)
    if pool_size is not None:
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(url, **kw)
    if _is_sqlite(url):
        _install_sqlite_pragmas(engine)

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    default_gate = "1" if pool_size is None else str(pool_size)
    gate_limit = int(os.getenv("DB_GATE_LIMIT", default_gate))
    return Database(engine, sessions, asyncio.Semaphore(max(1, gate_limit)))
