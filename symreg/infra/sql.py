import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Dict, Optional, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),  # Heroku-style
)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


def normalize_async_url(url: str) -> str:
    for plain, async_prefix in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return async_prefix + url[len(plain):]
    return url


def _sqlite_pragmas(dbapi_connection, _record) -> None:
    cur = dbapi_connection.cursor()
    for pragma in SQLITE_PRAGMAS:
        cur.execute(pragma)
    cur.close()


# DB-GATE: bounds concurrent pool checkouts; never held across the
# outbound gateway call
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(
    database_url: str, *, pool_size: int = 10, max_overflow: int = 10,
    pool_timeout: int = 30, gate_limit: Optional[int] = None,
) -> Tuple[AsyncEngine, async_sessionmaker, Gated]:
    db_url = normalize_async_url(database_url)
    kw: Dict[str, object] = dict(future=True, pool_pre_ping=True)
    if db_url.startswith("postgresql+asyncpg://"):
        kw.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # one gate per engine, sized to the pool unless told otherwise
    db_gate = asyncio.Semaphore(max(1, gate_limit or pool_size))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, gated
