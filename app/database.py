"""
Database engine and session management.

Every reconciliation step runs in its own short unit of work and relies on
the payments table's version column for compare-and-set writes, so several
processes can share one database file.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.models.payment import Base

# Seconds a SQLite writer waits on a locked database before giving up.
SQLITE_BUSY_TIMEOUT = 15


def build_engine(url: str) -> AsyncEngine:
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
    return create_async_engine(url, echo=False, connect_args=connect_args)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Records stay readable after commit; the reconciler re-reads explicitly when it needs fresh state.
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url)
async_session = build_session_factory(engine)


async def create_tables(bind: AsyncEngine) -> None:
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db():
    """Create the payments and audit tables. Safe to call multiple times (CREATE IF NOT EXISTS)."""
    await create_tables(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session
