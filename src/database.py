"""
Async engine and sessions for mission snapshots, the reward ledger and the
event log (SQLAlchemy 2.0).

PostgreSQL (asyncpg) in deployments, SQLite (aiosqlite) for local runs and tests.
"""

from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from src.config import get_settings
from src.logging_config import get_logger

logger = get_logger(__name__)


def _on_sqlite_connect(dbapi_conn, connection_record) -> None:
    # Readers keep going while a mission write holds the lock; writers wait instead of failing
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine with pool settings that suit the backend."""
    if database_url.startswith("sqlite"):
        # One connection per session so commits never trip over open cursors
        sqlite_engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=NullPool,
        )
        event.listen(sqlite_engine.sync_engine, "connect", _on_sqlite_connect)
        return sqlite_engine

    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    # Results are returned after commit, so attributes must stay loaded
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


settings = get_settings()
engine = build_engine(settings.database_url, echo=settings.debug)
async_session_maker = build_session_maker(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session.

    MissionService commits its own unit of work; the trailing commit here only
    flushes anything a route wrote outside the service.
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create missing tables (Alembic owns schema changes in deployments)."""
    from src.kernel.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready", extra={"backend": engine.dialect.name})


async def close_db() -> None:
    await engine.dispose()
