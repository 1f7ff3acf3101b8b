# knowledge_base/db.py
import logging
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from knowledge_base.config import settings
from knowledge_base.models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str, **kwargs) -> AsyncEngine:
    """
    Async engine for ``url``. SQLite (local runs, tests) gets foreign keys
    switched on per connection so chunk and folder references hold there too.
    """
    eng = create_async_engine(url, echo=False, future=True, **kwargs)
    if eng.dialect.name == "sqlite":
        event.listen(eng.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return eng


# Engine: SQLAlchemy passes pool options through to asyncpg
engine = make_engine(settings.database_url)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_models(bind=None) -> None:
    """
    Development helper that creates tables from ORM metadata.
    In production, prefer Alembic migrations instead of create_all().
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/checked")


async def close_engine() -> None:
    """Call this on shutdown (or at the end of a worker job) to dispose the connection pool."""
    await engine.dispose()
    logger.info("Database engine disposed")


# FastAPI dependency
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Use in FastAPI routes like:
        async def endpoint(session: AsyncSession = Depends(get_async_session)):
            ...
    Ensures session is closed and rolled back on error.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
