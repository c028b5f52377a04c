"""Async database engine and session management."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from house_haunters.app.config import get_settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""
    pass


settings = get_settings()

# Auto-detect driver from DATABASE_URL
_is_sqlite = "sqlite" in settings.database_url
_connect_args = {}
if _is_sqlite:
    _connect_args["check_same_thread"] = False
    _connect_args["timeout"] = 30  # Wait up to 30s for write lock (default 5s)

_engine_kwargs = {
    "echo": False,
    "connect_args": _connect_args,
}
if not _is_sqlite:
    _engine_kwargs["pool_size"] = 5
    _engine_kwargs["max_overflow"] = 10

engine = create_async_engine(settings.database_url, **_engine_kwargs)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency: yield an async database session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Create all tables (for local dev). Use Alembic for production migrations."""
    # Ensure models are registered with Base.metadata
    import house_haunters.domain.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # WAL lets request handlers read while the scheduler sweep writes.
    if _is_sqlite:
        async with engine.begin() as conn:
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA busy_timeout=30000"))
