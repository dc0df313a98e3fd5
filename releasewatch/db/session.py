"""Async engine and session factory."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from releasewatch.config import settings


def _connect_args(database_url: str) -> dict:
    """Driver-level timeouts so no statement blocks indefinitely."""
    if database_url.startswith("postgresql+asyncpg"):
        return {
            "timeout": settings.db_timeout_seconds,
            "command_timeout": settings.db_timeout_seconds,
        }
    if database_url.startswith("sqlite+aiosqlite"):
        return {"timeout": settings.db_timeout_seconds}
    return {}


engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db():
    """Yield a database session (FastAPI dependency)."""
    async with AsyncSessionLocal() as session:
        yield session
