from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from library_service.config import settings

# Convert sync URL to async URL for asyncpg
_async_url = settings.database_url.replace("postgresql://", "postgresql+asyncpg://")

# SQLite engines pick their own pool class and reject sizing arguments
_engine_kwargs = (
    {}
    if _async_url.startswith("sqlite")
    else {"pool_size": settings.database_pool_size, "max_overflow": settings.database_max_overflow}
)

engine = create_async_engine(_async_url, **_engine_kwargs)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    return AsyncSessionLocal


async def init_models() -> None:
    from library_service.models.base import Base
    from library_service.models import catalog, circulation, logs  # noqa: F401  registers tables

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def transaction(session: AsyncSession):
    """Commit the session on success, roll it back on any failure or cancellation."""
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
