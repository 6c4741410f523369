"""Async database engine and session factory."""

from collections.abc import AsyncGenerator
from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from vaultgate.config.settings import get_settings


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    kwargs: dict[str, Any] = {"echo": echo}
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True, pool_recycle=3600)
    return create_async_engine(database_url, **kwargs)


@lru_cache
def get_engine() -> AsyncEngine:
    """Return a cached async database engine (singleton per process)."""
    settings = get_settings()
    return build_engine(settings.database_url, echo=settings.debug)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    engine = get_engine()
    async with AsyncSession(engine) as session:
        yield session


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables (for dev/testing only; use Alembic in production)."""
    import vaultgate.models.database  # noqa: F401  (registers tables on the metadata)

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
