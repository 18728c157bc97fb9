"""Database configuration and connection management."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from clinicflow.config import settings


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, switching sync PostgreSQL URLs to asyncpg."""
    url = database_url.replace("postgresql://", "postgresql+asyncpg://")

    if url.startswith("postgresql+asyncpg://"):
        return create_async_engine(
            url,
            echo=echo,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_recycle=3600,
            connect_args={
                "server_settings": {
                    "application_name": settings.app_name,
                },
            },
        )

    return create_async_engine(url, echo=echo)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Async session factory."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Create async engine with connection pooling
engine: AsyncEngine = build_engine(settings.database_url, echo=settings.debug)

# Async session factory
AsyncSessionLocal = build_session_factory(engine)


async def check_database_connection(bind: AsyncEngine = engine) -> bool:
    """Check if database connection is healthy."""
    try:
        async with bind.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
