from datetime import UTC, datetime
from typing import Any, AsyncGenerator

from fastapi import Depends
from sqlalchemy import TIMESTAMP
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from guildpass.config.settings import Settings, get_settings


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timestamp column that always hands back timezone-aware UTC datetimes.

    PostgreSQL keeps the offset; SQLite drops it, so naive values read back
    are re-tagged as UTC.
    """

    impl = TIMESTAMP(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Database:
    """Database connection and session management."""

    def __init__(self, settings: Settings):
        self.settings = settings
        engine_kwargs: dict[str, Any] = {"echo": False}
        if not settings.database_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
            )
        self.engine = create_async_engine(settings.database_url, **engine_kwargs)
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


# Global database instance
_database: Database | None = None


def get_database(settings: Settings = Depends(get_settings)) -> Database:
    """Get or create the global database instance."""
    global _database
    if _database is None:
        _database = Database(settings)
    return _database


async def get_session(
    database: Database = Depends(get_database),
) -> AsyncGenerator[AsyncSession, None]:
    """Dependency injection for database sessions."""
    async with database.SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# Convenience type alias for dependency injection
SessionDep = Depends(get_session)


def get_session_factory(
    database: Database = Depends(get_database),
) -> async_sessionmaker[AsyncSession]:
    """Session factory for long-lived responses that open their own sessions."""
    return database.SessionLocal
