"""
Database connection and session management.

Async SQLAlchemy engine, declarative base, and the FastAPI session
dependency. One request gets one session and one transaction.
"""

from typing import Any, AsyncGenerator

from fastapi import Depends
from loguru import logger
from sqlalchemy import make_url, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all models."""


class Database:
    """
    Database connection manager.

    Usage:
        db = Database("postgresql+asyncpg://...")
        await db.connect()
        async with db.session_factory() as session:
            ...
    """

    def __init__(self, database_url: str | None = None) -> None:
        self.database_url = database_url or str(settings.database_url)
        self.engine: AsyncEngine | None = None
        self.session_factory: async_sessionmaker[AsyncSession] | None = None

    async def connect(self) -> None:
        """Create engine and session factory."""
        if self.engine is not None:
            return

        engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
        if self.database_url.startswith("postgresql"):
            engine_kwargs["pool_size"] = settings.database_pool_size
            engine_kwargs["max_overflow"] = settings.database_max_overflow

        self.engine = create_async_engine(self.database_url, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info(f"Database engine created for {_redact_url(self.database_url)}")

    async def create_tables(self) -> None:
        """Create all tables (development and tests)."""
        if self.engine is None:
            await self.connect()

        # Register every model on the metadata
        import app.models.forum  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def disconnect(self) -> None:
        """Dispose of the engine."""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
            logger.info("Database disconnected")

    async def health_check(self) -> bool:
        """Check if the database is reachable."""
        if self.session_factory is None:
            return False
        try:
            async with self.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


# Single shared handle, connected in the application lifespan
database = Database()


async def init_db() -> None:
    """Connect and optionally create tables."""
    await database.connect()
    if settings.database_create_tables:
        await database.create_tables()


async def close_db() -> None:
    """Release all pooled connections."""
    await database.disconnect()


def get_database() -> Database:
    """FastAPI dependency: the shared database handle."""
    return database


async def get_db(
    db: Database = Depends(get_database),
) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: transactional session scope.

    Commits when the request handler returns, rolls back on any exception.
    Routes declare it with ``scope="function"`` so the commit finishes
    before the response is sent and before background tasks run.
    """
    if db.session_factory is None:
        await db.connect()

    async with db.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def upsert(
    session: AsyncSession,
    model: type[Base],
    values: dict[str, Any],
    index_elements: list[str],
    update_fields: list[str],
) -> Any:
    """
    Build an INSERT ... ON CONFLICT DO UPDATE for the session's dialect.

    Supports PostgreSQL and SQLite, which share the same syntax.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise NotImplementedError(f"Upsert not supported on {dialect}")

    return stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={field: stmt.excluded[field] for field in update_fields},
    )


def _redact_url(url: str) -> str:
    """Hide the password part of a database URL."""
    return make_url(url).render_as_string(hide_password=True)
