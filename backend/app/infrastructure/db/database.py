"""
Database Configuration for Caption Crafter

Async SQLAlchemy engine and session management.
One DatabaseManager is constructed at startup from Settings and handed to the
repositories that need it; nothing here is a module-level singleton.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlmodel import SQLModel

from app.config.settings import Settings
from app.infrastructure.exceptions import ConfigurationError


class DatabaseManager:
    """
    Manages async database connections and sessions.

    The engine is created lazily on first use so constructing the manager
    never touches the network.
    """

    def __init__(
        self,
        database_url: str,
        echo: bool = False,
        engine_options: Optional[dict[str, Any]] = None,
    ):
        if not database_url:
            raise ConfigurationError(
                "A database URL is required for the SQL usage store",
                missing_keys=["DATABASE_URL"],
            )
        self._database_url = database_url
        self._echo = echo
        self._engine_options = engine_options or {}
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "DatabaseManager":
        """Build a manager with pooling configured from Settings."""
        url = settings.async_database_url
        options: dict[str, Any] = {"pool_pre_ping": True}
        if url and not url.startswith("sqlite"):
            options.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
            )
        return cls(url, echo=settings.database_echo, engine_options=options)

    @property
    def engine(self) -> AsyncEngine:
        """Get or create async engine with connection pooling."""
        if self._engine is None:
            self._initialize_engine()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create session factory."""
        if self._session_factory is None:
            self._initialize_engine()
        return self._session_factory

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def _initialize_engine(self) -> None:
        self._engine = create_async_engine(
            self._database_url,
            echo=self._echo,
            **self._engine_options,
        )

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session_context(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Context manager for database sessions.

        Commits on success and rolls back on any exception.

        Usage:
            async with db.session_context() as session:
                result = await session.execute(query)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        """Create all tables from SQLModel metadata."""
        # Register table models with SQLModel.metadata
        import app.infrastructure.db.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def close(self) -> None:
        """Close engine and dispose of connection pool."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
