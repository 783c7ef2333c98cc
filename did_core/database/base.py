"""
Persistence foundation for the SQL stores.

Holds the declarative base every table derives from, the row timestamp
mixin, and the manager that owns the async engine.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Optional

from sqlalchemy import DateTime, String, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

if TYPE_CHECKING:
    from did_core.config import Settings

logger = logging.getLogger(__name__)


ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}

DEFAULT_POOL = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 1800,
}


def to_async_url(database_url: str) -> str:
    """Rewrite a plain driver URL to its asyncio driver."""
    for prefix, async_prefix in ASYNC_DRIVERS.items():
        if database_url.startswith(prefix):
            return async_prefix + database_url[len(prefix):]
    return database_url


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Declarative base; every row is keyed by a uuid4 string."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)


class TimestampMixin:
    """Row creation and last-write times (naive UTC)."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class DatabaseManager:
    """
    Owns the async engine and hands out committed sessions.

    SQLite (aiosqlite) is the local and test backend; any other URL gets
    a sized connection pool, overridable through ``pool_options``.
    """

    def __init__(self, database_url: str, echo: bool = False, **pool_options: Any):
        self._url = to_async_url(database_url)
        self._echo = echo
        self._pool_options: Dict[str, Any] = {**DEFAULT_POOL, **pool_options}
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker] = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "DatabaseManager":
        """Build a manager from engine settings."""
        return cls(settings.database_url, echo=settings.database_echo)

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_sqlite(self) -> bool:
        return self._url.startswith("sqlite")

    @property
    def engine(self) -> AsyncEngine:
        """Async engine, created on first use."""
        if self._engine is None:
            # SQLite picks its own pool and rejects the sizing arguments
            options = {} if self.is_sqlite else self._pool_options
            self._engine = create_async_engine(self._url, echo=self._echo, **options)
            logger.debug("Database engine created for %s", self._engine.url.render_as_string())
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        """Session factory bound to the engine, created on first use."""
        if self._sessions is None:
            self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)
        return self._sessions

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Session scoped to one store operation.

        Commits when the block exits cleanly and rolls back on any error.
        """
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            await session.commit()

    async def create_all(self) -> None:
        """Create any missing tables."""
        # Register the mapped tables on Base.metadata
        from did_core.database import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema created")

    async def health_check(self) -> bool:
        """True when a trivial query round-trips."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Database health check failed: {e}")
            return False
        return True

    async def close(self) -> None:
        """Dispose of the engine and its connections."""
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None


__all__ = [
    "Base",
    "TimestampMixin",
    "DatabaseManager",
    "to_async_url",
]
