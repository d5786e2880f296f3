"""
Database Session Management - Async SQLAlchemy engines and sessions.

Writes (ingestion, webhooks, sync, gating) use the primary; access checks
and purchase listings may be served from a read replica.
"""

from collections.abc import AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings
from app.observability import instrument_sqlalchemy


class _EngineSlot:
    """Lazily created engine plus session factory for one database role."""

    def __init__(self, url_source: Callable[[], str]) -> None:
        self._url_source = url_source
        self._engine: AsyncEngine | None = None
        self._factory: async_sessionmaker[AsyncSession] | None = None

    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._factory is None:
            self._engine = create_async_engine(
                self._url_source(),
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_recycle=settings.database_pool_recycle,
                pool_pre_ping=True,
                echo=settings.log_level.upper() == "DEBUG",
            )
            instrument_sqlalchemy(self._engine)
            # Snapshots outlive the commit that produced them.
            self._factory = async_sessionmaker(self._engine, expire_on_commit=False)
        return self._factory

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._factory = None


_primary = _EngineSlot(lambda: settings.database_url)
_replica = _EngineSlot(lambda: settings.read_database_url)


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a primary-database session.

    Services commit or roll back themselves; the session is closed here.
    """
    async with _primary.session_factory()() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for read-only work (replica when configured)."""
    async with _replica.session_factory()() as session:
        yield session


async def close_engines() -> None:
    """Dispose both pools on shutdown."""
    await _primary.dispose()
    await _replica.dispose()
