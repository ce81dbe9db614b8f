"""
Async PostgreSQL connection manager using SQLAlchemy 2.0+ async engine.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shared.config import Settings, get_settings
from shared.errors import ServiceUnavailableError
from shared.utils.logging import get_logger

logger = get_logger(__name__)

_CONNECTION_ERROR_MARKERS = (
    "connection refused",
    "connection terminated",
    "connect timeout",
    "connection was closed",
    "econnrefused",
    "etimedout",
    "enotfound",
)


def is_connection_error(exc: BaseException) -> bool:
    """True if the exception means the database could not be reached."""
    if isinstance(exc, (OperationalError, InterfaceError, ConnectionError, OSError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _CONNECTION_ERROR_MARKERS)


class DatabaseManager:
    """Manages async SQLAlchemy engine and session factory."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def connect(self) -> None:
        """Create the async engine and session factory."""
        self._engine = create_async_engine(
            self._settings.database_url_str,
            pool_size=self._settings.db_pool_min,
            max_overflow=self._settings.db_pool_max - self._settings.db_pool_min,
            pool_pre_ping=True,
            pool_recycle=300,
            echo=self._settings.debug,
            connect_args={
                "timeout": self._settings.db_command_timeout,
                "command_timeout": self._settings.db_command_timeout,
            },
        )
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("database_connected", url=self._settings.database_url_safe_log)

    async def disconnect(self) -> None:
        """Dispose of the engine and all connections."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("database_disconnected")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager not connected.")
        return self._engine

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        """Provide a read-only session (no commit), bounded by the store timeout."""
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not connected.")
        async with _bounded("read", self._settings.store_timeout_s):
            async with self._session_factory() as session:
                yield session

    @asynccontextmanager
    async def write_session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional session that auto-commits on success."""
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not connected.")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def transaction(self, timeout_s: float | None = None) -> AsyncIterator[AsyncSession]:
        """A write session whose whole body must finish within the transaction timeout."""
        timeout = timeout_s or self._settings.db_transaction_timeout_s
        async with _bounded("transaction", timeout):
            async with self.write_session() as session:
                yield session


@asynccontextmanager
async def _bounded(operation: str, timeout_s: float) -> AsyncIterator[None]:
    """Map timeouts and connection failures to ServiceUnavailableError."""
    try:
        async with asyncio.timeout(timeout_s):
            yield
    except TimeoutError as exc:
        logger.warning("database_timeout", operation=operation, timeout_s=timeout_s)
        raise ServiceUnavailableError(
            "DATABASE_TIMEOUT",
            f"Database {operation} exceeded {timeout_s}s",
            {"operation": operation, "timeout_s": timeout_s},
        ) from exc
    except (DBAPIError, ConnectionError, OSError) as exc:
        if not is_connection_error(exc):
            raise
        logger.error("database_unavailable", operation=operation, error=str(exc))
        raise ServiceUnavailableError(
            "DATABASE_UNAVAILABLE",
            "Database connection failed",
            {"operation": operation},
        ) from exc
