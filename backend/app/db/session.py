"""
Async engine and session lifecycle for the booking store.

PostgreSQL runs through asyncpg with a sized connection pool. SQLite (local runs and
tests) runs through aiosqlite with writers serialised on the database file lock.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel, text

from app.core.settings import Settings

logger = logging.getLogger(__name__)

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def async_database_url(database_url: str) -> str:
    """Point a plain ``postgresql://`` or ``sqlite://`` URL at its async driver"""
    if not database_url:
        raise ValueError("DB_URL environment variable is required")
    try:
        url = make_url(database_url)
    except ArgumentError as e:
        raise ValueError(f"Invalid database URL: {e}") from e
    driver = ASYNC_DRIVERS.get(url.drivername)
    if driver:
        url = url.set(drivername=driver)
    return url.render_as_string(hide_password=False)


class DatabaseManager:
    """Owns the engine and hands out sessions for one database"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.engine: Optional[AsyncEngine] = None
        self.async_session: Optional[async_sessionmaker] = None

    def _engine_options(self, url: str) -> Dict[str, Any]:
        options: Dict[str, Any] = {"echo": self.settings.DB_ECHO, "pool_pre_ping": True}
        if url.startswith("postgresql"):
            options.update(
                pool_size=self.settings.DB_POOL_SIZE,
                max_overflow=self.settings.DB_MAX_OVERFLOW,
                pool_timeout=self.settings.DB_POOL_TIMEOUT,
                pool_recycle=self.settings.DB_POOL_RECYCLE,
            )
        elif url.startswith("sqlite"):
            # Writers wait on the file lock instead of failing immediately
            options["connect_args"] = {"timeout": self.settings.DB_BUSY_TIMEOUT}
        return options

    @staticmethod
    def _setup_sqlite_locking(engine: AsyncEngine) -> None:
        """Take the write lock when a transaction starts.

        SQLite otherwise upgrades a shared lock to a write lock mid-transaction and
        fails concurrent writers with "database is locked" rather than waiting.
        """

        @event.listens_for(engine.sync_engine, "connect")
        def disable_driver_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    async def initialize(self) -> None:
        url = async_database_url(self.settings.DB_URL)
        self.engine = create_async_engine(url, **self._engine_options(url))
        if self.engine.dialect.name == "sqlite":
            self._setup_sqlite_locking(self.engine)

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=True,
        )
        logger.info(f"Database engine ready: dialect={self.engine.dialect.name} host={self.engine.url.host}")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        if not self.async_session:
            raise RuntimeError("Database manager not initialized")

        session = self.async_session()
        try:
            yield session
        except Exception as e:
            # Booking errors pass through here too; only the session is cleaned up
            logger.debug(f"Rolling back session after {type(e).__name__}")
            await session.rollback()
            raise
        finally:
            await session.close()

    async def health_check(self) -> Dict[str, Any]:
        """Round-trip a trivial query and report how long it took"""
        started = time.perf_counter()
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}

        return {
            "status": "healthy",
            "dialect": self.engine.dialect.name,
            "response_time": f"{time.perf_counter() - started:.3f}s",
        }

    async def init_db(self) -> None:
        if not self.engine:
            raise RuntimeError("Database engine not initialized")

        import app.db.base  # noqa: F401  registers every table

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Database tables created")

    async def close(self) -> None:
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("Database connections closed")


# Global database manager instance
db_manager = DatabaseManager()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session from the global manager"""
    async with db_manager.get_session() as session:
        yield session
