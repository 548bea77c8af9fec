"""
Database manager for Intakeflow.

This module provides a centralized async database connection manager and the
SQLite configuration that gives write transactions single-writer semantics.
"""

import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from ..settings import DatabaseDriver, settings
from ..utils.logger import logger


def _pydantic_json_serializer(obj: Any) -> str:
    """JSON serializer that handles Pydantic/SQLModel objects in JSON columns."""

    def default(o: Any) -> Any:
        if hasattr(o, "model_dump"):
            return o.model_dump(mode="json")
        if isinstance(o, datetime):
            return o.isoformat()
        raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")

    return json.dumps(obj, default=default)


def configure_sqlite_locking(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock when it begins.

    pysqlite defers BEGIN until the first write, so two transactions can both
    read a row and then race to upgrade their locks. Emitting ``BEGIN IMMEDIATE``
    serializes writers: a compare-and-swap UPDATE always sees the latest
    committed row, and a waiting writer blocks on ``busy_timeout`` instead of
    failing with a deadlock error.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA busy_timeout = 30000")
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for ``url`` with the project's JSON serializer.

    Args:
        url: SQLAlchemy async URL
        echo: Whether SQLAlchemy should log statements

    Returns:
        Configured AsyncEngine
    """
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=echo,
            json_serializer=_pydantic_json_serializer,
        )
        configure_sqlite_locking(engine)
    else:
        engine = create_async_engine(
            url,
            echo=echo,
            pool_size=20,
            max_overflow=0,
            json_serializer=_pydantic_json_serializer,
        )
    return engine


class DatabaseManager:
    """
    Manages database connections and sessions without global state.

    The engine and session factory are created lazily on first use.
    """

    def __init__(self, url: str | None = None) -> None:
        self._url = url
        self._async_engine: AsyncEngine | None = None
        self._async_session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def url(self) -> str:
        return self._url or settings.database_url

    @property
    def async_engine(self) -> AsyncEngine:
        """Get or create the asynchronous database engine."""
        if self._async_engine is None:
            self._async_engine = create_engine_for_url(self.url, echo=settings.debug)
            logger.info(f"Async database engine created: {self.url.split('@')[-1]}")
        return self._async_engine

    @property
    def async_session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create the async session factory."""
        if self._async_session_factory is None:
            self._async_session_factory = async_sessionmaker(
                self.async_engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._async_session_factory

    async def create_db_and_tables_async(self) -> None:
        """Create database tables asynchronously."""
        logger.info("Creating database tables (async)...")
        async with self.async_engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Database tables created (async)")

    @asynccontextmanager
    async def get_async_session_context(self) -> AsyncGenerator[AsyncSession]:
        """
        Get an async database session as a context manager.

        Usage:
            async with db_manager.get_async_session_context() as session:
                session.add(model_instance)
                await session.commit()

        Yields:
            AsyncSession: SQLModel async session
        """
        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Database error: {e}")
                await session.rollback()
                raise

    async def get_async_session(self) -> AsyncGenerator[AsyncSession]:
        """Get an async database session for FastAPI dependency."""
        async with self.get_async_session_context() as session:
            yield session

    async def close(self) -> None:
        """Close all database connections."""
        if self._async_engine:
            await self._async_engine.dispose()
            self._async_engine = None
            self._async_session_factory = None
            logger.info("Async database engine disposed")

    def __repr__(self) -> str:
        return (
            f"<DatabaseManager("
            f"driver={DatabaseDriver(settings.database_driver).value}, "
            f"async_initialized={self._async_engine is not None}"
            f")>"
        )


db_manager = DatabaseManager()
