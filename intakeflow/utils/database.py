"""
Database utilities for Intakeflow.

FastAPI dependency and startup helpers on top of the shared DatabaseManager.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from .db_manager import db_manager


async def create_db_and_tables_async() -> None:
    """Create database tables asynchronously."""
    await db_manager.create_db_and_tables_async()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session as a FastAPI dependency.

    Usage:
        @router.get("/cases")
        async def list_cases(session: AsyncSession = Depends(get_async_session)):
            ...

    Yields:
        AsyncSession: SQLModel async session
    """
    async for session in db_manager.get_async_session():
        yield session
