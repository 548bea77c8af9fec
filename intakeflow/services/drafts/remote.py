"""
Server-side draft stores seen from the reconciler.
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from ...models import DraftSnapshot, PersistOutcome
from ...repositories import DraftRepository

if TYPE_CHECKING:
    from ...client import IntakeClient

type SessionContextFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class DraftRemote(Protocol):
    """Durable, versioned server copy of drafts."""

    async def persist(self, snapshot: DraftSnapshot) -> PersistOutcome: ...

    async def fetch(self, session_id: str) -> DraftSnapshot | None: ...


class RepositoryDraftRemote:
    """Draft remote backed directly by the database.

    Args:
        session_factory: Callable returning an async session context manager,
            such as ``db_manager.get_async_session_context``
    """

    def __init__(self, session_factory: SessionContextFactory):
        self.session_factory = session_factory

    async def persist(self, snapshot: DraftSnapshot) -> PersistOutcome:
        async with self.session_factory() as session:
            return await DraftRepository(session).save(snapshot)

    async def fetch(self, session_id: str) -> DraftSnapshot | None:
        async with self.session_factory() as session:
            record = await DraftRepository(session).get_by_session(session_id)
            return record.to_snapshot() if record else None


class HttpDraftRemote:
    """Draft remote reached over the HTTP API."""

    def __init__(self, client: "IntakeClient"):
        self.client = client

    async def persist(self, snapshot: DraftSnapshot) -> PersistOutcome:
        return await self.client.save_draft(snapshot)

    async def fetch(self, session_id: str) -> DraftSnapshot | None:
        return await self.client.get_draft(session_id)

