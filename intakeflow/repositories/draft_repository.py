"""Repository for server-held draft snapshots."""

from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from ..exceptions.domain import AlreadySubmittedError
from ..models import DraftRecord, DraftSnapshot, PersistOutcome, utcnow
from ..utils.logger import logger
from .base import BaseRepository


class DraftRepository(BaseRepository[DraftRecord]):
    """Repository for DraftRecord operations.

    The stored version is never bumped here: it is whatever version the
    accepted snapshot carried.
    """

    def __init__(self, session: AsyncSession):
        """Initialize draft repository with session."""
        super().__init__(session, DraftRecord)

    async def get_by_session(self, session_id: str, lock: bool = False) -> DraftRecord | None:
        statement = (
            select(DraftRecord)
            .where(DraftRecord.session_id == session_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            statement = statement.with_for_update()
        result = await self.session.execute(statement)
        return result.scalars().first()

    async def save(self, snapshot: DraftSnapshot) -> PersistOutcome:
        """Write a snapshot unless the stored copy is newer or diverged.

        Accepts a strictly higher version, treats an identical snapshot at the
        stored version as a no-op, and reports a conflict otherwise.

        Args:
            snapshot: Snapshot to persist

        Returns:
            ``ok`` with the stored snapshot, or ``conflict`` with the server copy

        Raises:
            AlreadySubmittedError: If the session has been submitted
        """
        try:
            return await self._save(snapshot)
        except IntegrityError:
            # Another request inserted the first row for this session.
            await self.session.rollback()
            logger.debug(f"Draft insert race for session {snapshot.session_id}, retrying")
            return await self._save(snapshot)

    async def _save(self, snapshot: DraftSnapshot) -> PersistOutcome:
        stored = await self.get_by_session(snapshot.session_id, lock=True)

        if stored is None:
            record = DraftRecord.model_validate(snapshot.model_dump(exclude={"origin"}))
            record.updated_at = utcnow()
            await self.create(record)
            logger.debug(f"Draft created for session {snapshot.session_id} at v{record.version}")
            return PersistOutcome(status="ok", snapshot=record.to_snapshot())

        if stored.submitted_at is not None:
            await self.session.rollback()
            raise AlreadySubmittedError(snapshot.session_id)

        server_copy = stored.to_snapshot()

        if snapshot.version < stored.version:
            await self.session.rollback()
            return PersistOutcome(status="conflict", server=server_copy)

        if snapshot.version == stored.version:
            await self.session.rollback()
            if snapshot.same_content(server_copy):
                return PersistOutcome(status="ok", snapshot=server_copy, unchanged=True)
            return PersistOutcome(status="conflict", server=server_copy)

        await self.update(
            stored,
            {
                "flow_id": snapshot.flow_id,
                "flow_version": snapshot.flow_version,
                "step_pointer": snapshot.step_pointer,
                "answers": dict(snapshot.answers),
                "version": snapshot.version,
                "updated_at": utcnow(),
            },
        )
        logger.debug(f"Draft for session {snapshot.session_id} accepted at v{snapshot.version}")
        return PersistOutcome(status="ok", snapshot=stored.to_snapshot())

    async def mark_submitted(self, session_id: str, at: datetime | None = None) -> None:
        """Freeze the draft; later writes raise AlreadySubmittedError.

        Does not commit; used inside the submission transaction.
        """
        stored = await self.get_by_session(session_id)
        if stored is None:
            return
        stored.submitted_at = at or utcnow()
        self.session.add(stored)
        await self.session.flush()
