"""Repository for the append-only audit log."""

from collections.abc import Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from ..exceptions.domain import AuditWriteFailure
from ..models import AuditEntry
from .base import BaseRepository


class AuditRepository(BaseRepository[AuditEntry]):
    """Repository for AuditEntry operations.

    Entries are only ever inserted. There is no update or delete.
    """

    def __init__(self, session: AsyncSession):
        """Initialize audit repository with session."""
        super().__init__(session, AuditEntry)

    async def append(self, entry: AuditEntry) -> AuditEntry:
        """Insert an entry into the current transaction.

        Args:
            entry: Entry to write

        Returns:
            The flushed entry

        Raises:
            AuditWriteFailure: If the insert fails
        """
        try:
            return await self.add(entry)
        except SQLAlchemyError as e:
            raise AuditWriteFailure(f"Could not write audit entry for case {entry.case_id}: {e}") from e

    async def for_case(self, case_id: int) -> Sequence[AuditEntry]:
        """All entries for a case in write order."""
        statement = (
            select(AuditEntry)
            .where(AuditEntry.case_id == case_id)
            .order_by(col(AuditEntry.id))
        )
        result = await self.session.execute(statement)
        return result.scalars().all()
