"""Repository for issued documents."""

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import IssuedDocument, NotificationStatus
from .base import BaseRepository


class DocumentRepository(BaseRepository[IssuedDocument]):
    """Repository for IssuedDocument operations."""

    def __init__(self, session: AsyncSession):
        """Initialize document repository with session."""
        super().__init__(session, IssuedDocument)

    async def get_for_case(self, case_id: int) -> IssuedDocument | None:
        return await self.get_by(case_id=case_id)

    async def get_by_certificate_number(self, number: str) -> IssuedDocument | None:
        return await self.get_by(certificate_number=number)

    async def get_by_verification_code(self, code: str) -> IssuedDocument | None:
        return await self.get_by(verification_code=code)

    async def record_notification(
        self, document: IssuedDocument, status: NotificationStatus, error: str | None = None
    ) -> IssuedDocument:
        """Store the outcome of a notification attempt. Does not commit."""
        document.notification_status = status
        document.notification_attempts += 1
        document.last_notification_error = error
        self.session.add(document)
        await self.session.flush()
        return document
