"""Repository for CaseRecord database operations.

Status and claim fields are only changed through conditional UPDATE
statements: the WHERE clause encodes the expected current state and the
affected row count tells the caller whether it won.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from ..exceptions.domain import CaseNotFoundError
from ..models import CaseRecord, CaseStatus
from ..utils.logger import logger
from .base import BaseRepository


@dataclass
class CaseSearchCriteria:
    """Search criteria for listing cases."""

    status: CaseStatus | None = None
    claimed_by: str | None = None
    patient_id: str | None = None
    flow_id: str | None = None
    unclaimed_only: bool = False


def abandoned_since(idle_before: datetime) -> ColumnElement[bool]:
    """``paid`` cases created, or ``pending_info`` cases last changed, before ``idle_before``.

    A case waiting for the patient is measured from the information request,
    not from submission.
    """
    return or_(
        and_(
            col(CaseRecord.status) == CaseStatus.paid,
            col(CaseRecord.created_at) < idle_before,
        ),
        and_(
            col(CaseRecord.status) == CaseStatus.pending_info,
            col(CaseRecord.updated_at) < idle_before,
        ),
    )


class CaseRepository(BaseRepository[CaseRecord]):
    """Repository for CaseRecord model operations."""

    def __init__(self, session: AsyncSession):
        """Initialize case repository with session."""
        super().__init__(session, CaseRecord)

    async def get(self, case_id: int) -> CaseRecord:
        """Get case by ID, reloading it from the database.

        Args:
            case_id: Case ID

        Returns:
            Found case

        Raises:
            CaseNotFoundError: If case doesn't exist
        """
        statement = (
            select(CaseRecord)
            .where(CaseRecord.id == case_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(statement)
        case = result.scalars().first()
        if case is None:
            raise CaseNotFoundError(case_id)
        return case

    async def get_for_update(self, case_id: int) -> CaseRecord:
        """Load a case and lock its row for the rest of the transaction.

        PostgreSQL takes a row lock; SQLite already holds the database write
        lock from ``BEGIN IMMEDIATE``.
        """
        statement = (
            select(CaseRecord)
            .where(CaseRecord.id == case_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(statement)
        case = result.scalars().first()
        if case is None:
            raise CaseNotFoundError(case_id)
        return case

    async def get_by_session(self, session_id: str) -> CaseRecord | None:
        return await self.get_by(session_id=session_id)

    async def compare_and_set(
        self, case_id: int, expected: ColumnElement[bool], **values: Any
    ) -> bool:
        """Atomically update a case if it still matches ``expected``.

        Does not commit; the caller owns the transaction.

        Args:
            case_id: Case ID
            expected: Predicate the current row must satisfy
            **values: Column values to write

        Returns:
            True if the row was updated
        """
        statement = (
            update(CaseRecord)
            .where(and_(col(CaseRecord.id) == case_id, expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(statement)
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def try_claim(
        self,
        case_id: int,
        reviewer_id: str,
        now: datetime,
        stale_before: datetime,
        allow_escalated: bool = False,
        force: bool = False,
    ) -> bool:
        """Take the review claim on a case if it is claimable.

        Claimable means: ``paid``; ``in_review`` held by the same reviewer
        (renewal); ``in_review`` with a claim older than ``stale_before``;
        ``escalated`` when ``allow_escalated``; ``in_review`` or ``escalated``
        when ``force``. A ``pending_info`` case is never claimable; it returns
        to review only through the patient's answer.
        """
        options = [
            col(CaseRecord.status) == CaseStatus.paid,
            and_(
                col(CaseRecord.status) == CaseStatus.in_review,
                col(CaseRecord.claimed_by) == reviewer_id,
            ),
            and_(
                col(CaseRecord.status) == CaseStatus.in_review,
                or_(
                    col(CaseRecord.claimed_at).is_(None),
                    col(CaseRecord.claimed_at) < stale_before,
                ),
            ),
        ]
        if allow_escalated:
            options.append(col(CaseRecord.status) == CaseStatus.escalated)
        if force:
            options.append(
                col(CaseRecord.status).in_([CaseStatus.in_review, CaseStatus.escalated])
            )

        return await self.compare_and_set(
            case_id,
            or_(*options),
            status=CaseStatus.in_review,
            claimed_by=reviewer_id,
            claimed_at=now,
            updated_at=now,
        )

    async def release_claim(self, case_id: int, reviewer_id: str, now: datetime) -> bool:
        """Return an in-review case held by ``reviewer_id`` to ``paid``."""
        return await self.compare_and_set(
            case_id,
            and_(
                col(CaseRecord.status) == CaseStatus.in_review,
                col(CaseRecord.claimed_by) == reviewer_id,
            ),
            status=CaseStatus.paid,
            claimed_by=None,
            claimed_at=None,
            updated_at=now,
        )

    async def transition_from_claim(
        self,
        case_id: int,
        reviewer_id: str,
        stale_before: datetime,
        to_status: CaseStatus,
        **values: Any,
    ) -> bool:
        """Move a case out of ``in_review`` if ``reviewer_id`` still holds a live claim."""
        return await self.compare_and_set(
            case_id,
            and_(
                col(CaseRecord.status) == CaseStatus.in_review,
                col(CaseRecord.claimed_by) == reviewer_id,
                col(CaseRecord.claimed_at) >= stale_before,
            ),
            status=to_status,
            **values,
        )

    async def transition(
        self, case_id: int, from_status: CaseStatus, to_status: CaseStatus, **values: Any
    ) -> bool:
        """Move a case from ``from_status`` to ``to_status`` if it is still there."""
        return await self.compare_and_set(
            case_id, col(CaseRecord.status) == from_status, status=to_status, **values
        )

    async def find_stale_claims(self, stale_before: datetime) -> Sequence[CaseRecord]:
        statement = select(CaseRecord).where(
            CaseRecord.status == CaseStatus.in_review,
            col(CaseRecord.claimed_at) < stale_before,
        )
        result = await self.session.execute(statement)
        return result.scalars().all()

    async def find_expirable(self, idle_before: datetime) -> Sequence[CaseRecord]:
        """Cases nobody has touched since ``idle_before``."""
        statement = select(CaseRecord).where(abandoned_since(idle_before))
        result = await self.session.execute(statement)
        return result.scalars().all()

    async def find_by_criteria(
        self, criteria: CaseSearchCriteria, skip: int = 0, limit: int = 100
    ) -> Sequence[CaseRecord]:
        """List cases matching the given criteria, oldest first.

        Args:
            criteria: Search criteria
            skip: Number of records to skip
            limit: Maximum number of records to return

        Returns:
            Matching cases
        """
        statement = select(CaseRecord)
        if criteria.status is not None:
            statement = statement.where(CaseRecord.status == criteria.status)
        if criteria.claimed_by is not None:
            statement = statement.where(CaseRecord.claimed_by == criteria.claimed_by)
        if criteria.patient_id is not None:
            statement = statement.where(CaseRecord.patient_id == criteria.patient_id)
        if criteria.flow_id is not None:
            statement = statement.where(CaseRecord.flow_id == criteria.flow_id)
        if criteria.unclaimed_only:
            statement = statement.where(col(CaseRecord.claimed_by).is_(None))

        statement = statement.order_by(col(CaseRecord.created_at)).offset(skip).limit(limit)
        result = await self.session.execute(statement)
        cases = result.scalars().all()
        logger.debug(f"Case search {criteria} returned {len(cases)} cases")
        return cases

