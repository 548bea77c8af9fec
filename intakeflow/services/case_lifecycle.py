"""
Case lifecycle state machine.

The transition table below is the only place that defines which status
changes exist. ``CaseLifecycle`` applies a transition as a conditional UPDATE
plus one audit entry inside the caller's unit of work; if the audit entry
cannot be written the whole unit is rolled back.
"""

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from ..exceptions.domain import (
    AuditWriteFailure,
    BusinessRuleViolationError,
    InvalidTransitionError,
)
from ..models import (
    TERMINAL_STATUSES,
    ActorRole,
    AuditAction,
    AuditEntry,
    CaseRecord,
    CaseStatus,
    utcnow,
)
from ..repositories import AuditRepository, CaseRepository
from ..types import JSONDict
from ..utils.logger import logger

type Clock = Callable[[], datetime]

_ABANDON = {CaseStatus.cancelled, CaseStatus.expired}

ALLOWED_TRANSITIONS: dict[CaseStatus, frozenset[CaseStatus]] = {
    CaseStatus.paid: frozenset({CaseStatus.in_review, *_ABANDON}),
    CaseStatus.in_review: frozenset(
        {
            CaseStatus.approved,
            CaseStatus.declined,
            CaseStatus.pending_info,
            CaseStatus.escalated,
            CaseStatus.paid,
            *_ABANDON,
        }
    ),
    CaseStatus.pending_info: frozenset({CaseStatus.in_review, *_ABANDON}),
    CaseStatus.escalated: frozenset({CaseStatus.in_review, *_ABANDON}),
    CaseStatus.approved: frozenset({CaseStatus.completed}),
    CaseStatus.declined: frozenset({CaseStatus.completed}),
    **dict.fromkeys(TERMINAL_STATUSES, frozenset()),
}

# Statuses in which a claim is kept on the row.
CLAIMED_STATUSES = frozenset({CaseStatus.in_review, CaseStatus.pending_info})


def can_transition(from_status: CaseStatus, to_status: CaseStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


def check_transition(from_status: CaseStatus, to_status: CaseStatus) -> None:
    """Raise InvalidTransitionError unless ``from_status -> to_status`` exists."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status.value, to_status.value)


def check_claim_fields(status: CaseStatus, claimed_by: str | None) -> None:
    """``in_review`` always has a holder; unclaimed statuses never do."""
    if status == CaseStatus.in_review and not claimed_by:
        raise BusinessRuleViolationError("A case in review must have a reviewer")
    if status not in CLAIMED_STATUSES and claimed_by:
        raise BusinessRuleViolationError(f"A case in {status.value} cannot hold a claim")


class CaseLifecycle:
    """Applies audited status transitions to case records.

    Args:
        session: Database session; the lifecycle never commits outside
            ``unit_of_work``
        cases: Case repository, built from ``session`` when omitted
        audit: Audit repository, built from ``session`` when omitted
        clock: Source of the current time
    """

    def __init__(
        self,
        session: AsyncSession,
        cases: CaseRepository | None = None,
        audit: AuditRepository | None = None,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.cases = cases or CaseRepository(session)
        self.audit = audit or AuditRepository(session)
        self.clock = clock

    @asynccontextmanager
    async def unit_of_work(self, description: str) -> AsyncGenerator[None]:
        """Commit everything done in the block, or roll all of it back.

        Raises:
            AuditWriteFailure: Re-raised after rollback; logged as critical
        """
        try:
            yield
            await self.session.commit()
        except AuditWriteFailure as e:
            await self.session.rollback()
            logger.critical(f"Audit write failed during {description}; rolled back: {e}")
            raise
        except Exception:
            await self.session.rollback()
            raise

    async def record(
        self,
        case_id: int,
        actor_id: str,
        actor_role: ActorRole,
        action: AuditAction,
        from_status: CaseStatus | None,
        to_status: CaseStatus | None,
        meta: JSONDict | None = None,
    ) -> AuditEntry:
        """Append an audit entry to the current transaction."""
        entry = AuditEntry(
            case_id=case_id,
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            from_status=from_status,
            to_status=to_status,
            timestamp=self.clock(),
            meta=meta or {},
        )
        return await self.audit.append(entry)

    async def transition(
        self,
        case: CaseRecord,
        to_status: CaseStatus,
        actor_id: str,
        actor_role: ActorRole,
        action: AuditAction,
        meta: JSONDict | None = None,
        expected: ColumnElement[bool] | None = None,
        **values: Any,
    ) -> CaseRecord:
        """Move ``case`` to ``to_status`` and audit it, without committing.

        Args:
            case: Case as last read in this transaction
            to_status: Target status
            actor_id: Who is acting
            actor_role: Role the actor asserted
            action: Audit action name
            meta: Extra audit metadata
            expected: Extra predicate the row must still satisfy
            **values: Other columns to write with the status

        Returns:
            The case reloaded after the update

        Raises:
            InvalidTransitionError: If the transition is not in the table
            BusinessRuleViolationError: If the row changed since it was read
            AuditWriteFailure: If the audit entry could not be written
        """
        from_status = CaseStatus(case.status)
        check_transition(from_status, to_status)

        if "claimed_by" not in values and to_status not in CLAIMED_STATUSES:
            values["claimed_by"] = None
            values["claimed_at"] = None
        check_claim_fields(to_status, values.get("claimed_by", case.claimed_by))

        now = self.clock()
        predicate = col(CaseRecord.status) == from_status
        if expected is not None:
            predicate = predicate & expected
        case_id: int = case.id  # type: ignore[assignment]
        updated = await self.cases.compare_and_set(
            case_id, predicate, status=to_status, updated_at=now, **values
        )
        if not updated:
            raise BusinessRuleViolationError(
                f"Case {case_id} changed while moving {from_status.value} -> {to_status.value}"
            )

        await self.record(case_id, actor_id, actor_role, action, from_status, to_status, meta)
        logger.info(
            f"Case {case_id}: {from_status.value} -> {to_status.value} "
            f"by {actor_id} ({action.value})"
        )
        return await self.cases.get(case_id)
