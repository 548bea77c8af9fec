"""
Review claim manager.

A claim is the exclusive, time-bounded right of one reviewer to act on a
case. Claims are taken and released with a single conditional UPDATE whose
WHERE clause encodes claimability, so concurrent reviewers can never both
win. Every grant, denial and release is audited in the same transaction.
"""

from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from ..exceptions.domain import AuthorizationError, BusinessRuleViolationError
from ..models import (
    ActorRole,
    AuditAction,
    CaseRecord,
    CaseStatus,
    ClaimResult,
    ReleaseResult,
    ensure_utc,
    utcnow,
)
from ..settings import settings
from ..utils.logger import logger
from .case_lifecycle import CaseLifecycle, Clock


class ClaimManager:
    """Grants, renews, releases and expires review claims.

    Args:
        session: Database session
        ttl_minutes: Staleness window of a claim
        clock: Source of the current time
        lifecycle: Lifecycle helper, built from ``session`` when omitted
    """

    def __init__(
        self,
        session: AsyncSession,
        ttl_minutes: int | None = None,
        clock: Clock = utcnow,
        lifecycle: CaseLifecycle | None = None,
    ):
        self.lifecycle = lifecycle or CaseLifecycle(session, clock=clock)
        self.cases = self.lifecycle.cases
        self.clock = clock
        minutes = ttl_minutes if ttl_minutes is not None else settings.claim_ttl_minutes
        self.ttl = timedelta(minutes=minutes)

    def stale_before(self, now: datetime) -> datetime:
        return now - self.ttl

    def is_stale(self, case: CaseRecord, now: datetime | None = None) -> bool:
        claimed_at = ensure_utc(case.claimed_at)
        if claimed_at is None:
            return True
        return claimed_at < self.stale_before(now or self.clock())

    def claim_problem(self, case: CaseRecord, reviewer_id: str) -> str | None:
        """Why ``reviewer_id`` cannot act on ``case`` right now, or None if it can."""
        if case.status != CaseStatus.in_review:
            return f"case is {CaseStatus(case.status).value}, not in review"
        if case.claimed_by != reviewer_id:
            return f"case is held by {case.claimed_by}"
        if self.is_stale(case):
            return "claim has expired"
        return None

    @staticmethod
    def _denial_reason(case: CaseRecord, role: ActorRole) -> str:
        status = CaseStatus(case.status)
        if status == CaseStatus.escalated and role != ActorRole.admin:
            return "escalated cases can only be claimed by an admin"
        if status == CaseStatus.pending_info:
            return "case is waiting for information from the patient"
        if status == CaseStatus.in_review:
            return f"case is being reviewed by {case.claimed_by}"
        return f"case is {status.value}"

    async def claim(
        self,
        case_id: int,
        reviewer_id: str,
        role: ActorRole = ActorRole.doctor,
        force: bool = False,
    ) -> ClaimResult:
        """Try to take the review claim on a case.

        Args:
            case_id: Case to claim
            reviewer_id: Reviewer asking for the claim
            role: Role the reviewer asserted
            force: Take the claim from another reviewer (admins only)

        Returns:
            Granted result, or a denial naming the current holder

        Raises:
            CaseNotFoundError: If the case does not exist
            AuthorizationError: If the actor is not a reviewer, or a non-admin
                asks for a forced claim
            AuditWriteFailure: If the audit entry could not be written
        """
        if role not in (ActorRole.doctor, ActorRole.admin):
            raise AuthorizationError("Only reviewers can claim cases")
        if force and role != ActorRole.admin:
            raise AuthorizationError("Only admins can force a claim")

        async with self.lifecycle.unit_of_work(f"claim of case {case_id}"):
            case = await self.cases.get_for_update(case_id)
            before_status = CaseStatus(case.status)
            before_holder = case.claimed_by
            was_stale = before_status == CaseStatus.in_review and self.is_stale(case)

            now = self.clock()
            granted = await self.cases.try_claim(
                case_id,
                reviewer_id,
                now,
                self.stale_before(now),
                allow_escalated=role == ActorRole.admin,
                force=force,
            )

            if granted:
                renewed = before_status == CaseStatus.in_review and before_holder == reviewer_id
                meta: dict[str, str | None] = {}
                if before_holder and before_holder != reviewer_id:
                    meta["previous_holder"] = before_holder
                    meta["reason"] = "stale" if was_stale else "forced"
                await self.lifecycle.record(
                    case_id,
                    reviewer_id,
                    role,
                    AuditAction.claim_renewed if renewed else AuditAction.claim,
                    before_status,
                    CaseStatus.in_review,
                    meta,
                )
                result = ClaimResult(
                    case_id=case_id,
                    granted=True,
                    reviewer_id=reviewer_id,
                    current_holder=reviewer_id,
                    status=CaseStatus.in_review,
                    claimed_at=now,
                    renewed=renewed,
                )
            else:
                reason = self._denial_reason(case, role)
                await self.lifecycle.record(
                    case_id,
                    reviewer_id,
                    role,
                    AuditAction.claim_denied,
                    before_status,
                    before_status,
                    {"current_holder": before_holder, "reason": reason},
                )
                result = ClaimResult(
                    case_id=case_id,
                    granted=False,
                    reviewer_id=reviewer_id,
                    current_holder=before_holder,
                    status=before_status,
                    claimed_at=ensure_utc(case.claimed_at),
                    reason=reason,
                )

        if result.granted:
            logger.info(
                f"Case {case_id} claimed by {reviewer_id}{' (renewed)' if result.renewed else ''}"
            )
        else:
            logger.info(f"Claim on case {case_id} by {reviewer_id} denied: {result.reason}")
        return result

    async def release(
        self,
        case_id: int,
        reviewer_id: str,
        role: ActorRole = ActorRole.doctor,
        reason: str | None = None,
    ) -> ReleaseResult:
        """Give a claimed case back to the queue.

        Args:
            case_id: Case to release
            reviewer_id: Reviewer giving the case back
            role: Role the reviewer asserted
            reason: Why the case is released, kept in the audit entry

        Returns:
            ``released=False`` with the current holder when ``reviewer_id``
            does not hold the case

        Raises:
            CaseNotFoundError: If the case does not exist
            AuditWriteFailure: If the audit entry could not be written
        """
        async with self.lifecycle.unit_of_work(f"release of case {case_id}"):
            case = await self.cases.get_for_update(case_id)
            released = await self.cases.release_claim(case_id, reviewer_id, self.clock())
            if released:
                await self.lifecycle.record(
                    case_id,
                    reviewer_id,
                    role,
                    AuditAction.release,
                    CaseStatus.in_review,
                    CaseStatus.paid,
                    {"reason": reason} if reason else None,
                )
                result = ReleaseResult(case_id=case_id, released=True, status=CaseStatus.paid)
            else:
                result = ReleaseResult(
                    case_id=case_id,
                    released=False,
                    current_holder=case.claimed_by,
                    status=CaseStatus(case.status),
                )

        if result.released:
            logger.info(f"Case {case_id} released by {reviewer_id}")
        else:
            logger.info(f"Release of case {case_id} by {reviewer_id} refused: not the holder")
        return result

    async def sweep_expired(self) -> int:
        """Return cases with stale claims to ``paid``.

        Each case is handled in its own transaction; a case renewed between
        the scan and the update is skipped.

        Returns:
            Number of claims released
        """
        cutoff = self.stale_before(self.clock())
        async with self.lifecycle.unit_of_work("stale claim scan"):
            stale = [(c.id, c.claimed_by) for c in await self.cases.find_stale_claims(cutoff)]

        released = 0
        for case_id, holder in stale:
            try:
                async with self.lifecycle.unit_of_work(f"claim expiry of case {case_id}"):
                    case = await self.cases.get_for_update(case_id)  # type: ignore[arg-type]
                    await self.lifecycle.transition(
                        case,
                        CaseStatus.paid,
                        actor_id="system",
                        actor_role=ActorRole.system,
                        action=AuditAction.claim_expired,
                        meta={
                            "previous_holder": holder,
                            "ttl_minutes": int(self.ttl.total_seconds() // 60),
                        },
                        expected=(col(CaseRecord.claimed_by) == holder)
                        & (col(CaseRecord.claimed_at) < cutoff),
                    )
            except BusinessRuleViolationError:
                logger.debug(f"Case {case_id} changed before its claim could expire")
                continue
            released += 1
            logger.info(f"Expired claim of {holder} on case {case_id}")
        return released
