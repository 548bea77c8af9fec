"""
Intake service: turns submitted drafts into cases and applies review decisions
other than approval.

Approval is handled by ``IssuanceCoordinator`` because it has to produce a
document atomically with the transition.
"""

from collections.abc import Sequence

from sqlalchemy import ColumnElement
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from ..exceptions.domain import (
    AuthorizationError,
    ClaimConflictError,
    DraftNotFoundError,
    InvalidTransitionError,
    KnockoutError,
    ValidationError,
)
from ..models import (
    ActorRole,
    AnswerIssue,
    AuditAction,
    AuditEntry,
    CaseRecord,
    CaseStatus,
    DeclineResult,
    RefundStatus,
    utcnow,
)
from ..repositories import CaseSearchCriteria, DraftRepository
from ..types import Answers, JSONDict
from ..utils.logger import logger
from .case_lifecycle import CaseLifecycle, Clock
from .claims import ClaimManager
from .collaborators import LoggingNotifier, LoggingRefundGateway, Notifier, RefundGateway
from .rules import FlowCatalog, RuleEvaluator

REVIEWER_ROLES = frozenset({ActorRole.doctor, ActorRole.admin})


def require_role(role: ActorRole, allowed: frozenset[ActorRole], action: str) -> None:
    if role not in allowed:
        raise AuthorizationError(f"Role '{role.value}' cannot {action}")


def _held_by(reviewer_id: str) -> ColumnElement[bool]:
    return col(CaseRecord.claimed_by) == reviewer_id


class IntakeService:
    """Submission and review decisions for cases.

    Args:
        session: Database session
        catalog: Flow definitions used to evaluate submissions
        notifier: Patient notifications
        refunds: Payment refunds for declined and cancelled cases
        ttl_minutes: Claim staleness window
        clock: Source of the current time
        lifecycle: Lifecycle helper, built from ``session`` when omitted
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: FlowCatalog,
        notifier: Notifier | None = None,
        refunds: RefundGateway | None = None,
        ttl_minutes: int | None = None,
        clock: Clock = utcnow,
        lifecycle: CaseLifecycle | None = None,
    ):
        self.lifecycle = lifecycle or CaseLifecycle(session, clock=clock)
        self.cases = self.lifecycle.cases
        self.drafts = DraftRepository(session)
        self.claims = ClaimManager(
            session, ttl_minutes=ttl_minutes, clock=clock, lifecycle=self.lifecycle
        )
        self.catalog = catalog
        self.notifier = notifier or LoggingNotifier()
        self.refunds = refunds or LoggingRefundGateway()
        self.clock = clock

    async def submit_flow(
        self,
        session_id: str,
        patient_id: str | None = None,
        payment_reference: str | None = None,
    ) -> CaseRecord:
        """Create a case from the server copy of a draft.

        Submitting the same session again returns the existing case.

        Args:
            session_id: Flow session to submit
            patient_id: Submitting patient
            payment_reference: Payment that funded the request

        Returns:
            The case, in ``paid``

        Raises:
            DraftNotFoundError: If the server has no draft for the session
            FlowDefinitionNotFoundError: If the draft's flow is not loaded
            KnockoutError: If any knockout flag is raised
            ValidationError: If visible answers are missing or invalid
        """
        async with self.lifecycle.unit_of_work(f"submission of {session_id}"):
            existing = await self.cases.get_by_session(session_id)
            if existing is not None:
                logger.info(f"Session {session_id} already submitted as case {existing.id}")
                return existing

            draft = await self.drafts.get_by_session(session_id, lock=True)
            if draft is None:
                raise DraftNotFoundError(session_id)

            definition = self.catalog.get(draft.flow_id, draft.flow_version)
            evaluator = RuleEvaluator(definition)
            answers = dict(draft.answers)
            evaluation = evaluator.evaluate(answers)

            if evaluation.has_knockout:
                logger.info(f"Submission of {session_id} blocked by knockout flags")
                raise KnockoutError(list(evaluation.knockouts))
            issues = evaluator.validate(answers, evaluation)
            if issues:
                raise ValidationError(
                    f"{len(issues)} answers need attention before submitting", issues
                )

            now = self.clock()
            case = await self.cases.add(
                CaseRecord(
                    session_id=session_id,
                    flow_id=definition.id,
                    flow_version=definition.version,
                    patient_id=patient_id,
                    service_type=definition.service_type,
                    payment_reference=payment_reference,
                    answers=evaluator.visible_answers(answers, evaluation),
                    flags=[flag.model_dump(mode="json") for flag in evaluation.flags],
                    status=CaseStatus.paid,
                    created_at=now,
                    updated_at=now,
                )
            )
            await self.drafts.mark_submitted(session_id, now)
            await self.lifecycle.record(
                case.id,  # type: ignore[arg-type]
                patient_id or "anonymous",
                ActorRole.patient,
                AuditAction.submitted,
                None,
                CaseStatus.paid,
                {"session_id": session_id, "flags": len(evaluation.flags)},
            )

        logger.info(f"Session {session_id} submitted as case {case.id}")
        return case

    async def _held_case(self, case_id: int, reviewer_id: str) -> CaseRecord:
        case = await self.cases.get_for_update(case_id)
        problem = self.claims.claim_problem(case, reviewer_id)
        if problem is not None:
            raise ClaimConflictError(case_id, case.claimed_by).with_context(problem)
        return case

    async def _refund(self, case: CaseRecord) -> RefundStatus:
        if not case.payment_reference:
            return RefundStatus.not_applicable
        try:
            ok = await self.refunds.refund(case.payment_reference)
        except Exception as e:
            logger.error(f"Refund for case {case.id} failed: {e}")
            ok = False
        status = RefundStatus.succeeded if ok else RefundStatus.failed
        async with self.lifecycle.unit_of_work(f"refund result of case {case.id}"):
            await self.cases.compare_and_set(
                case.id,  # type: ignore[arg-type]
                col(CaseRecord.status) == case.status,
                refund_status=status,
            )
        logger.info(f"Refund for case {case.id}: {status.value}")
        return status

    async def _send(self, case: CaseRecord, template: str, data: JSONDict) -> bool:
        recipient = case.patient_id or f"case-{case.id}"
        try:
            sent = await self.notifier.send(recipient, template, {"case_id": case.id, **data})
        except Exception as e:
            logger.warning(f"Notification '{template}' for case {case.id} failed: {e}")
            return False
        if not sent:
            logger.warning(f"Notification '{template}' for case {case.id} was not delivered")
        return sent

    async def decline(
        self,
        case_id: int,
        reviewer_id: str,
        reason: str,
        reason_code: str | None = None,
        role: ActorRole = ActorRole.doctor,
    ) -> DeclineResult:
        """Decline a claimed case, refund the payment and notify the patient.

        Refund and notification failures are recorded and logged; they do not
        undo the decision.

        Raises:
            CaseNotFoundError: If the case does not exist
            ClaimConflictError: If ``reviewer_id`` does not hold a live claim
            AuditWriteFailure: If the decision could not be audited
        """
        require_role(role, REVIEWER_ROLES, "decline cases")

        async with self.lifecycle.unit_of_work(f"decline of case {case_id}"):
            current = await self.cases.get_for_update(case_id)
            if current.outcome == "declined":
                return DeclineResult(
                    case_id=case_id,
                    declined=True,
                    already_declined=True,
                    status=current.status,
                    refund_status=current.refund_status,
                )
            case = await self._held_case(case_id, reviewer_id)
            now = self.clock()
            case = await self.lifecycle.transition(
                case,
                CaseStatus.declined,
                actor_id=reviewer_id,
                actor_role=role,
                action=AuditAction.decline,
                meta={"reason_code": reason_code},
                expected=_held_by(reviewer_id),
                decline_reason=reason,
                decline_reason_code=reason_code,
                outcome="declined",
                decided_at=now,
            )

        refund_status = await self._refund(case)
        sent = await self._send(
            case, "case_declined", {"reason": reason, "refund_status": refund_status.value}
        )
        status = CaseStatus.declined
        if sent:
            async with self.lifecycle.unit_of_work(f"completion of case {case_id}"):
                case = await self.lifecycle.transition(
                    await self.cases.get_for_update(case_id),
                    CaseStatus.completed,
                    actor_id=reviewer_id,
                    actor_role=role,
                    action=AuditAction.complete,
                    meta={"notification": "sent"},
                )
            status = CaseStatus.completed

        return DeclineResult(
            case_id=case_id,
            declined=True,
            status=status,
            refund_status=refund_status,
            notification_sent=sent,
        )

    async def request_info(
        self, case_id: int, reviewer_id: str, note: str, role: ActorRole = ActorRole.doctor
    ) -> CaseRecord:
        """Ask the patient for more information; the reviewer keeps the claim."""
        require_role(role, REVIEWER_ROLES, "request information")
        async with self.lifecycle.unit_of_work(f"info request on case {case_id}"):
            case = await self._held_case(case_id, reviewer_id)
            case = await self.lifecycle.transition(
                case,
                CaseStatus.pending_info,
                actor_id=reviewer_id,
                actor_role=role,
                action=AuditAction.request_info,
                meta={"note": note},
                expected=_held_by(reviewer_id),
                info_request=note,
            )
        await self._send(case, "info_requested", {"note": note})
        return case

    async def provide_info(
        self,
        case_id: int,
        answers: Answers,
        actor_id: str,
        role: ActorRole = ActorRole.patient,
    ) -> CaseRecord:
        """Merge the patient's extra answers and hand the case back to its reviewer.

        The merged answers go through the same checks as a submission: every
        id must belong to the case's flow, knockouts block the answer and the
        visible questions must validate. Flags are recomputed so the reviewer
        sees anything the new answers raise.

        Raises:
            AuthorizationError: If a patient answers for another patient's case
            InvalidTransitionError: If the case is not waiting for information
            FlowDefinitionNotFoundError: If the case's flow is no longer loaded
            KnockoutError: If the new answers raise a knockout flag
            ValidationError: If an id is unknown or the merged answers are invalid
        """
        require_role(role, frozenset({ActorRole.patient, ActorRole.admin}), "provide information")
        async with self.lifecycle.unit_of_work(f"info provided on case {case_id}"):
            case = await self.cases.get_for_update(case_id)
            if role == ActorRole.patient and case.patient_id and case.patient_id != actor_id:
                raise AuthorizationError("Patients can only answer their own cases")
            if case.status != CaseStatus.pending_info:
                raise InvalidTransitionError(
                    CaseStatus(case.status).value, CaseStatus.in_review.value
                )

            definition = self.catalog.get(case.flow_id, case.flow_version)
            unknown = [
                AnswerIssue(
                    question_id=question_id,
                    code="unknown_question",
                    message=f"'{question_id}' is not a question of this flow",
                )
                for question_id in sorted(answers)
                if not definition.has_question(question_id)
            ]
            if unknown:
                raise ValidationError("Answers refer to unknown questions", unknown)

            evaluator = RuleEvaluator(definition)
            merged = {**case.answers, **answers}
            evaluation = evaluator.evaluate(merged)
            if evaluation.has_knockout:
                logger.info(f"Information for case {case_id} blocked by knockout flags")
                raise KnockoutError(list(evaluation.knockouts))
            issues = evaluator.validate(merged, evaluation)
            if issues:
                raise ValidationError(f"{len(issues)} answers need attention", issues)

            case = await self.lifecycle.transition(
                case,
                CaseStatus.in_review,
                actor_id=actor_id,
                actor_role=role,
                action=AuditAction.info_provided,
                meta={"answered": sorted(answers)},
                answers=evaluator.visible_answers(merged, evaluation),
                flags=[flag.model_dump(mode="json") for flag in evaluation.flags],
                info_request=None,
                claimed_at=self.clock(),
            )
        return case

    async def escalate(
        self, case_id: int, reviewer_id: str, note: str, role: ActorRole = ActorRole.doctor
    ) -> CaseRecord:
        """Hand a claimed case to an admin; the claim is cleared."""
        require_role(role, REVIEWER_ROLES, "escalate cases")
        async with self.lifecycle.unit_of_work(f"escalation of case {case_id}"):
            case = await self._held_case(case_id, reviewer_id)
            case = await self.lifecycle.transition(
                case,
                CaseStatus.escalated,
                actor_id=reviewer_id,
                actor_role=role,
                action=AuditAction.escalate,
                meta={"note": note},
                expected=_held_by(reviewer_id),
            )
        return case

    async def cancel(
        self, case_id: int, actor_id: str, role: ActorRole, reason: str | None = None
    ) -> CaseRecord:
        """Cancel an undecided case and refund its payment.

        Raises:
            AuthorizationError: If a patient cancels another patient's case
            InvalidTransitionError: If the case is decided or finished
        """
        async with self.lifecycle.unit_of_work(f"cancellation of case {case_id}"):
            case = await self.cases.get_for_update(case_id)
            if role == ActorRole.patient and case.patient_id != actor_id:
                raise AuthorizationError("Patients can only cancel their own cases")
            if role == ActorRole.doctor:
                raise AuthorizationError("Reviewers decline cases instead of cancelling them")
            case = await self.lifecycle.transition(
                case,
                CaseStatus.cancelled,
                actor_id=actor_id,
                actor_role=role,
                action=AuditAction.cancel,
                meta={"reason": reason},
                decided_at=self.clock(),
                outcome="cancelled",
            )
        await self._refund(case)
        return await self.get_case(case_id)

    async def get_case(self, case_id: int) -> CaseRecord:
        async with self.lifecycle.unit_of_work(f"read of case {case_id}"):
            return await self.cases.get(case_id)

    async def list_cases(
        self, criteria: CaseSearchCriteria, skip: int = 0, limit: int = 100
    ) -> Sequence[CaseRecord]:
        async with self.lifecycle.unit_of_work("case search"):
            return await self.cases.find_by_criteria(criteria, skip, limit)

    async def audit_trail(self, case_id: int) -> Sequence[AuditEntry]:
        async with self.lifecycle.unit_of_work(f"audit read of case {case_id}"):
            await self.cases.get(case_id)
            return await self.lifecycle.audit.for_case(case_id)

