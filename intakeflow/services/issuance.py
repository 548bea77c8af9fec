"""
Atomic issuance of approval documents.

Issuing a document is the one decision with side effects outside the
database. The document is rendered and stored first; the document row, the
``in_review -> approved`` transition and the audit entry are then committed
together. Notifying the patient happens afterwards and can be retried
without touching the decision.
"""

import hashlib
import secrets
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions.domain import (
    AuditWriteFailure,
    BusinessRuleViolationError,
    ClaimConflictError,
)
from ..models import (
    ActorRole,
    AuditAction,
    CaseRecord,
    CaseStatus,
    DocumentInputs,
    IssuanceResult,
    IssuedDocument,
    NotificationStatus,
    utcnow,
)
from ..repositories import DocumentRepository
from ..settings import settings
from ..utils.logger import logger
from .case_lifecycle import CaseLifecycle, Clock
from .claims import ClaimManager
from .collaborators import (
    BlobStorage,
    DocumentRenderer,
    Notifier,
    sha256_hex,
    template_snapshot,
)

ISSUED_STATUSES = frozenset({CaseStatus.approved, CaseStatus.completed})

CLAIM_INVALID_MESSAGE = "Credentials no longer valid to act on this case"


def new_certificate_number(now: datetime) -> str:
    return f"MC-{now.year}-{secrets.token_hex(4).upper()}"


def new_verification_code() -> str:
    return secrets.token_hex(5).upper()


def idempotency_key(case_id: int, reviewer_id: str, now: datetime) -> str:
    """Key of one reviewer issuing for one case on one day."""
    raw = f"{case_id}:{reviewer_id}:{now.date().isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def is_issued(case: CaseRecord) -> bool:
    return case.status in ISSUED_STATUSES and case.outcome_document_id is not None


def _failure(case_id: int, kind: str, message: str, status: CaseStatus | None) -> IssuanceResult:
    return IssuanceResult(
        case_id=case_id, issued=False, failure_kind=kind, message=message, status=status
    )


def _issued(
    case: CaseRecord, document: IssuedDocument | None, already_issued: bool
) -> IssuanceResult:
    return IssuanceResult(
        case_id=case.id,  # type: ignore[arg-type]
        issued=True,
        already_issued=already_issued,
        certificate_id=document.id if document else case.outcome_document_id,
        certificate_number=document.certificate_number if document else None,
        verification_code=document.verification_code if document else None,
        status=CaseStatus(case.status),
        notification_status=document.notification_status if document else None,
    )


class IssuanceCoordinator:
    """Issues approval documents for claimed cases.

    Args:
        session: Database session
        renderer: Produces document bytes
        storage: Keeps the rendered documents
        notifier: Tells the patient their document is ready
        ttl_minutes: Claim staleness window
        clock: Source of the current time
        lifecycle: Lifecycle helper, built from ``session`` when omitted
        documents: Document repository, built from ``session`` when omitted
    """

    def __init__(
        self,
        session: AsyncSession,
        renderer: DocumentRenderer,
        storage: BlobStorage,
        notifier: Notifier,
        ttl_minutes: int | None = None,
        clock: Clock = utcnow,
        lifecycle: CaseLifecycle | None = None,
        documents: DocumentRepository | None = None,
    ):
        self.lifecycle = lifecycle or CaseLifecycle(session, clock=clock)
        self.cases = self.lifecycle.cases
        self.documents = documents or DocumentRepository(session)
        self.claims = ClaimManager(
            session, ttl_minutes=ttl_minutes, clock=clock, lifecycle=self.lifecycle
        )
        self.renderer = renderer
        self.storage = storage
        self.notifier = notifier
        self.clock = clock

    async def _existing_result(self, case: CaseRecord) -> IssuanceResult:
        document = await self.documents.get_for_case(case.id)  # type: ignore[arg-type]
        return _issued(case, document, already_issued=True)

    def _render_data(
        self,
        case: CaseRecord,
        reviewer_id: str,
        inputs: DocumentInputs,
        certificate_number: str,
        verification_code: str,
        now: datetime,
    ) -> dict[str, Any]:
        return {
            **inputs.extra,
            "clinic_name": settings.clinic_name,
            "provider_number": settings.clinic_provider_number,
            "certificate_number": certificate_number,
            "verification_code": verification_code,
            "issued_at": now.date().isoformat(),
            "case_id": case.id,
            "service_type": case.service_type,
            "answers": case.answers,
            "patient_name": inputs.patient_name,
            "patient_dob": inputs.patient_dob,
            "recipient": inputs.recipient,
            "start_date": inputs.start_date,
            "end_date": inputs.end_date,
            "reason": inputs.reason,
            "reviewer_id": reviewer_id,
            "reviewer_name": inputs.reviewer_name,
        }

    async def _release_after_failure(
        self, case_id: int, reviewer_id: str, role: ActorRole, error: str
    ) -> CaseStatus | None:
        try:
            released = await self.claims.release(
                case_id, reviewer_id, role, reason=f"issuance failed: {error}"
            )
        except AuditWriteFailure:
            return None
        return released.status

    async def issue(
        self,
        case_id: int,
        reviewer_id: str,
        inputs: DocumentInputs | None = None,
        role: ActorRole = ActorRole.doctor,
    ) -> IssuanceResult:
        """Approve a case and issue its document.

        Args:
            case_id: Case to approve
            reviewer_id: Reviewer holding the claim
            inputs: Reviewer-supplied document fields
            role: Role the reviewer asserted

        Returns:
            Typed result. Repeated calls for an issued case return the
            existing document with ``already_issued=True``.

        Raises:
            CaseNotFoundError: If the case does not exist
        """
        inputs = inputs or DocumentInputs()

        async with self.lifecycle.unit_of_work(f"issuance check of case {case_id}"):
            case = await self.cases.get(case_id)
            if is_issued(case):
                logger.info(f"Case {case_id} already issued; returning existing document")
                return await self._existing_result(case)
            problem = self.claims.claim_problem(case, reviewer_id)

        if problem is not None:
            logger.warning(f"Issuance for case {case_id} by {reviewer_id} refused: {problem}")
            return _failure(
                case_id, "claim_invalid", f"{CLAIM_INVALID_MESSAGE}: {problem}", case.status
            )

        now = self.clock()
        template_id = inputs.template_id or settings.document_template_id
        certificate_number = new_certificate_number(now)
        verification_code = new_verification_code()
        data = self._render_data(
            case, reviewer_id, inputs, certificate_number, verification_code, now
        )

        try:
            content = self.renderer.render(template_id, data)
            storage_path = await self.storage.put(
                f"{case_id}/{certificate_number}.txt", content
            )
        except Exception as e:
            logger.error(f"Issuance of case {case_id} failed before commit: {e}")
            status = await self._release_after_failure(case_id, reviewer_id, role, str(e))
            return _failure(case_id, "transient", f"Document could not be produced: {e}", status)
        logger.debug(f"Document {certificate_number} stored at {storage_path}")

        document = IssuedDocument(
            case_id=case_id,
            certificate_number=certificate_number,
            verification_code=verification_code,
            idempotency_key=idempotency_key(case_id, reviewer_id, now),
            template_id=template_id,
            template_snapshot={
                **template_snapshot(self.renderer, template_id),
                "inputs": inputs.model_dump(exclude={"extra"}),
            },
            identity_snapshot={
                "patient_id": case.patient_id,
                "patient_name": inputs.patient_name,
                "patient_dob": inputs.patient_dob,
                "reviewer_id": reviewer_id,
                "reviewer_name": inputs.reviewer_name,
            },
            storage_path=storage_path,
            sha256=sha256_hex(content),
            size_bytes=len(content),
            issued_by=reviewer_id,
            issued_at=now,
        )

        try:
            async with self.lifecycle.unit_of_work(f"issuance of case {case_id}"):
                await self.documents.add(document)
                moved = await self.cases.transition_from_claim(
                    case_id,
                    reviewer_id,
                    self.claims.stale_before(now),
                    CaseStatus.approved,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=now,
                    decided_at=now,
                    outcome="approved",
                    outcome_document_id=document.id,
                )
                if not moved:
                    raise ClaimConflictError(case_id)
                await self.lifecycle.record(
                    case_id,
                    reviewer_id,
                    role,
                    AuditAction.approve,
                    CaseStatus.in_review,
                    CaseStatus.approved,
                    {"certificate_number": certificate_number, "document_id": document.id},
                )
        except AuditWriteFailure as e:
            logger.critical(
                f"Case {case_id} not approved: audit failed; stored blob {storage_path} "
                "needs manual reconciliation"
            )
            return _failure(case_id, "audit_failure", str(e), CaseStatus.in_review)
        except ClaimConflictError:
            logger.warning(
                f"Claim of {reviewer_id} on case {case_id} lapsed during issuance; "
                f"orphaned blob {storage_path}"
            )
            current = await self.cases.get(case_id)
            current_status = CaseStatus(current.status)
            await self.lifecycle.session.rollback()
            return _failure(
                case_id,
                "claim_invalid",
                f"{CLAIM_INVALID_MESSAGE}: claim lost during issuance",
                current_status,
            )
        except IntegrityError:
            # A concurrent issue for the same case committed first.
            current = await self.cases.get(case_id)
            if is_issued(current):
                result = await self._existing_result(current)
                await self.lifecycle.session.rollback()
                return result
            await self.lifecycle.session.rollback()
            raise

        logger.info(f"Case {case_id} approved by {reviewer_id}; issued {certificate_number}")
        return await self._notify(case_id, document.id, reviewer_id, role)  # type: ignore[arg-type]

    async def _notify(
        self, case_id: int, document_id: int, actor_id: str, role: ActorRole
    ) -> IssuanceResult:
        """Send the document notice and complete the case if it was delivered."""
        async with self.lifecycle.unit_of_work(f"notification read for case {case_id}"):
            case = await self.cases.get(case_id)
            document = await self.documents.get(document_id)

        recipient = case.patient_id or f"case-{case_id}"
        error: str | None = None
        try:
            sent = await self.notifier.send(
                recipient,
                "document_issued",
                {
                    "case_id": case_id,
                    "certificate_number": document.certificate_number,
                    "verification_code": document.verification_code,
                },
            )
        except Exception as e:
            sent = False
            error = str(e)
        if not sent:
            error = error or "notifier reported failure"
            logger.warning(f"Notification for case {case_id} failed: {error}")

        try:
            async with self.lifecycle.unit_of_work(f"notification result for case {case_id}"):
                document = await self.documents.get(document_id)
                await self.documents.record_notification(
                    document,
                    NotificationStatus.sent if sent else NotificationStatus.failed,
                    error,
                )
                if sent and case.status == CaseStatus.approved:
                    case = await self.lifecycle.transition(
                        await self.cases.get_for_update(case_id),
                        CaseStatus.completed,
                        actor_id=actor_id,
                        actor_role=role,
                        action=AuditAction.complete,
                        meta={"notification": "sent"},
                    )
        except (AuditWriteFailure, BusinessRuleViolationError) as e:
            logger.error(f"Could not record notification outcome for case {case_id}: {e}")
            async with self.lifecycle.unit_of_work(f"notification reread for case {case_id}"):
                case = await self.cases.get(case_id)
                document = await self.documents.get(document_id)

        return _issued(case, document, already_issued=False)

    async def retry_notification(
        self, case_id: int, actor_id: str = "system", role: ActorRole = ActorRole.system
    ) -> IssuanceResult:
        """Resend the notice for an approved case whose notification failed.

        Completed cases are returned unchanged without sending again.

        Raises:
            CaseNotFoundError: If the case does not exist
            BusinessRuleViolationError: If the case has no issued document
        """
        async with self.lifecycle.unit_of_work(f"notification retry check of case {case_id}"):
            case = await self.cases.get(case_id)
            document = await self.documents.get_for_case(case_id)
        if case.status == CaseStatus.completed and is_issued(case):
            return _issued(case, document, already_issued=True)
        if case.status != CaseStatus.approved or document is None:
            raise BusinessRuleViolationError(
                f"Case {case_id} has no issued document to notify about"
            )
        logger.info(f"Retrying notification for case {case_id}")
        return await self._notify(case_id, document.id, actor_id, role)  # type: ignore[arg-type]
