"""
Case router.

Review queue, claims, decisions and the audit trail. Claim and issue return
typed results with status 200 whether or not they succeeded; the other
decisions report conflicts as 409.
"""

from collections.abc import Sequence

from fastapi import APIRouter

from intakeflow.api.dependencies import (
    ActorDep,
    ClaimManagerDep,
    IntakeServiceDep,
    IssuanceDep,
    PaginationDep,
    ReviewerDep,
)
from intakeflow.exceptions.domain import AuthorizationError
from intakeflow.models import (
    ActorRole,
    AuditEntry,
    AuditEntryRead,
    CancelRequest,
    CaseRead,
    CaseRecord,
    CaseStatus,
    ClaimRequest,
    ClaimResult,
    DeclineRequest,
    DeclineResult,
    DocumentInputs,
    IssuanceResult,
    NoteRequest,
    ProvideInfoRequest,
    ReleaseResult,
)
from intakeflow.repositories import CaseSearchCriteria

router = APIRouter(
    tags=["Cases"],
    responses={
        404: {"description": "Not found"},
        409: {"description": "Conflict"},
    },
)


# Queue and read endpoints


@router.get("", response_model=list[CaseRead])
async def list_cases(
    service: IntakeServiceDep,
    pagination: PaginationDep,
    _reviewer: ReviewerDep,
    status: CaseStatus | None = None,
    claimed_by: str | None = None,
    patient_id: str | None = None,
    flow_id: str | None = None,
    unclaimed_only: bool = False,
) -> Sequence[CaseRecord]:
    """List cases, oldest first."""
    criteria = CaseSearchCriteria(
        status=status,
        claimed_by=claimed_by,
        patient_id=patient_id,
        flow_id=flow_id,
        unclaimed_only=unclaimed_only,
    )
    return await service.list_cases(criteria, **pagination)


@router.get("/{case_id}", response_model=CaseRead)
async def get_case(case_id: int, service: IntakeServiceDep, actor: ActorDep) -> CaseRecord:
    """Get a case. Patients can only read their own."""
    case = await service.get_case(case_id)
    if actor.role == ActorRole.patient and case.patient_id != actor.id:
        raise AuthorizationError("Patients can only read their own cases")
    return case


@router.get("/{case_id}/audit", response_model=list[AuditEntryRead])
async def get_audit_trail(
    case_id: int, service: IntakeServiceDep, _reviewer: ReviewerDep
) -> Sequence[AuditEntry]:
    """Get the audit trail of a case in the order it was written."""
    return await service.audit_trail(case_id)


# Claim endpoints


@router.post("/{case_id}/claim", response_model=ClaimResult)
async def claim_case(
    case_id: int,
    manager: ClaimManagerDep,
    reviewer: ReviewerDep,
    request: ClaimRequest | None = None,
) -> ClaimResult:
    """Claim a case for review. A denial names the current holder."""
    force = request.force if request else False
    return await manager.claim(case_id, reviewer.id, reviewer.role, force=force)


@router.post("/{case_id}/release", response_model=ReleaseResult)
async def release_case(
    case_id: int, manager: ClaimManagerDep, reviewer: ReviewerDep
) -> ReleaseResult:
    """Give a claimed case back to the queue."""
    return await manager.release(case_id, reviewer.id, reviewer.role)


# Decision endpoints


@router.post("/{case_id}/issue", response_model=IssuanceResult)
async def issue_document(
    case_id: int,
    coordinator: IssuanceDep,
    reviewer: ReviewerDep,
    inputs: DocumentInputs | None = None,
) -> IssuanceResult:
    """Approve a case and issue its document."""
    return await coordinator.issue(case_id, reviewer.id, inputs, reviewer.role)


@router.post("/{case_id}/notify", response_model=IssuanceResult)
async def retry_notification(
    case_id: int, coordinator: IssuanceDep, reviewer: ReviewerDep
) -> IssuanceResult:
    """Resend the document notice for an approved case."""
    return await coordinator.retry_notification(case_id, reviewer.id, reviewer.role)


@router.post("/{case_id}/decline", response_model=DeclineResult)
async def decline_case(
    case_id: int,
    request: DeclineRequest,
    service: IntakeServiceDep,
    reviewer: ReviewerDep,
) -> DeclineResult:
    """Decline a claimed case and refund its payment."""
    return await service.decline(
        case_id, reviewer.id, request.reason, request.reason_code, reviewer.role
    )


@router.post("/{case_id}/request-info", response_model=CaseRead)
async def request_info(
    case_id: int,
    request: NoteRequest,
    service: IntakeServiceDep,
    reviewer: ReviewerDep,
) -> CaseRecord:
    """Ask the patient for more information."""
    return await service.request_info(case_id, reviewer.id, request.note, reviewer.role)


@router.post("/{case_id}/provide-info", response_model=CaseRead)
async def provide_info(
    case_id: int,
    request: ProvideInfoRequest,
    service: IntakeServiceDep,
    actor: ActorDep,
) -> CaseRecord:
    """Answer a reviewer's request for information."""
    return await service.provide_info(case_id, request.answers, actor.id, actor.role)


@router.post("/{case_id}/escalate", response_model=CaseRead)
async def escalate_case(
    case_id: int,
    request: NoteRequest,
    service: IntakeServiceDep,
    reviewer: ReviewerDep,
) -> CaseRecord:
    """Hand a claimed case to an admin."""
    return await service.escalate(case_id, reviewer.id, request.note, reviewer.role)


@router.post("/{case_id}/cancel", response_model=CaseRead)
async def cancel_case(
    case_id: int,
    service: IntakeServiceDep,
    actor: ActorDep,
    request: CancelRequest | None = None,
) -> CaseRecord:
    """Cancel an undecided case."""
    reason = request.reason if request else None
    return await service.cancel(case_id, actor.id, actor.role, reason)
