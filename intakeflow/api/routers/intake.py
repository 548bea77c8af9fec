"""
Intake router: submission of completed flow sessions.
"""

from fastapi import APIRouter, status

from intakeflow.api.dependencies import ActorDep, IntakeServiceDep
from intakeflow.models import ActorRole, SubmitRequest, SubmitResponse

router = APIRouter(
    tags=["Intake"],
    responses={
        404: {"description": "No draft for this session"},
        422: {"description": "Knockout flag raised or answers incomplete"},
    },
)


@router.post(
    "/{session_id}/submit", response_model=SubmitResponse, status_code=status.HTTP_201_CREATED
)
async def submit_flow(
    session_id: str,
    service: IntakeServiceDep,
    actor: ActorDep,
    request: SubmitRequest | None = None,
) -> SubmitResponse:
    """Submit the server copy of a session's draft as a new case."""
    patient_id = actor.id if actor.role == ActorRole.patient else None
    case = await service.submit_flow(
        session_id,
        patient_id=patient_id,
        payment_reference=request.payment_reference if request else None,
    )
    return SubmitResponse(case_id=case.id, status=case.status, flags=case.flags)  # type: ignore[arg-type]
