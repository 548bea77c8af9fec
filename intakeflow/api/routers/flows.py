"""
Flow definition router.

Read-only access to the loaded flow catalog and stateless evaluation of
answers against a flow.
"""

from fastapi import APIRouter

from intakeflow.api.dependencies import CatalogDep
from intakeflow.models import EvaluateRequest, EvaluateResponse, FlowDefinition, FlowSummary
from intakeflow.services.rules import RuleEvaluator

router = APIRouter(tags=["Flows"], responses={404: {"description": "Not found"}})


@router.get("", response_model=list[FlowSummary])
async def list_flows(catalog: CatalogDep) -> list[FlowSummary]:
    """List every loaded flow version."""
    return [
        FlowSummary(
            id=definition.id,
            version=definition.version,
            title=definition.title,
            service_type=definition.service_type,
        )
        for definition in catalog.definitions()
    ]


@router.get("/{flow_id}", response_model=FlowDefinition)
async def get_flow(flow_id: str, catalog: CatalogDep, version: int | None = None) -> FlowDefinition:
    """Get a flow definition; the latest version unless ``version`` is given."""
    return catalog.get(flow_id, version)


@router.post("/{flow_id}/evaluate", response_model=EvaluateResponse)
async def evaluate_flow(
    flow_id: str, request: EvaluateRequest, catalog: CatalogDep
) -> EvaluateResponse:
    """Evaluate answers: visibility, safety flags and remaining issues."""
    evaluator = RuleEvaluator(catalog.get(flow_id, request.version))
    evaluation = evaluator.evaluate(request.answers)
    issues = evaluator.validate(request.answers, evaluation)
    return EvaluateResponse(
        evaluation=evaluation,
        issues=issues,
        summary=evaluator.summarize(request.answers),
        can_submit=not evaluation.has_knockout and not issues,
    )
