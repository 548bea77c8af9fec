"""
Common dependencies for Intakeflow API endpoints.

This module provides reusable dependency functions for FastAPI endpoints:
the asserted actor, pagination, the flow catalog, collaborators and the
services built on the request's database session.
"""

from typing import Annotated

from fastapi import Depends, Header, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions.http import forbidden, unauthorized
from ..models import ActorRole
from ..repositories import DraftRepository
from ..services.claims import ClaimManager
from ..services.collaborators import BlobStorage, DocumentRenderer, Notifier, RefundGateway
from ..services.intake_service import IntakeService
from ..services.issuance import IssuanceCoordinator
from ..services.rules import FlowCatalog
from ..services.verification import DocumentVerifier
from ..utils.database import get_async_session


class Actor(BaseModel):
    """Identity asserted by the caller through request headers."""

    id: str
    role: ActorRole


async def get_actor(
    x_actor_id: Annotated[str | None, Header()] = None,
    x_actor_role: Annotated[str | None, Header()] = None,
) -> Actor:
    """
    Read the acting identity from ``X-Actor-Id`` and ``X-Actor-Role``.

    The headers are trusted; authentication happens in front of this service.

    Raises:
        HTTPException: 401 without an actor id, 403 for an unknown role
    """
    if not x_actor_id:
        raise unauthorized().with_context("X-Actor-Id header is required")
    try:
        role = ActorRole(x_actor_role or ActorRole.patient.value)
    except ValueError:
        raise forbidden().with_context(f"Unknown role '{x_actor_role}'") from None
    if role == ActorRole.system:
        raise forbidden().with_context("The system role cannot be asserted by clients")
    return Actor(id=x_actor_id, role=role)


async def get_reviewer(actor: Annotated[Actor, Depends(get_actor)]) -> Actor:
    """Require a doctor or admin."""
    if actor.role not in (ActorRole.doctor, ActorRole.admin):
        raise forbidden().with_context("Only reviewers can act on cases")
    return actor


async def common_parameters(
    skip: int = Query(0, ge=0, description="Number of items to skip"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of items to return"),
) -> dict[str, int]:
    """
    Get common query parameters for pagination.

    Args:
        skip: Number of items to skip
        limit: Maximum number of items to return

    Returns:
        Dictionary with skip and limit parameters
    """
    return {"skip": skip, "limit": limit}


def get_catalog(request: Request) -> FlowCatalog:
    return request.app.state.catalog


def get_renderer(request: Request) -> DocumentRenderer:
    return request.app.state.renderer


def get_storage(request: Request) -> BlobStorage:
    return request.app.state.storage


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_refunds(request: Request) -> RefundGateway:
    return request.app.state.refunds


SessionDep = Annotated[AsyncSession, Depends(get_async_session)]
ActorDep = Annotated[Actor, Depends(get_actor)]
ReviewerDep = Annotated[Actor, Depends(get_reviewer)]
PaginationDep = Annotated[dict[str, int], Depends(common_parameters)]
CatalogDep = Annotated[FlowCatalog, Depends(get_catalog)]


def get_draft_repository(session: SessionDep) -> DraftRepository:
    return DraftRepository(session)


def get_document_verifier(session: SessionDep) -> DocumentVerifier:
    return DocumentVerifier(session)


def get_claim_manager(session: SessionDep) -> ClaimManager:
    return ClaimManager(session)


def get_intake_service(
    session: SessionDep,
    catalog: CatalogDep,
    notifier: Annotated[Notifier, Depends(get_notifier)],
    refunds: Annotated[RefundGateway, Depends(get_refunds)],
) -> IntakeService:
    return IntakeService(session, catalog, notifier=notifier, refunds=refunds)


def get_issuance_coordinator(
    session: SessionDep,
    renderer: Annotated[DocumentRenderer, Depends(get_renderer)],
    storage: Annotated[BlobStorage, Depends(get_storage)],
    notifier: Annotated[Notifier, Depends(get_notifier)],
) -> IssuanceCoordinator:
    return IssuanceCoordinator(session, renderer, storage, notifier)


DraftRepositoryDep = Annotated[DraftRepository, Depends(get_draft_repository)]
ClaimManagerDep = Annotated[ClaimManager, Depends(get_claim_manager)]
IntakeServiceDep = Annotated[IntakeService, Depends(get_intake_service)]
IssuanceDep = Annotated[IssuanceCoordinator, Depends(get_issuance_coordinator)]
VerifierDep = Annotated[DocumentVerifier, Depends(get_document_verifier)]
