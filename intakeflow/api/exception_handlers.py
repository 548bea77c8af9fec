"""
Exception handlers for converting domain exceptions to HTTP responses.

This module maps domain exceptions to appropriate HTTP status codes
and response formats for the API layer using FastAPI decorators.
"""

from typing import TYPE_CHECKING

from fastapi import Request, status
from fastapi.responses import JSONResponse

from ..utils.logger import logger

if TYPE_CHECKING:
    from fastapi import FastAPI


def setup_exception_handlers(app: "FastAPI") -> None:
    """Setup exception handlers using decorators.

    Handlers are matched on the most specific exception class, so the
    subclasses registered here take precedence over their bases.

    Args:
        app: FastAPI application instance
    """
    # Import domain exceptions inside function to avoid circular imports
    from ..exceptions.domain import (
        AuditWriteFailure,
        AuthorizationError,
        BusinessRuleViolationError,
        ClaimConflictError,
        DraftPersistError,
        EntityNotFoundError,
        FlowDefinitionError,
        KnockoutError,
        ValidationError,
    )

    @app.exception_handler(EntityNotFoundError)
    async def handle_entity_not_found(_: Request, exc: EntityNotFoundError) -> JSONResponse:
        """Convert EntityNotFoundError to 404 response."""
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": str(exc) if str(exc) else "Resource not found"},
        )

    @app.exception_handler(AuthorizationError)
    async def handle_authorization_error(_: Request, exc: AuthorizationError) -> JSONResponse:
        """Convert AuthorizationError to 403 response."""
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"detail": str(exc) if str(exc) else "Insufficient permissions"},
        )

    @app.exception_handler(ValidationError)
    async def handle_validation_error(_: Request, exc: ValidationError) -> JSONResponse:
        """Convert ValidationError to 422 response listing the failing answers."""
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": str(exc) if str(exc) else "Validation failed",
                "issues": [issue.model_dump() for issue in exc.issues],
            },
        )

    @app.exception_handler(KnockoutError)
    async def handle_knockout(_: Request, exc: KnockoutError) -> JSONResponse:
        """Convert KnockoutError to 422 response carrying the flag messages."""
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": str(exc),
                "knockouts": [flag.model_dump(mode="json") for flag in exc.flags],
            },
        )

    @app.exception_handler(ClaimConflictError)
    async def handle_claim_conflict(_: Request, exc: ClaimConflictError) -> JSONResponse:
        """Convert ClaimConflictError to 409 response naming the holder."""
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc), "current_holder": exc.current_holder},
        )

    @app.exception_handler(BusinessRuleViolationError)
    async def handle_business_rule_violation(
        _: Request, exc: BusinessRuleViolationError
    ) -> JSONResponse:
        """Convert BusinessRuleViolationError to 409 response."""
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc) if str(exc) else "Business rule violation"},
        )

    @app.exception_handler(FlowDefinitionError)
    async def handle_flow_definition(_: Request, exc: FlowDefinitionError) -> JSONResponse:
        """Convert FlowDefinitionError to 422 response."""
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc) if str(exc) else "Invalid flow definition"},
        )

    @app.exception_handler(DraftPersistError)
    async def handle_draft_persist(_: Request, exc: DraftPersistError) -> JSONResponse:
        """Convert DraftPersistError to 503 response."""
        logger.error(f"Draft persistence failed: {exc}")
        # Don't expose internal database errors to clients
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Draft could not be saved"},
        )

    @app.exception_handler(AuditWriteFailure)
    async def handle_audit_failure(_: Request, _exc: AuditWriteFailure) -> JSONResponse:
        """Convert AuditWriteFailure to 500 response."""
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "The action could not be recorded and was not applied"},
        )
