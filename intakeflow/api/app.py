"""
Main API application module for Intakeflow.

This module creates and configures the FastAPI application with all routers,
middleware and the shared collaborators kept on ``app.state``.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from intakeflow.api.exception_handlers import setup_exception_handlers
from intakeflow.api.routers import cases, documents, drafts, flows, intake
from intakeflow.services.claim_sweep import claim_sweep_service
from intakeflow.services.collaborators import (
    BlobStorage,
    DocumentRenderer,
    JinjaDocumentRenderer,
    LocalBlobStorage,
    LoggingNotifier,
    LoggingRefundGateway,
    Notifier,
    RefundGateway,
)
from intakeflow.services.rules import FlowCatalog
from intakeflow.settings import settings
from intakeflow.utils.db_manager import db_manager
from intakeflow.utils.logger import logger


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    Creates database tables, loads flow definitions and runs the claim sweep.
    """
    await db_manager.create_db_and_tables_async()
    logger.info("Database initialized with async support")

    if app.state.catalog is None:
        app.state.catalog = FlowCatalog.from_directory(settings.get_flows_dir())
    logger.info(f"Flow catalog holds {len(app.state.catalog)} definitions")

    if settings.claim_sweep_enabled:
        await claim_sweep_service.start()

    logger.info("Application startup complete")

    try:
        yield
    finally:
        if claim_sweep_service.is_running:
            await claim_sweep_service.stop()
        # Cleanup database connections on shutdown
        await db_manager.close()
        logger.info("Application shutdown")


# noinspection PyTypeChecker
def create_app(
    root_path: str = "/",
    catalog: FlowCatalog | None = None,
    renderer: DocumentRenderer | None = None,
    storage: BlobStorage | None = None,
    notifier: Notifier | None = None,
    refunds: RefundGateway | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        root_path: The root path for the application
        catalog: Flow definitions; loaded from ``flows_path`` at startup when omitted
        renderer: Document renderer
        storage: Storage for issued documents
        notifier: Patient notifications
        refunds: Payment refunds

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Intakeflow",
        description="Clinical intake workflow engine",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
        root_path=root_path,
    )

    app.state.catalog = catalog
    app.state.renderer = renderer or JinjaDocumentRenderer(
        f"{settings.storage_path}/templates"
    )
    app.state.storage = storage or LocalBlobStorage(settings.get_documents_dir())
    app.state.notifier = notifier or LoggingNotifier()
    app.state.refunds = refunds or LoggingRefundGateway()

    # Configure CORS
    origins = ["http://localhost", "http://localhost:8080", "*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Setup exception handlers using decorators
    setup_exception_handlers(app)

    # Include routers with /api prefix for backend endpoints
    app.include_router(flows.router, prefix="/api/flows")
    app.include_router(drafts.router, prefix="/api/drafts")
    app.include_router(intake.router, prefix="/api/intake")
    app.include_router(cases.router, prefix="/api/cases")
    app.include_router(documents.router, prefix="/api/documents")

    return app


# Create default application instance
app = create_app(root_path=settings.root_url)
