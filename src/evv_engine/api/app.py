"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from evv_engine import __version__
from evv_engine.api.routes import evv_router, health_router, sync_router
from evv_engine.database import create_schema
from evv_engine.errors import (
    CollaboratorUnavailableError,
    ConflictError,
    EVVError,
    NotFoundError,
    PermissionDeniedError,
    StaleWriteError,
    ValidationError,
)
from evv_engine.providers.base import CaregiverProvider, ClientProvider, VisitProvider
from evv_engine.providers.stub import (
    InMemoryCaregiverProvider,
    InMemoryClientProvider,
    InMemoryVisitProvider,
)
from evv_engine.services.state_machine import InvalidTransitionError

logger = logging.getLogger(__name__)

# Looked up along the exception's MRO
ERROR_STATUS: dict[type[EVVError], int] = {
    ValidationError: 422,
    PermissionDeniedError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    StaleWriteError: 409,
    CollaboratorUnavailableError: 503,
}


def status_for(exc: EVVError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    if app.state.create_schema:
        await create_schema()
    yield


def create_app(
    visit_provider: VisitProvider | None = None,
    client_provider: ClientProvider | None = None,
    caregiver_provider: CaregiverProvider | None = None,
    create_schema_on_startup: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The host application passes its visit, client and caregiver services.
    Without them the app runs against empty in-memory providers.
    """
    app = FastAPI(
        title="EVV Compliance Engine API",
        description="Electronic Visit Verification capture, compliance and sync",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.visit_provider = visit_provider or InMemoryVisitProvider()
    app.state.client_provider = client_provider or InMemoryClientProvider()
    app.state.caregiver_provider = caregiver_provider or InMemoryCaregiverProvider()
    app.state.create_schema = create_schema_on_startup

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(EVVError)
    async def evv_error_handler(request: Request, exc: EVVError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, "code": exc.code, "details": exc.details},
        )

    @app.exception_handler(InvalidTransitionError)
    async def transition_error_handler(
        request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "detail": str(exc),
                "code": "INVALID_TRANSITION",
                "details": {"from_status": exc.from_status, "to_status": exc.to_status},
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(evv_router, prefix="/api/v1")
    app.include_router(sync_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
