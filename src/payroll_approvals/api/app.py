"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payroll_approvals.api.routes import (
    approvals_router,
    health_router,
    organizations_router,
    pay_runs_router,
    session_router,
)
from payroll_approvals.config import Settings, configure_logging, get_settings
from payroll_approvals.database import get_engine, make_session_factory
from payroll_approvals.errors import (
    ApprovalCoreError,
    AuthenticationError,
    ImpersonationEscalationRejected,
    OrgScopeViolation,
    PermissionDenied,
    ResourceNotFound,
    StaleStateConflict,
    WorkflowError,
)
from payroll_approvals.events import EventEmitter

logger = logging.getLogger(__name__)

# First match wins; subclasses before their bases
ERROR_STATUS: list[tuple[type[ApprovalCoreError], int]] = [
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (OrgScopeViolation, status.HTTP_404_NOT_FOUND),
    (ResourceNotFound, status.HTTP_404_NOT_FOUND),
    (PermissionDenied, status.HTTP_403_FORBIDDEN),
    (ImpersonationEscalationRejected, status.HTTP_403_FORBIDDEN),
    (StaleStateConflict, status.HTTP_409_CONFLICT),
    (WorkflowError, status.HTTP_400_BAD_REQUEST),
]


def status_for(exc: ApprovalCoreError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    emitter: EventEmitter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Tests pass their own session factory and emitter; otherwise an engine is
    built from ``DATABASE_URL`` and disposed on shutdown.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    engine = None
    if session_factory is None:
        engine = get_engine(settings.database_url)
        session_factory = make_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        yield
        if engine is not None:
            await engine.dispose()

    app = FastAPI(
        title="Payroll Approvals API",
        description="Authorization and pay-run approval workflow",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.emitter = emitter or EventEmitter()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(ApprovalCoreError)
    async def approval_error_handler(request: Request, exc: ApprovalCoreError) -> JSONResponse:
        """Render request-level errors with their mapped status."""
        code = status_for(exc)
        headers = {"WWW-Authenticate": "Bearer"} if code == status.HTTP_401_UNAUTHORIZED else None
        if code == status.HTTP_500_INTERNAL_SERVER_ERROR:
            logger.error("Unmapped error on %s %s: %s", request.method, request.url.path, exc)
            return JSONResponse(
                status_code=code,
                content={"detail": "An unexpected error occurred", "code": "INTERNAL_ERROR"},
            )
        return JSONResponse(status_code=code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
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
    app.include_router(session_router, prefix="/api/v1")
    app.include_router(pay_runs_router, prefix="/api/v1")
    app.include_router(approvals_router, prefix="/api/v1")
    app.include_router(organizations_router, prefix="/api/v1")

    return app
