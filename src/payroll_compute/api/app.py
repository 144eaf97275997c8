"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payroll_compute.api.routes import health_router, pay_runs_router
from payroll_compute.config import Settings, get_settings
from payroll_compute.database import init_db
from payroll_compute.errors import BusinessRuleViolation, NotFoundError, PayrollError
from payroll_compute.logging_config import configure_logging
from payroll_compute.services.locking_service import RunLockedError, RunLockRegistry
from payroll_compute.services.pay_run_service import PayrollRunService
from payroll_compute.services.state_machine import InvalidTransitionError

logger = logging.getLogger(__name__)

# Rule violations that conflict with the current state of a run
CONFLICT_ERRORS = (InvalidTransitionError, RunLockedError)


def error_status(exc: PayrollError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, CONFLICT_ERRORS):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, BusinessRuleViolation):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    logger.info("Payroll computation API starting (engine %s)", app.state.settings.engine_version)
    yield
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
    lock_registry: RunLockRegistry | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Without a session factory the application uses the engine configured by
    DATABASE_URL.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Payroll Computation API",
        description="Effective-dated payroll calculation and run lifecycle",
        version=settings.engine_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if session_factory is None:
        app.state.engine, session_factory = init_db()
    app.state.session_factory = session_factory
    app.state.pay_run_service = PayrollRunService(
        session_factory,
        settings=settings,
        lock_registry=lock_registry,
    )

    # Exception handlers
    @app.exception_handler(PayrollError)
    async def payroll_error_handler(request: Request, exc: PayrollError) -> JSONResponse:
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=error_status(exc),
            content={"detail": str(exc), "code": exc.code},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(pay_runs_router, prefix="/api/v1")

    return app
