"""
Autopilot - FastAPI Application
===============================

Application factory with the autonomous control router and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from autopilot.api import sessions
from autopilot.core.autonomous.controller import AutonomousController
from autopilot.core.autonomous.github import GitHubCodeHost
from autopilot.core.autonomous.store import SessionStore
from autopilot.core.config import settings
from autopilot.core.database import AsyncSessionLocal, close_db, get_db_session, init_db
from autopilot.core.exceptions import (
    AutopilotError,
    ConfigurationError,
    InvalidTransitionError,
    PlanningError,
    RecoveryError,
    SessionAlreadyRunningError,
    SessionNotFoundError,
    StoryAlreadyClaimedError,
)
from autopilot.core.schemas import ErrorResponse, HealthResponse

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Domain error -> (HTTP status, error code)
ERROR_STATUS = [
    (SessionNotFoundError, status.HTTP_404_NOT_FOUND, "SESSION_NOT_FOUND"),
    (RecoveryError, status.HTTP_404_NOT_FOUND, "DETECTION_NOT_FOUND"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "INVALID_TRANSITION"),
    (StoryAlreadyClaimedError, status.HTTP_409_CONFLICT, "STORY_ALREADY_CLAIMED"),
    (SessionAlreadyRunningError, status.HTTP_409_CONFLICT, "SESSION_ALREADY_RUNNING"),
    (PlanningError, status.HTTP_422_UNPROCESSABLE_ENTITY, "PLANNING_FAILED"),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE, "NOT_CONFIGURED"),
]


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Create tables
    - Open the controller's dedicated database session
    - Connect the GitHub code host when a repository is configured

    Shutdown:
    - Cancel running sessions (their state is persisted)
    - Close database connections
    """
    logger.info("Starting Autopilot", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    code_host = GitHubCodeHost() if settings.GITHUB_REPOSITORY else None
    db = AsyncSessionLocal()
    app.state.controller = AutonomousController(SessionStore(db), code_host=code_host)

    yield

    logger.info("Shutting down Autopilot")
    await app.state.controller.shutdown()
    if code_host is not None:
        await code_host.close()
    await db.close()
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Autonomous software-delivery orchestrator",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(AutopilotError)
    async def autopilot_exception_handler(request: Request, exc: AutopilotError) -> JSONResponse:
        """Map domain errors to HTTP status codes."""
        for error_type, status_code, code in ERROR_STATUS:
            if isinstance(exc, error_type):
                logger.info("Request rejected", path=request.url.path, code=code, detail=str(exc))
                return JSONResponse(
                    status_code=status_code,
                    content=ErrorResponse(error=type(exc).__name__, detail=str(exc), code=code).model_dump(),
                )
        return await global_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """Check application and database health."""
        database = "connected"
        try:
            async with get_db_session() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("Database health check failed", error=str(e))
            database = "unavailable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
        )

    app.include_router(sessions.router)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "autopilot.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
    )
