"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

import labguard
from labguard.services import SafetyServices

from .dependencies import get_api_settings
from .middleware import RequestLoggingMiddleware, register_exception_handlers
from .schemas import HealthResponse
from .settings import APISettings, get_settings

logger = structlog.get_logger(__name__)


def _make_lifespan(manage_services: bool):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan context manager.

        When the app manages its own services (tests, single-listener
        embedding) they are started here and shut down on exit. Under
        :class:`labguard.web.transport.TransportBootstrap` the bootstrap owns
        the service lifecycle and this only logs.
        """
        services: SafetyServices = app.state.services

        if manage_services:
            await services.start()

        logger.info("api_ready", version=labguard.__version__, managed=manage_services)

        yield

        logger.info("api_shutting_down")
        if manage_services:
            await services.shutdown()

    return lifespan


def create_app(
    services: SafetyServices,
    settings: Optional[APISettings] = None,
    manage_services: bool = False,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This factory function creates the app with:
    - OpenAPI metadata (title, version, description)
    - CORS middleware
    - Request logging middleware (if enabled)
    - Exception handlers returning the JSON envelope
    - Health check endpoint

    Args:
        services: Safety services the routes operate on
        settings: API settings (read from the environment when omitted)
        manage_services: Start and stop ``services`` in the app lifespan

    Returns:
        Configured FastAPI application instance

    Example:
        >>> from fastapi.testclient import TestClient
        >>> app = create_app(build_services(config), manage_services=True)
        >>> with TestClient(app) as client:
        ...     client.get("/api/backup/status")
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="LabGuard API",
        version=labguard.__version__,
        description="""Persistence safety for the lab data store.

Periodic snapshots of the SQLite store, integrity verification of the newest
snapshot, and their histories.

Every response uses the envelope `{"success": bool, "data": ..., "error": str}`.
""",
        openapi_url=settings.openapi_url,
        openapi_tags=[
            {
                "name": "Health",
                "description": "Health check and status endpoints",
            },
            {
                "name": "Backup",
                "description": "Snapshots, integrity checks and their histories",
            },
        ],
        lifespan=_make_lifespan(manage_services),
        debug=settings.debug,
    )
    app.state.services = services
    app.state.settings = settings
    app.state.https = settings.use_https

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.log_requests:
        app.add_middleware(RequestLoggingMiddleware)

    register_exception_handlers(app)

    @app.get(
        "/health",
        tags=["Health"],
        summary="Health check",
        response_model=HealthResponse,
        response_description="Health status of the API",
    )
    async def health_check(
        request: Request,
        settings: APISettings = Depends(get_api_settings),
    ) -> HealthResponse:
        """Basic liveness information including API version and transport."""
        return HealthResponse(
            status="ok",
            version=labguard.__version__,
            https=bool(getattr(request.app.state, "https", settings.use_https)),
        )

    from .routes import backup

    app.include_router(backup.router)

    logger.info("api_app_created", routes=len(app.routes))

    return app
