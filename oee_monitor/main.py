"""
OEE Monitor - Main FastAPI Application

This is the main entry point for the OEE Monitor backend API. It records
production, calculates OEE, keeps per-machine rolling metrics and serves
monthly analytics, persisting through a primary store with a local fallback.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.responses import Response
import structlog

from oee_monitor.api.v1 import downtime, machines, oee, production
from oee_monitor.config import settings
from oee_monitor.database import check_database_health, close_db, create_primary_engine, init_db
from oee_monitor.persistence.gateway import HybridPersistenceGateway
from oee_monitor.persistence.local_store import LocalDocumentStore
from oee_monitor.persistence.snapshot import load_snapshot
from oee_monitor.persistence.sql_store import SqlDocumentStore
from oee_monitor.services import ServiceContainer, build_services
from oee_monitor.utils.exceptions import OEEMonitorException

# Configure structured logging
logging.basicConfig(format="%(message)s", level=getattr(logging, settings.LOG_LEVEL, logging.INFO))

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
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    logger.info("Starting OEE Monitor API", environment=settings.ENVIRONMENT)
    engine = None

    if getattr(app.state, "services", None) is None:
        engine = create_primary_engine()
        try:
            await init_db(engine)
        except Exception as e:
            # The gateway serves from the fallback until the primary answers
            logger.warning("Primary store unavailable at startup", error=str(e))

        gateway = HybridPersistenceGateway.from_settings(
            primary=SqlDocumentStore(engine),
            fallback=LocalDocumentStore(),
            settings=settings
        )
        app.state.services = build_services(gateway, settings)
        app.state.engine = engine

    try:
        snapshot = load_snapshot(settings.FALLBACK_SEED_PATH)
    except (OSError, ValueError) as e:
        logger.warning("Fallback snapshot not loaded", path=settings.FALLBACK_SEED_PATH, error=str(e))
        snapshot = {}
    await app.state.services.gateway.seed_fallback(snapshot)

    yield

    # Shutdown
    logger.info("Shutting down OEE Monitor API")
    await close_db(engine)
    logger.info("Database connections closed")


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """Create the FastAPI application, optionally around prebuilt services."""
    app = FastAPI(
        title=settings.APP_NAME,
        description="""
        OEE Monitor API.

        This API provides:
        - Production record capture with server-side OEE metrics
        - Rolling per-machine OEE
        - Monthly historical analytics and risk assessment
        - Downtime events and machine alerts
        """,
        version=settings.VERSION,
        docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
        redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None,
        openapi_url="/openapi.json" if settings.ENVIRONMENT != "production" else None,
        lifespan=lifespan
    )
    app.state.services = services
    app.state.engine = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    register_ops_routes(app)

    # Include API routers
    app.include_router(production.router, prefix="/api/v1/production", tags=["Production Records"])
    app.include_router(oee.router, prefix="/api/v1/oee", tags=["OEE"])
    app.include_router(oee.analytics_router, prefix="/api/v1/analytics", tags=["Analytics"])
    app.include_router(machines.router, prefix="/api/v1/machines", tags=["Machines"])
    app.include_router(downtime.router, prefix="/api/v1/downtime", tags=["Downtime"])
    app.include_router(downtime.alerts_router, prefix="/api/v1/alerts", tags=["Alerts"])

    return app


def register_exception_handlers(app: FastAPI) -> None:
    """Global exception handlers."""

    @app.exception_handler(OEEMonitorException)
    async def oee_monitor_exception_handler(request: Request, exc: OEEMonitorException) -> JSONResponse:
        """Handle custom OEE Monitor exceptions."""
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "OEE Monitor exception occurred",
            exception_type=type(exc).__name__,
            message=exc.message,
            path=request.url.path,
            method=request.method
        )

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": exc.message,
                "details": exc.details
            }
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle request validation errors."""
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.warning(
            "Validation error occurred",
            errors=errors,
            path=request.url.path,
            method=request.method
        )

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": {"errors": errors}
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.error(
            "Unexpected error occurred",
            exception_type=type(exc).__name__,
            message=str(exc),
            path=request.url.path,
            method=request.method,
            exc_info=True
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected error occurred",
                "details": None if settings.ENVIRONMENT == "production" else str(exc)
            }
        )


def register_ops_routes(app: FastAPI) -> None:
    """Health and metrics endpoints."""

    @app.get("/health", tags=["Health"])
    async def health_check() -> Dict[str, Any]:
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": settings.APP_NAME,
            "version": settings.VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/health/detailed", tags=["Health"])
    async def detailed_health_check(request: Request) -> Dict[str, Any]:
        """Detailed health check with primary store and gateway state."""
        gateway = request.app.state.services.gateway
        gateway_status = gateway.status()
        database = await check_database_health(request.app.state.engine)

        degraded = gateway_status["circuit_state"] != "closed" or database["status"] == "unhealthy"
        return {
            "status": "degraded" if degraded else "healthy",
            "service": settings.APP_NAME,
            "version": settings.VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {
                "database": database,
                "gateway": gateway_status,
                "api": "healthy"
            }
        }

    @app.get("/metrics", tags=["Monitoring"])
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        if not settings.ENABLE_METRICS:
            return Response(status_code=status.HTTP_404_NOT_FOUND)
        return Response(
            request.app.state.services.gateway.metrics.export(),
            media_type=CONTENT_TYPE_LATEST
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "oee_monitor.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
