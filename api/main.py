"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging

from api.middleware import RequestContextMiddleware
from api.routes import connectors, health, jobs
from core.config import settings
from core.exceptions import AuthenticationError, BridgeException, NotFoundError, ValidationError
from core.logging import setup_logging
from ingestion.bootstrap import build_components
from ingestion.scheduler import MaintenanceScheduler

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    ValidationError: 400,
    AuthenticationError: 401,
    NotFoundError: 404,
}


def create_app() -> FastAPI:
    app = FastAPI(
        title="Service Bridge API",
        description="Multi-tenant migration jobs between service-management platforms",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(RequestContextMiddleware)

    app.include_router(health.router)
    app.include_router(jobs.router)
    app.include_router(connectors.router)

    @app.exception_handler(BridgeException)
    async def bridge_exception_handler(request: Request, exc: BridgeException):
        status_code = next(
            (code for cls, code in ERROR_STATUS_CODES.items() if isinstance(exc, cls)), 500
        )
        if status_code == 500:
            logger.error(f"Unhandled pipeline error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "error": exc.code, "message": exc.message},
        )

    @app.on_event("startup")
    async def startup_event():
        """Application startup event"""
        setup_logging("api")
        logger.info("Starting Service Bridge API")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        logger.info(
            f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}"
        )

        # Tests install their own components before the app starts
        if getattr(app.state, "components", None) is None:
            app.state.components = build_components(settings)
        app.state.scheduler = MaintenanceScheduler(app.state.components.store)
        app.state.scheduler.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown event"""
        logger.info("Shutting down Service Bridge API")
        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None:
            scheduler.stop()
        components = getattr(app.state, "components", None)
        if components is not None:
            await components.close()

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "Service Bridge API",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/health",
            "endpoints": {
                "jobs": "/jobs",
                "connectors": "/connectors/types"
            }
        }

    return app


app = create_app()
