from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from portal_jobs.config.logging import setup_logging
from portal_jobs.config.settings import settings
from portal_jobs.v1.core.exceptions import (
    PortalJobsException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    portal_jobs_exception_handler,
)
from portal_jobs.v1.core.registries import job_registry
from portal_jobs.v1.healthz import router as health_router
from portal_jobs.v1.infra.jobs.registry_init import register_job_handlers
from portal_jobs.v1.infra.jobs.routes import router as jobs_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Job orchestration and dispatch engine for the portal",
        version=settings.version,
        debug=settings.debug,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(PortalJobsException, portal_jobs_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    # Submission validates job types against the registry
    register_job_handlers(settings)

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        job_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "portal_jobs.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
