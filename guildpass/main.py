from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from guildpass.config.logging import setup_logging
from guildpass.config.settings import settings
from guildpass.infra.database import get_database
from guildpass.v1.core.exceptions import (
    GuildPassException,
    RequestContextMiddleware,
    general_exception_handler,
    guildpass_exception_handler,
    http_exception_handler,
)
from guildpass.v1.core.registries import job_family_registry
from guildpass.v1.healthz import router as health_router
from guildpass.v1.infra.jobs import registry_init  # noqa: F401
from guildpass.v1.infra.jobs.routes import router as jobs_router
from guildpass.v1.infra.jobs.sweeper import MaintenanceSweeper
from guildpass.v1.mirror.routes import router as mirror_router
from guildpass.v1.payments.routes import router as webhooks_router
from guildpass.v1.payments.routes import subscriptions_router
from guildpass.v1.role_sync.routes import router as role_sync_router
from guildpass.v1.seat_audit.routes import router as seat_audit_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    sweeper = None
    if settings.enable_sweeper:
        sweeper = MaintenanceSweeper(settings, get_database(settings).SessionLocal)
        sweeper.start()
    app.state.sweeper = sweeper
    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Job queue, worker coordination and payment webhooks",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

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

    app.add_exception_handler(GuildPassException, guildpass_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(seat_audit_router, prefix="/v1")
    app.include_router(role_sync_router, prefix="/v1")
    app.include_router(mirror_router, prefix="/v1")
    app.include_router(webhooks_router, prefix="/v1")
    app.include_router(subscriptions_router, prefix="/v1")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        job_family_registry.freeze()

    return app


# Create the app instance
app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "guildpass.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )


if __name__ == "__main__":
    main()
