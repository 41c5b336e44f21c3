from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from shiori.config.logging import get_logger, setup_logging
from shiori.config.settings import Settings
from shiori.config.settings import settings as default_settings
from shiori.infra.database import Database
from shiori.v1.bookmarks import models as bookmark_models  # noqa: F401
from shiori.v1.bookmarks.metadata import MetadataFetcher
from shiori.v1.core.exceptions import (
    RequestContextMiddleware,
    ShioriException,
    general_exception_handler,
    http_exception_handler,
    shiori_exception_handler,
)
from shiori.v1.core.registries import JobRegistry, job_registry
from shiori.v1.healthz import router as health_router
from shiori.v1.infra.jobs.registry_init import register_job_handlers
from shiori.v1.infra.jobs.routes import router as jobs_router
from shiori.v1.infra.jobs.runtime import JobRuntime

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    database: Database = app.state.database
    jobs: JobRuntime = app.state.jobs

    if settings.is_sqlite:
        await database.create_all()

    # Pending jobs left by a previous process
    if settings.worker_autostart:
        jobs.lifecycle.ensure_running()

    yield

    await jobs.lifecycle.shutdown()
    await database.close()
    logger.info("Application shut down")


def create_app(
    settings: Settings | None = None,
    registry: JobRegistry | None = None,
    fetcher: MetadataFetcher | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or default_settings
    registry = registry if registry is not None else job_registry

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Bookmark manager background job queue",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    database = Database(settings)
    register_job_handlers(registry, database.SessionLocal, fetcher=fetcher)

    # Handlers may only be replaced before the worker starts taking load
    if settings.environment != "development":
        registry.freeze()

    app.state.settings = settings
    app.state.database = database
    app.state.jobs = JobRuntime.build(database, settings, registry)

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(ShioriException, shiori_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "shiori.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        workers=1 if default_settings.debug else default_settings.workers,
    )
else:
    # Create the app instance
    app = create_app()
