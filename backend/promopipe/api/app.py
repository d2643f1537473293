"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from promopipe import validate_dependencies
from promopipe.config import settings
from promopipe.db import RunRepository, SqlJobStore, async_session, init_database, shutdown
from promopipe.orchestrator.factory import build_runtime
from promopipe.api.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Validate system dependencies (ffmpeg)
        - Initialize database schema
        - Start queue workers and the stall monitor

    Shutdown:
        - Stop workers, close service clients and database connections
    """
    logger.info("Starting PromoPipe API...")
    validate_dependencies()
    await init_database()
    runtime = build_runtime(
        settings,
        store=SqlJobStore(async_session),
        run_repository=RunRepository(async_session),
    )
    app.state.runtime = runtime
    await runtime.start()
    logger.info("API startup complete")

    yield

    logger.info("Shutting down PromoPipe API...")
    await runtime.stop()
    await shutdown()
    logger.info("API shutdown complete")


def create_app(use_lifespan: bool = True) -> FastAPI:
    application = FastAPI(
        title="PromoPipe API",
        version="0.1.0",
        lifespan=lifespan if use_lifespan else None,
    )
    application.include_router(router)

    if settings.storage.object_store == "local":
        application.mount(
            "/media",
            StaticFiles(directory=str(settings.storage.local_root), check_dir=False),
            name="media",
        )

    @application.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler to prevent stack traces in API responses."""
        logger.error(
            f"Unhandled exception in {request.method} {request.url.path}: "
            f"{type(exc).__name__}: {str(exc)}"
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc),
            },
        )

    return application


app = create_app()
