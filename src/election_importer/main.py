"""FastAPI application factory.

Creates the FastAPI app with lifespan management (database engine and
import scheduler), exception handlers, and OpenAPI metadata.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from election_importer.core.config import get_settings
from election_importer.core.database import dispose_engine, get_session_factory, init_engine
from election_importer.core.logging import setup_logging
from election_importer.core.scheduler import scheduler
from election_importer.lib.importer.errors import (
    BatchNotFoundError,
    DuplicateImportError,
    FileGroupNotFoundError,
    FilesInUseError,
    InvalidOperationError,
    InvalidTransitionError,
    JobAlreadyQueuedError,
    JobNotFoundError,
    SourceUnavailableError,
)
from election_importer.schemas.common import ErrorResponse

# Pipeline exceptions and the status code the API reports for them
ERROR_STATUS_CODES: dict[type[Exception], int] = {
    JobNotFoundError: 404,
    BatchNotFoundError: 404,
    FileGroupNotFoundError: 404,
    InvalidOperationError: 409,
    InvalidTransitionError: 409,
    FilesInUseError: 409,
    JobAlreadyQueuedError: 409,
    SourceUnavailableError: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Init engine and scheduler on startup; stop work and dispose on shutdown."""
    from election_importer.services.pipeline_service import recover_interrupted_jobs, run_import_job

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_dir)
    init_engine(settings.database_url, echo=False, schema=settings.database_schema)
    settings.import_work_path.mkdir(parents=True, exist_ok=True)
    scheduler.configure(run_import_job, max_active=settings.max_active_jobs)

    async with get_session_factory()() as session:
        await recover_interrupted_jobs(session, scheduler=scheduler)
    logger.info(f"Import scheduler ready (max_active_jobs={settings.max_active_jobs})")

    yield

    await scheduler.shutdown()
    await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Election Importer",
        description="Bulk import of TSE election result files with live progress and operator control",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Register exception handlers
    @app.exception_handler(DuplicateImportError)
    async def duplicate_import_handler(request: Request, exc: DuplicateImportError) -> JSONResponse:
        body = ErrorResponse(detail=str(exc), code=exc.code, existing_job_id=exc.existing_job_id)
        return JSONResponse(status_code=409, content=body.model_dump())

    async def pipeline_error_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=ERROR_STATUS_CODES[type(exc)], content={"detail": str(exc)})

    for exc_class in ERROR_STATUS_CODES:
        app.add_exception_handler(exc_class, pipeline_error_handler)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc)},
        )

    # Register middleware and routers
    from election_importer.api.router import create_router, setup_middleware

    setup_middleware(app, settings)
    app.include_router(create_router(settings))

    return app
