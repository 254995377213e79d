"""Root API router with /api/v1 prefix and middleware registration."""

from fastapi import APIRouter, FastAPI

from election_importer.api.middleware import RequestLoggingMiddleware, setup_cors
from election_importer.core.config import Settings


def create_router(settings: Settings) -> APIRouter:
    """Create the root API router with all sub-routers included.

    Args:
        settings: Application settings.

    Returns:
        Configured API router.
    """
    from election_importer.api.v1.files import router as files_router
    from election_importer.api.v1.imports import router as imports_router

    root_router = APIRouter(prefix=settings.api_v1_prefix)
    root_router.include_router(imports_router)
    root_router.include_router(files_router)
    return root_router


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware on the FastAPI app.

    Args:
        app: The FastAPI application.
        settings: Application settings.
    """
    setup_cors(app, settings)
    app.add_middleware(RequestLoggingMiddleware)
