"""Tests for CORS and request logging middleware."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from election_importer.api.middleware import RequestLoggingMiddleware, setup_cors
from election_importer.core.config import Settings


def _create_test_app() -> FastAPI:
    """Create a minimal FastAPI app for middleware testing."""
    app = FastAPI()

    @app.get("/test")
    async def test_route() -> dict:
        return {"ok": True}

    return app


class TestRequestLoggingMiddleware:
    def test_process_time_header(self) -> None:
        app = _create_test_app()
        app.add_middleware(RequestLoggingMiddleware)
        response = TestClient(app).get("/test")
        assert response.status_code == 200
        assert float(response.headers["X-Process-Time-Ms"]) >= 0


class TestSetupCors:
    def test_cors_disabled_without_origins(self) -> None:
        app = _create_test_app()
        setup_cors(app, Settings(database_url="sqlite+aiosqlite:///:memory:"))
        response = TestClient(app).get("/test", headers={"Origin": "http://example.com"})
        assert "access-control-allow-origin" not in response.headers

    def test_cors_allows_configured_origin(self) -> None:
        app = _create_test_app()
        setup_cors(app, Settings(database_url="sqlite+aiosqlite:///:memory:", cors_origins="http://example.com"))
        response = TestClient(app).get("/test", headers={"Origin": "http://example.com"})
        assert response.headers["access-control-allow-origin"] == "http://example.com"
