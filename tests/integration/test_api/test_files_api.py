"""Integration tests for the /files endpoints."""

from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from election_importer.core.config import Settings, get_settings
from election_importer.core.dependencies import get_scheduler
from election_importer.core.scheduler import ImportScheduler
from election_importer.main import create_app
from election_importer.services.file_service import job_directory, uploads_directory


@pytest.fixture
def app(monkeypatch: pytest.MonkeyPatch, settings: Settings, held_scheduler: ImportScheduler) -> FastAPI:
    monkeypatch.setenv("DATABASE_URL", settings.database_url)
    app = create_app()
    app.dependency_overrides[get_scheduler] = lambda: held_scheduler
    app.dependency_overrides[get_settings] = lambda: settings
    return app


@pytest.fixture
def client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.fixture
def work_dir(settings: Settings) -> Path:
    work = settings.import_work_path
    job = job_directory(work, 3)
    job.mkdir(parents=True)
    (job / "source.zip").write_bytes(b"z" * 64)
    uploads = uploads_directory(work)
    uploads.mkdir()
    (uploads / "tmp_upload.csv").write_bytes(b"u" * 16)
    return work


class TestListFiles:
    async def test_empty_work_dir(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/files")
        assert resp.status_code == 200
        assert resp.json() == {"items": [], "total_size": 0}

    async def test_groups(self, client: AsyncClient, work_dir: Path) -> None:
        resp = await client.get("/api/v1/files")

        assert resp.status_code == 200
        body = resp.json()
        assert body["total_size"] == 80
        assert [(g["job_id"], g["bucket"]) for g in body["items"]] == [(3, None), (None, "uploads")]
        assert body["items"][0]["files"][0]["name"] == "source.zip"
        assert body["items"][0]["files"][0]["size"] == 64


class TestDeleteFiles:
    async def test_delete_job_files(self, client: AsyncClient, work_dir: Path) -> None:
        resp = await client.delete("/api/v1/files/3")
        assert resp.status_code == 200
        assert resp.json()["total_size"] == 64
        assert not job_directory(work_dir, 3).exists()

    async def test_empty_uploads(self, client: AsyncClient, work_dir: Path) -> None:
        resp = await client.delete("/api/v1/files/uploads")
        assert resp.status_code == 200
        assert resp.json()["bucket"] == "uploads"
        assert list(uploads_directory(work_dir).iterdir()) == []

    async def test_active_job_conflict(
        self, client: AsyncClient, work_dir: Path, held_scheduler: ImportScheduler
    ) -> None:
        held_scheduler.submit(3)
        resp = await client.delete("/api/v1/files/3")
        assert resp.status_code == 409
        assert job_directory(work_dir, 3).exists()

    async def test_unknown_group(self, client: AsyncClient, work_dir: Path) -> None:
        assert (await client.delete("/api/v1/files/9")).status_code == 404

    async def test_invalid_target(self, client: AsyncClient, work_dir: Path) -> None:
        assert (await client.delete("/api/v1/files/everything")).status_code == 409
