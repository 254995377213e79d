"""Shared test fixtures: settings, SQLite database, schedulers and TSE file builders."""

import asyncio
import zipfile
from collections.abc import AsyncGenerator, Callable
from functools import partial
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from election_importer.core.config import Settings
from election_importer.core.database import enable_sqlite_foreign_keys
from election_importer.core.scheduler import CancellationToken, ImportScheduler
from election_importer.lib.importer.parser import LEGACY_LAYOUT, MODERN_LAYOUT, ColumnLayout
from election_importer.models.base import Base
from election_importer.services.pipeline_service import run_import_job

MODERN_WIDTH = 50
LEGACY_WIDTH = 38

_SAMPLE_VALUES: dict[str, str] = {
    "election_year": "2022",
    "round_number": "1",
    "election_code": "546",
    "election_date": "02/10/2022",
    "region": "SP",
    "electoral_unit": "71072",
    "municipality_code": "71072",
    "municipality_name": "SÃO PAULO",
    "zone": "1",
    "cargo_code": "6",
    "cargo_name": "DEPUTADO FEDERAL",
    "candidate_sequence": "250001612345",
    "candidate_number": "1234",
    "candidate_name": "JOSÉ DA SILVA",
    "ballot_name": "ZÉ DA SILVA",
    "party_number": "12",
    "party_acronym": "PDT",
    "party_name": "PARTIDO DEMOCRÁTICO TRABALHISTA",
    "result_status": "ELEITO POR QP",
    "votes": "100",
}


def build_fields(layout: ColumnLayout = MODERN_LAYOUT, width: int | None = None, **overrides: object) -> list[str]:
    """Build one raw TSE row for ``layout`` with sample values."""
    width = width or (MODERN_WIDTH if layout is MODERN_LAYOUT else LEGACY_WIDTH)
    fields = ["#NULO#"] * width
    values = {**_SAMPLE_VALUES, **{k: str(v) for k, v in overrides.items()}}
    for name, index in layout.columns.items():
        fields[index] = values[name]
    return fields


def build_header(width: int) -> list[str]:
    names = ["DT_GERACAO", "HH_GERACAO", "ANO_ELEICAO", "CD_TIPO_ELEICAO", "NM_TIPO_ELEICAO", "NR_TURNO"]
    return names + [f"COL_{i}" for i in range(len(names), width)]


def render_line(fields: list[str]) -> str:
    return ";".join(f'"{f}"' for f in fields)


def write_tse_csv(
    path: Path,
    rows: list[list[str] | str],
    *,
    layout: ColumnLayout = MODERN_LAYOUT,
    encoding: str = "latin-1",
) -> Path:
    """Write a TSE-style CSV: quoted, semicolon-delimited, one header row.

    String entries in ``rows`` are written verbatim (for malformed lines).
    """
    width = MODERN_WIDTH if layout is MODERN_LAYOUT else LEGACY_WIDTH
    lines = [render_line(build_header(width))]
    lines.extend(r if isinstance(r, str) else render_line(r) for r in rows)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(("\r\n".join(lines) + "\r\n").encode(encoding))
    return path


def candidate_rows(count: int, *, start: int = 1, **overrides: object) -> list[list[str]]:
    """``count`` valid rows with distinct natural keys (candidate numbers)."""
    return [build_fields(candidate_number=start + i, **overrides) for i in range(count)]


def write_zip(path: Path, members: dict[str, bytes]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return path


@pytest.fixture
def tse() -> dict[str, Callable]:
    """Builders for TSE rows, CSV files and ZIP archives."""
    return {
        "fields": build_fields,
        "rows": candidate_rows,
        "csv": write_tse_csv,
        "zip": write_zip,
        "line": render_line,
        "legacy": LEGACY_LAYOUT,
        "modern": MODERN_LAYOUT,
    }


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Test application settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        import_work_dir=str(tmp_path / "work"),
        import_batch_size=2500,
        progress_update_interval=0,
        upload_grace_seconds=0,
        import_allowed_domains="cdn.tse.jus.br",
    )


@pytest.fixture
async def async_engine(settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a file-backed async SQLite engine for testing."""
    engine = create_async_engine(settings.database_url, echo=False)
    enable_sqlite_foreign_keys(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, expire_on_commit=False)


@pytest.fixture
async def async_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    """Create a per-test async session."""
    async with session_factory() as session:
        yield session


class BlockingRunner:
    """Job runner that holds its slot until released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started: list[int] = []
        self.tokens: dict[int, CancellationToken] = {}

    async def __call__(self, job_id: int, token: CancellationToken) -> None:
        self.started.append(job_id)
        self.tokens[job_id] = token
        await self.release.wait()


@pytest.fixture
def blocking_runner() -> BlockingRunner:
    return BlockingRunner()


@pytest.fixture
async def held_scheduler(blocking_runner: BlockingRunner) -> AsyncGenerator[ImportScheduler]:
    """Scheduler whose admitted jobs stay active until the runner is released."""
    scheduler = ImportScheduler(runner=blocking_runner, max_active=1)
    yield scheduler
    await scheduler.shutdown()


@pytest.fixture
async def pipeline_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> AsyncGenerator[ImportScheduler]:
    """Scheduler that runs the real import pipeline against the test database."""
    runner = partial(run_import_job, session_factory=session_factory, settings=settings)
    scheduler = ImportScheduler(runner=runner, max_active=1)
    yield scheduler
    await scheduler.shutdown()
