"""Integration tests for batch planning and processing against SQLite."""

import asyncio
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from election_importer.core.scheduler import CancellationToken, ImportScheduler
from election_importer.lib.importer.errors import (
    BatchNotFoundError,
    ImportCancelledError,
    InvalidOperationError,
    SourceUnavailableError,
)
from election_importer.lib.importer.reader import SourceReader
from election_importer.models.candidate_vote import CandidateVote
from election_importer.models.import_error import ImportRowError
from election_importer.models.import_job import ImportJob
from election_importer.services import batch_service
from election_importer.services.batch_service import (
    batch_stats,
    list_batches,
    plan_batches,
    process_batch,
    process_job_batches,
    reprocess_batch,
    reprocess_failed_batches,
)
from election_importer.services.import_service import delete_import_job, restart_import_job

TSE_URL = "https://cdn.tse.jus.br/estatistica/sead/odsele/votacao_candidato_munzona/votacao_candidato_munzona_2022.zip"


class _CancelAfter(CancellationToken):
    """Token that reports cancellation once ``checks`` row checks have passed."""

    def __init__(self, checks: int) -> None:
        super().__init__()
        self._remaining = checks

    @property
    def cancelled(self) -> bool:
        self._remaining -= 1
        return self._remaining < 0


async def _make_job(session: AsyncSession, csv_path: Path, **overrides: Any) -> ImportJob:
    values: dict[str, Any] = {
        "file_name": csv_path.name,
        "source_type": "upload",
        "source_key": f"upload:{csv_path.name}",
        "status": "running",
        "local_csv_path": str(csv_path),
    }
    values.update(overrides)
    job = ImportJob(**values)
    session.add(job)
    await session.commit()
    return job


async def _stored_rows(session: AsyncSession, job_id: int | None = None) -> int:
    query = select(func.count(CandidateVote.id))
    if job_id is not None:
        query = query.where(CandidateVote.import_job_id == job_id)
    return (await session.execute(query)).scalar_one()


async def _error_rows(session: AsyncSession, job_id: int) -> list[ImportRowError]:
    result = await session.execute(
        select(ImportRowError).where(ImportRowError.job_id == job_id).order_by(ImportRowError.row_number)
    )
    return list(result.scalars().all())


async def _run(session: AsyncSession, job: ImportJob, csv_path: Path, batch_size: int) -> None:
    await plan_batches(session, job, csv_path, batch_size)
    with SourceReader(csv_path) as reader:
        await process_job_batches(session, job, reader)


class TestPlanBatches:
    async def test_contiguous_ranges(self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]) -> None:
        csv_path = tse["csv"](tmp_path / "votacao.csv", tse["rows"](10))
        job = await _make_job(async_session, csv_path)

        batches = await plan_batches(async_session, job, csv_path, 4)

        assert [(b.batch_index, b.row_start, b.row_end, b.total_rows) for b in batches] == [
            (0, 0, 4, 4),
            (1, 4, 8, 4),
            (2, 8, 10, 2),
        ]
        assert all(b.status == "pending" for b in batches)
        assert job.total_rows == 10
        assert job.total_file_rows == 10

    async def test_replans_from_scratch(self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]) -> None:
        csv_path = tse["csv"](tmp_path / "votacao.csv", tse["rows"](5))
        job = await _make_job(async_session, csv_path)
        await plan_batches(async_session, job, csv_path, 2)
        await plan_batches(async_session, job, csv_path, 5)
        batches = await list_batches(async_session, job.id)
        assert [(b.row_start, b.row_end) for b in batches] == [(0, 5)]

    async def test_header_only_file(self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]) -> None:
        csv_path = tse["csv"](tmp_path / "empty.csv", [])
        job = await _make_job(async_session, csv_path)
        assert await plan_batches(async_session, job, csv_path, 100) == []
        assert job.total_rows == 0

    async def test_rows_counted_off_the_event_loop(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        csv_path = tse["csv"](tmp_path / "votacao.csv", tse["rows"](3))
        job = await _make_job(async_session, csv_path)
        loop_thread = threading.get_ident()
        threads: list[int] = []
        original = batch_service.count_rows

        def _counting(path: Path) -> int:
            threads.append(threading.get_ident())
            return original(path)

        with patch.object(batch_service, "count_rows", side_effect=_counting):
            await plan_batches(async_session, job, csv_path, 2)

        assert job.total_rows == 3
        assert len(threads) == 1
        assert threads[0] != loop_thread


class TestProcessBatches:
    async def test_all_rows_stored(self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]) -> None:
        csv_path = tse["csv"](tmp_path / "votacao.csv", tse["rows"](10))
        job = await _make_job(async_session, csv_path)

        await _run(async_session, job, csv_path, 4)

        assert job.processed_rows == 10
        assert job.skipped_rows == 0
        assert job.error_count == 0
        assert await _stored_rows(async_session, job.id) == 10
        stats = await batch_stats(async_session, job.id)
        assert stats["completed"] == 3
        assert stats["total"] == 3

        source_rows = (
            await async_session.execute(select(CandidateVote.source_row).order_by(CandidateVote.source_row))
        ).scalars().all()
        assert list(source_rows) == list(range(1, 11))

    async def test_record_values(self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]) -> None:
        csv_path = tse["csv"](tmp_path / "votacao.csv", [tse["fields"](region="rj", votes="4321")])
        job = await _make_job(async_session, csv_path)
        await _run(async_session, job, csv_path, 10)

        vote = (await async_session.execute(select(CandidateVote))).scalar_one()
        assert vote.region == "RJ"
        assert vote.votes == 4321
        assert vote.municipality_name == "SÃO PAULO"
        assert vote.natural_key == "2022|546|1|RJ|71072|1|6|1234"

    async def test_malformed_rows_recorded(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        rows: list = tse["rows"](6)
        rows[2] = tse["fields"](candidate_number=3, votes="abc")
        rows[4] = '"too";"short"'
        csv_path = tse["csv"](tmp_path / "votacao.csv", rows)
        job = await _make_job(async_session, csv_path)

        await _run(async_session, job, csv_path, 4)

        assert job.processed_rows == 4
        assert job.error_count == 2
        errors = await _error_rows(async_session, job.id)
        assert [(e.row_number, e.error_type) for e in errors] == [(3, "invalid_number"), (5, "parse_error")]
        assert errors[1].raw_data == '"too";"short"'
        stats = await batch_stats(async_session, job.id)
        assert stats["failed"] == 0

    async def test_cargo_filter_skips_rows(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        rows = tse["rows"](3) + tse["rows"](2, start=100, cargo_code=7)
        csv_path = tse["csv"](tmp_path / "votacao.csv", rows)
        job = await _make_job(async_session, csv_path, cargo_filter=7)

        await _run(async_session, job, csv_path, 10)

        assert job.processed_rows == 2
        assert job.skipped_rows == 3
        assert job.error_count == 0

    async def test_repeated_key_in_file_skipped(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        rows = [tse["fields"](), tse["fields"](votes=5), tse["fields"](candidate_number=99)]
        csv_path = tse["csv"](tmp_path / "votacao.csv", rows)
        job = await _make_job(async_session, csv_path)

        await _run(async_session, job, csv_path, 2)

        assert job.processed_rows == 2
        assert job.skipped_rows == 1
        assert await _stored_rows(async_session) == 2
        assert job.error_count == 0
        assert await _error_rows(async_session, job.id) == []

    async def test_rows_owned_by_another_job_skipped(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        first = tse["csv"](tmp_path / "a.csv", tse["rows"](5))
        second = tse["csv"](tmp_path / "b.csv", tse["rows"](5))
        job_a = await _make_job(async_session, first)
        job_b = await _make_job(async_session, second)

        await _run(async_session, job_a, first, 5)
        await _run(async_session, job_b, second, 5)

        assert job_b.processed_rows == 0
        assert job_b.skipped_rows == 5
        assert await _error_rows(async_session, job_b.id) == []
        assert await _stored_rows(async_session, job_b.id) == 0
        assert await _stored_rows(async_session) == 5

    async def test_utf8_source(self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]) -> None:
        csv_path = tse["csv"](tmp_path / "votacao.csv", tse["rows"](2), encoding="utf-8")
        job = await _make_job(async_session, csv_path)
        await _run(async_session, job, csv_path, 10)
        names = (await async_session.execute(select(CandidateVote.candidate_name))).scalars().all()
        assert set(names) == {"JOSÉ DA SILVA"}


class TestBatchFailure:
    async def test_storage_failure_isolated_to_batch(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        csv_path = tse["csv"](tmp_path / "votacao.csv", tse["rows"](9))
        job = await _make_job(async_session, csv_path)
        original = batch_service.persist_records
        calls = 0

        async def _flaky(session: AsyncSession, job_id: int, records: list) -> tuple[int, int]:
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("connection reset")
            return await original(session, job_id, records)

        with patch.object(batch_service, "persist_records", side_effect=_flaky):
            await _run(async_session, job, csv_path, 3)

        batches = await list_batches(async_session, job.id)
        assert [b.status for b in batches] == ["completed", "failed", "completed"]
        assert batches[1].error_summary == "RuntimeError: connection reset"
        assert batches[1].inserted_rows == 0
        assert job.processed_rows == 6
        assert await _stored_rows(async_session, job.id) == 6

        job.status = "completed"
        await async_session.commit()
        results = await reprocess_failed_batches(async_session, job.id, scheduler=ImportScheduler())

        assert [b.batch_index for b in results] == [1]
        assert results[0].status == "completed"
        assert results[0].inserted_rows == 3
        await async_session.refresh(job)
        assert job.processed_rows == 9
        assert await _stored_rows(async_session, job.id) == 9

    async def test_reprocess_is_idempotent(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        rows: list = tse["rows"](4)
        rows[1] = tse["fields"](candidate_number=2, votes="-1")
        csv_path = tse["csv"](tmp_path / "votacao.csv", rows)
        job = await _make_job(async_session, csv_path)
        await _run(async_session, job, csv_path, 4)
        batch = (await list_batches(async_session, job.id))[0]

        # Simulate a batch that failed after storing its rows
        batch.status = "failed"
        job.status = "completed"
        await async_session.commit()

        result = await reprocess_batch(async_session, job.id, batch.id, scheduler=ImportScheduler())

        assert result.status == "completed"
        assert result.inserted_rows == 3
        assert result.skipped_rows == 0
        assert result.error_count == 1
        assert await _stored_rows(async_session, job.id) == 3
        assert len(await _error_rows(async_session, job.id)) == 1
        await async_session.refresh(job)
        assert (job.processed_rows, job.error_count) == (3, 1)


class TestCancellation:
    async def test_cancel_mid_batch_keeps_stored_rows(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        csv_path = tse["csv"](tmp_path / "votacao.csv", tse["rows"](6))
        job = await _make_job(async_session, csv_path)
        batches = await plan_batches(async_session, job, csv_path, 6)

        with SourceReader(csv_path) as reader, pytest.raises(ImportCancelledError):
            await process_batch(async_session, job, batches[0], reader, _CancelAfter(2))

        assert batches[0].status == "failed"
        assert batches[0].error_summary == "Cancelled by operator after 2 of 6 rows"
        assert batches[0].inserted_rows == 2
        assert await _stored_rows(async_session, job.id) == 2
        assert job.processed_rows == 2

    async def test_cancel_between_batches(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        csv_path = tse["csv"](tmp_path / "votacao.csv", tse["rows"](4))
        job = await _make_job(async_session, csv_path)
        await plan_batches(async_session, job, csv_path, 2)
        token = CancellationToken()
        token.cancel()

        with SourceReader(csv_path) as reader, pytest.raises(ImportCancelledError, match="before batch 0"):
            await process_job_batches(async_session, job, reader, token)

        stats = await batch_stats(async_session, job.id)
        assert stats["pending"] == 2


class TestReprocessGuards:
    async def _failed_job(self, session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]) -> ImportJob:
        csv_path = tse["csv"](tmp_path / "votacao.csv", tse["rows"](4))
        job = await _make_job(session, csv_path)
        await _run(session, job, csv_path, 2)
        job.status = "completed"
        await session.commit()
        return job

    async def test_completed_batch_rejected(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        job = await self._failed_job(async_session, tmp_path, tse)
        batch = (await list_batches(async_session, job.id))[0]
        with pytest.raises(InvalidOperationError, match="only failed batches"):
            await reprocess_batch(async_session, job.id, batch.id, scheduler=ImportScheduler())

    async def test_batch_of_other_job(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        job = await self._failed_job(async_session, tmp_path, tse)
        batch = (await list_batches(async_session, job.id))[0]
        other = await _make_job(async_session, tmp_path / "other.csv", source_key="upload:other.csv", status="failed")
        with pytest.raises(BatchNotFoundError):
            await reprocess_batch(async_session, other.id, batch.id, scheduler=ImportScheduler())

    async def test_running_job_rejected(
        self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]
    ) -> None:
        job = await self._failed_job(async_session, tmp_path, tse)
        job.status = "running"
        await async_session.commit()
        with pytest.raises(InvalidOperationError, match="still running"):
            await reprocess_failed_batches(async_session, job.id, scheduler=ImportScheduler())

    async def test_missing_source(self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]) -> None:
        job = await self._failed_job(async_session, tmp_path, tse)
        batch = (await list_batches(async_session, job.id))[0]
        batch.status = "failed"
        await async_session.commit()
        Path(job.local_csv_path).unlink()
        with pytest.raises(SourceUnavailableError):
            await reprocess_batch(async_session, job.id, batch.id, scheduler=ImportScheduler())

    async def test_nothing_failed(self, async_session: AsyncSession, tmp_path: Path, tse: dict[str, Callable]) -> None:
        job = await self._failed_job(async_session, tmp_path, tse)
        assert await reprocess_failed_batches(async_session, job.id, scheduler=ImportScheduler()) == []


class TestReprocessReservation:
    async def test_restart_and_delete_rejected_while_reprocessing(
        self,
        async_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        tmp_path: Path,
        tse: dict[str, Callable],
    ) -> None:
        csv_path = tse["csv"](tmp_path / "votacao.csv", tse["rows"](4))
        job = await _make_job(
            async_session, csv_path, source_type="url", source_url=TSE_URL, source_key=f"url:{TSE_URL}"
        )
        await _run(async_session, job, csv_path, 4)
        batch = (await list_batches(async_session, job.id))[0]
        batch.status = "failed"
        job.status = "failed"
        await async_session.commit()

        scheduler = ImportScheduler()
        entered = asyncio.Event()
        release = asyncio.Event()
        original = batch_service.persist_records

        async def _slow(session: AsyncSession, job_id: int, records: list) -> tuple[int, int]:
            entered.set()
            await release.wait()
            return await original(session, job_id, records)

        with patch.object(batch_service, "persist_records", side_effect=_slow):
            task = asyncio.create_task(reprocess_batch(async_session, job.id, batch.id, scheduler=scheduler))
            await entered.wait()
            assert scheduler.is_active(job.id)
            async with session_factory() as other:
                with pytest.raises(InvalidOperationError):
                    await restart_import_job(other, job.id, scheduler=scheduler)
                with pytest.raises(InvalidOperationError):
                    await delete_import_job(other, job.id, scheduler=scheduler)
                with pytest.raises(InvalidOperationError):
                    await reprocess_batch(other, job.id, batch.id, scheduler=scheduler)
            release.set()
            result = await task

        assert result.status == "completed"
        assert result.inserted_rows == 4
        assert not scheduler.is_active(job.id)
        assert await _stored_rows(async_session, job.id) == 4
