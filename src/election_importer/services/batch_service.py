"""Batch processor: imports a job's rows one fixed-size batch at a time.

Each batch is one transaction: its candidate rows, its error records, its
own counters and the job's recomputed aggregates are committed together,
so observers see progress advance batch by batch in index order.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from election_importer.core.scheduler import CancellationToken, ImportScheduler
from election_importer.core.scheduler import scheduler as default_scheduler
from election_importer.lib.importer.batching import plan_ranges
from election_importer.lib.importer.errors import (
    BatchNotFoundError,
    ImportCancelledError,
    InvalidOperationError,
    JobNotFoundError,
    SourceUnavailableError,
)
from election_importer.lib.importer.parser import RowError, parse_row
from election_importer.lib.importer.reader import SourceReader, count_rows
from election_importer.lib.importer.states import ACTIVE_STATUSES, BatchStatus, ImportStatus, transition_batch
from election_importer.models.candidate_vote import CandidateVote
from election_importer.models.import_batch import ImportBatch
from election_importer.models.import_error import ImportRowError
from election_importer.models.import_job import ImportJob

# Rows per INSERT statement: ~23 columns * 500 rows stays well under
# asyncpg's 32,767 query-parameter limit
_INSERT_SUB_BATCH = 500

# Keys per IN (...) lookup
_LOOKUP_CHUNK = 5000

_SUMMARY_MAX_LENGTH = 1000

_FINISHED_BATCH_STATUSES = (BatchStatus.COMPLETED.value, BatchStatus.FAILED.value)


@dataclass
class _BatchCounts:
    read: int = 0
    inserted: int = 0
    skipped: int = 0
    errors: int = 0


def _insert(session: AsyncSession) -> Any:
    """Return the dialect's INSERT construct supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


def _error_record(job_id: int, error: RowError) -> ImportRowError:
    return ImportRowError(
        job_id=job_id,
        row_number=error.row_number,
        error_type=error.error_type.value,
        error_message=error.message,
        raw_data=error.raw_data,
    )


async def list_batches(session: AsyncSession, job_id: int) -> list[ImportBatch]:
    """Return a job's batches ordered by index."""
    result = await session.execute(
        select(ImportBatch).where(ImportBatch.job_id == job_id).order_by(ImportBatch.batch_index)
    )
    return list(result.scalars().all())


async def get_batch(session: AsyncSession, job_id: int, batch_id: int) -> ImportBatch:
    """Get a batch that belongs to ``job_id``.

    Raises:
        BatchNotFoundError: If the batch does not exist or belongs to another job.
    """
    batch = await session.get(ImportBatch, batch_id)
    if batch is None or batch.job_id != job_id:
        raise BatchNotFoundError(job_id, batch_id)
    return batch


async def batch_stats(session: AsyncSession, job_id: int) -> dict[str, int]:
    """Count a job's batches per status."""
    result = await session.execute(
        select(ImportBatch.status, func.count(ImportBatch.id))
        .where(ImportBatch.job_id == job_id)
        .group_by(ImportBatch.status)
    )
    stats = {status.value: 0 for status in BatchStatus}
    for status, count in result.all():
        stats[status] = count
    stats["total"] = sum(stats.values())
    return stats


async def refresh_job_counters(session: AsyncSession, job: ImportJob) -> None:
    """Recompute a job's aggregate counters from its finished batches."""
    row = (
        await session.execute(
            select(
                func.coalesce(func.sum(ImportBatch.inserted_rows), 0),
                func.coalesce(func.sum(ImportBatch.skipped_rows), 0),
                func.coalesce(func.sum(ImportBatch.error_count), 0),
            ).where(ImportBatch.job_id == job.id, ImportBatch.status.in_(_FINISHED_BATCH_STATUSES))
        )
    ).one()
    job.processed_rows, job.skipped_rows, job.error_count = (int(v) for v in row)


async def plan_batches(
    session: AsyncSession,
    job: ImportJob,
    csv_path: Path,
    batch_size: int,
) -> list[ImportBatch]:
    """Count the source's data rows and replace the job's batches with fresh ranges.

    Args:
        session: Database session.
        job: Job being processed.
        csv_path: Local CSV file.
        batch_size: Rows per batch.

    Returns:
        The new batches, ordered by index.
    """
    total = await asyncio.to_thread(count_rows, csv_path)
    await session.execute(delete(ImportBatch).where(ImportBatch.job_id == job.id))
    batches = [
        ImportBatch(
            job_id=job.id,
            batch_index=r.batch_index,
            row_start=r.row_start,
            row_end=r.row_end,
            total_rows=r.total_rows,
            status=BatchStatus.PENDING.value,
        )
        for r in plan_ranges(total, batch_size)
    ]
    session.add_all(batches)
    job.total_rows = total
    job.total_file_rows = total
    job.processed_rows = 0
    job.skipped_rows = 0
    job.error_count = 0
    await session.commit()
    logger.info(f"Job {job.id}: {total} data rows in {len(batches)} batches of up to {batch_size}")
    return batches


async def _existing_owners(session: AsyncSession, keys: list[str]) -> dict[str, tuple[int, int]]:
    """Map already-stored natural keys to the (job, source row) that wrote them."""
    owners: dict[str, tuple[int, int]] = {}
    for i in range(0, len(keys), _LOOKUP_CHUNK):
        chunk = keys[i : i + _LOOKUP_CHUNK]
        result = await session.execute(
            select(CandidateVote.natural_key, CandidateVote.import_job_id, CandidateVote.source_row).where(
                CandidateVote.natural_key.in_(chunk)
            )
        )
        for key, job_id, source_row in result.all():
            owners[key] = (job_id, source_row)
    return owners


async def persist_records(
    session: AsyncSession,
    job_id: int,
    records: list[tuple[int, dict[str, Any]]],
) -> tuple[int, int]:
    """Store parsed rows, deduplicating on ``natural_key``.

    A key already stored by this job for the same source row counts as
    processed, so re-running a range is idempotent. Any other existing
    key, or a key repeated within ``records``, counts as skipped.

    Args:
        session: Database session.
        job_id: Owning import job.
        records: ``(row_number, record)`` pairs from the parser.

    Returns:
        Tuple of (processed, skipped).
    """
    if not records:
        return 0, 0

    owners = await _existing_owners(session, list({r["natural_key"] for _, r in records}))
    processed = 0
    skipped = 0
    seen: set[str] = set()
    to_insert: list[dict[str, Any]] = []
    for row_number, record in records:
        key = record["natural_key"]
        if key in seen:
            skipped += 1
            continue
        seen.add(key)
        owner = owners.get(key)
        if owner is not None:
            if owner == (job_id, row_number):
                processed += 1
            else:
                skipped += 1
            continue
        to_insert.append({**record, "import_job_id": job_id, "source_row": row_number})

    insert = _insert(session)
    for i in range(0, len(to_insert), _INSERT_SUB_BATCH):
        chunk = to_insert[i : i + _INSERT_SUB_BATCH]
        stmt = (
            insert(CandidateVote)
            .values(chunk)
            .on_conflict_do_nothing(index_elements=["natural_key"])
            .returning(CandidateVote.natural_key)
        )
        inserted = len((await session.execute(stmt)).all())
        processed += inserted
        # Lost a race with a concurrent writer for the same key
        skipped += len(chunk) - inserted

    return processed, skipped


async def _fail_batch(session: AsyncSession, job: ImportJob, batch: ImportBatch, exc: Exception) -> None:
    await session.rollback()
    await session.refresh(batch)
    await session.refresh(job)
    batch.processed_rows = 0
    batch.inserted_rows = 0
    batch.skipped_rows = 0
    batch.error_count = 0
    transition_batch(batch, BatchStatus.FAILED)
    batch.error_summary = f"{type(exc).__name__}: {exc}"[:_SUMMARY_MAX_LENGTH]
    batch.completed_at = datetime.now(UTC)
    await refresh_job_counters(session, job)
    await session.commit()


async def process_batch(
    session: AsyncSession,
    job: ImportJob,
    batch: ImportBatch,
    reader: SourceReader,
    token: CancellationToken | None = None,
) -> ImportBatch:
    """Import the rows of one batch.

    Row-level problems become ``import_errors`` records and never stop the
    batch. A storage failure rolls the batch back and marks it ``failed``
    with an ``error_summary``; the exception is not propagated so sibling
    batches continue. Cancellation commits what the batch already stored,
    marks it ``failed`` and raises.

    Args:
        session: Database session.
        job: Owning job.
        batch: A ``pending`` or ``failed`` batch.
        reader: Open reader over the job's CSV.
        token: Cancellation token checked before every row.

    Returns:
        The updated batch.

    Raises:
        ImportCancelledError: If cancellation was observed mid-batch.
    """
    transition_batch(batch, BatchStatus.PROCESSING)
    batch.started_at = datetime.now(UTC)
    batch.completed_at = None
    batch.error_summary = None
    batch.processed_rows = 0
    batch.inserted_rows = 0
    batch.skipped_rows = 0
    batch.error_count = 0
    await session.commit()

    counts = _BatchCounts()
    cancelled = False
    pending: list[tuple[int, dict[str, Any]]] = []
    layout = reader.layout

    try:
        for row in reader.rows(batch.row_start, batch.row_end):
            if token is not None and token.cancelled:
                cancelled = True
                break
            counts.read += 1
            if row.error is not None:
                session.add(_error_record(job.id, row.error))
                counts.errors += 1
                continue
            assert row.fields is not None
            outcome = parse_row(
                row.fields,
                row_number=row.row_number,
                layout=layout,
                cargo_filter=job.cargo_filter,
                raw=row.raw,
            )
            if outcome.filtered:
                counts.skipped += 1
            elif outcome.error is not None:
                session.add(_error_record(job.id, outcome.error))
                counts.errors += 1
            else:
                assert outcome.record is not None
                pending.append((row.row_number, outcome.record))
                if len(pending) >= _INSERT_SUB_BATCH:
                    processed, skipped = await persist_records(session, job.id, pending)
                    counts.inserted += processed
                    counts.skipped += skipped
                    pending = []
        processed, skipped = await persist_records(session, job.id, pending)
        counts.inserted += processed
        counts.skipped += skipped
    except Exception as exc:
        logger.error(f"Job {job.id}: batch {batch.batch_index} failed: {exc}")
        await _fail_batch(session, job, batch, exc)
        return batch

    batch.processed_rows = counts.read
    batch.inserted_rows = counts.inserted
    batch.skipped_rows = counts.skipped
    batch.error_count = counts.errors
    batch.completed_at = datetime.now(UTC)
    if cancelled:
        transition_batch(batch, BatchStatus.FAILED)
        batch.error_summary = f"Cancelled by operator after {counts.read} of {batch.total_rows} rows"
    else:
        transition_batch(batch, BatchStatus.COMPLETED)
    await refresh_job_counters(session, job)
    await session.commit()

    logger.info(
        f"Job {job.id}: batch {batch.batch_index} {batch.status} "
        f"rows [{batch.row_start}, {batch.row_end}): {counts.inserted} inserted, "
        f"{counts.skipped} skipped, {counts.errors} errors"
    )
    if cancelled:
        msg = f"Import job {job.id} cancelled during batch {batch.batch_index}"
        raise ImportCancelledError(msg)
    return batch


async def process_job_batches(
    session: AsyncSession,
    job: ImportJob,
    reader: SourceReader,
    token: CancellationToken | None = None,
) -> list[ImportBatch]:
    """Process a job's pending batches strictly in index order.

    Raises:
        ImportCancelledError: If cancellation is observed between or within batches.
    """
    batches = await list_batches(session, job.id)
    for batch in batches:
        # A failed sibling rolls the session back and expires every instance
        await session.refresh(batch)
        if batch.status != BatchStatus.PENDING:
            continue
        if token is not None:
            token.raise_if_cancelled(f"Import job {job.id} cancelled before batch {batch.batch_index}")
        await process_batch(session, job, batch, reader, token)
    return batches


def _require_source(job: ImportJob) -> Path:
    if not job.local_csv_path or not Path(job.local_csv_path).is_file():
        msg = (
            f"Source CSV for import job {job.id} is no longer on disk; "
            "restart the job to download it again"
        )
        raise SourceUnavailableError(msg)
    return Path(job.local_csv_path)


async def _load_idle_job(session: AsyncSession, job_id: int, scheduler: ImportScheduler) -> ImportJob:
    job = await session.get(ImportJob, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    if scheduler.is_active(job_id) or scheduler.is_queued(job_id) or ImportStatus(job.status) in ACTIVE_STATUSES:
        msg = f"Import job {job_id} is still {job.status}; wait for it to finish before reprocessing"
        raise InvalidOperationError(msg)
    return job


def _in_batch(job_id: int, batch: ImportBatch) -> tuple[Any, ...]:
    # Row numbers are 1-based, batch ranges 0-based and half-open
    return (
        ImportRowError.job_id == job_id,
        ImportRowError.row_number > batch.row_start,
        ImportRowError.row_number <= batch.row_end,
    )


async def list_batch_errors(session: AsyncSession, batch: ImportBatch) -> list[ImportRowError]:
    """Return the error records of the rows a batch covers, by row number."""
    result = await session.execute(
        select(ImportRowError).where(*_in_batch(batch.job_id, batch)).order_by(ImportRowError.row_number)
    )
    return list(result.scalars().all())


async def _reset_batch_errors(session: AsyncSession, job_id: int, batch: ImportBatch) -> None:
    await session.execute(delete(ImportRowError).where(*_in_batch(job_id, batch)))


async def reprocess_batch(
    session: AsyncSession,
    job_id: int,
    batch_id: int,
    *,
    scheduler: ImportScheduler = default_scheduler,
) -> ImportBatch:
    """Re-run one failed batch in isolation.

    The batch's previous error records are removed, its counters reset, and
    the job's aggregates recomputed afterwards. Sibling batches are untouched.

    Raises:
        JobNotFoundError: If the job does not exist.
        BatchNotFoundError: If the batch does not belong to the job.
        InvalidOperationError: If the job is active or the batch is not failed.
        SourceUnavailableError: If the extracted CSV is gone.
    """
    job = await _load_idle_job(session, job_id, scheduler)
    with scheduler.reserve(job_id):
        batch = await get_batch(session, job_id, batch_id)
        if batch.status != BatchStatus.FAILED:
            msg = f"Batch {batch_id} is {batch.status}; only failed batches can be reprocessed"
            raise InvalidOperationError(msg)
        csv_path = _require_source(job)

        logger.info(f"Job {job_id}: reprocessing batch {batch.batch_index}")
        await _reset_batch_errors(session, job_id, batch)
        with await asyncio.to_thread(SourceReader, csv_path) as reader:
            return await process_batch(session, job, batch, reader)


async def reprocess_failed_batches(
    session: AsyncSession,
    job_id: int,
    *,
    scheduler: ImportScheduler = default_scheduler,
) -> list[ImportBatch]:
    """Reprocess every failed batch of a job in index order.

    Returns:
        The reprocessed batches (empty when none had failed).
    """
    job = await _load_idle_job(session, job_id, scheduler)
    with scheduler.reserve(job_id):
        failed = [b for b in await list_batches(session, job_id) if b.status == BatchStatus.FAILED]
        if not failed:
            return []
        csv_path = _require_source(job)

        logger.info(f"Job {job_id}: reprocessing {len(failed)} failed batches")
        results = []
        with await asyncio.to_thread(SourceReader, csv_path) as reader:
            for batch in failed:
                await session.refresh(batch)
                await _reset_batch_errors(session, job_id, batch)
                results.append(await process_batch(session, job, batch, reader))
    for batch in results:
        await session.refresh(batch)
    return results
