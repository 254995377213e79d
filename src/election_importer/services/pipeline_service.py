"""Job pipeline: what the scheduler runs for one admitted import job.

acquisition -> batch planning -> batch processing -> completed/failed.
The runner owns the job's terminal transition: a cancellation ends in
``cancelled`` and any other exception in ``failed`` with the cause kept in
``error_message``.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from election_importer.core.config import Settings, get_settings
from election_importer.core.database import get_session_factory
from election_importer.core.scheduler import CancellationToken, ImportScheduler
from election_importer.core.scheduler import scheduler as default_scheduler
from election_importer.lib.importer.errors import ImportCancelledError
from election_importer.lib.importer.reader import SourceReader
from election_importer.lib.importer.states import (
    ACTIVE_STATUSES,
    BatchStatus,
    ImportStatus,
    can_transition,
    transition,
)
from election_importer.models.import_job import ImportJob
from election_importer.services.acquisition_service import acquire
from election_importer.services.batch_service import list_batches, plan_batches, process_job_batches
from election_importer.services.import_service import advance_status, commit_status

_ERROR_MESSAGE_MAX_LENGTH = 2000


async def finalize_job(session: AsyncSession, job: ImportJob) -> ImportJob:
    """Mark a job completed, or failed when every one of its batches failed.

    A job cancelled by an operator while its last batch ran stays cancelled.
    """
    batches = await list_batches(session, job.id)
    failed = sum(1 for b in batches if b.status == BatchStatus.FAILED)
    values: dict[str, Any] = {"completed_at": datetime.now(UTC)}
    if batches and failed == len(batches):
        target = ImportStatus.FAILED
        values["error_message"] = f"All {len(batches)} batches failed: {batches[-1].error_summary}"
    else:
        target = ImportStatus.COMPLETED
        if failed:
            values["status_message"] = f"{failed} of {len(batches)} batches failed; reprocess them to complete the import"
    if not await commit_status(session, job, target, **values):
        logger.info(f"Import job {job.id} became {job.status} before it could be marked {target}")
    return job


async def execute_job(
    session: AsyncSession,
    job: ImportJob,
    token: CancellationToken,
    settings: Settings,
) -> ImportJob:
    """Run a job from acquisition through its last batch.

    Returns:
        The job in ``completed``, ``failed`` or ``awaiting_selection`` status.

    Raises:
        ImportCancelledError: When cancellation is observed.
    """
    job.started_at = job.started_at or datetime.now(UTC)
    job.error_message = None
    await session.commit()

    result = await acquire(session, job, token, settings)
    if result.needs_selection:
        await advance_status(session, job, ImportStatus.AWAITING_SELECTION, available_files=result.members)
        return job
    assert result.csv_path is not None

    token.raise_if_cancelled()
    await advance_status(session, job, ImportStatus.RUNNING)

    with await asyncio.to_thread(SourceReader, result.csv_path) as reader:
        logger.info(f"Job {job.id}: processing {result.csv_path.name} ({reader.layout.name} layout)")
        await plan_batches(session, job, result.csv_path, settings.import_batch_size)
        await process_job_batches(session, job, reader, token)

    token.raise_if_cancelled()
    return await finalize_job(session, job)


async def _mark_terminal(session: AsyncSession, job: ImportJob, status: ImportStatus, message: str) -> None:
    await session.rollback()
    await session.refresh(job)
    if job.status == status or not can_transition(job.status, status):
        return
    await commit_status(
        session,
        job,
        status,
        error_message=message[:_ERROR_MESSAGE_MAX_LENGTH],
        completed_at=datetime.now(UTC),
    )


async def run_import_job(
    job_id: int,
    token: CancellationToken,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
) -> None:
    """Scheduler entry point: process one job in its own session."""
    settings = settings or get_settings()
    factory = session_factory or get_session_factory()
    with logger.contextualize(job_id=job_id):
        await _run_in_session(factory, job_id, token, settings)


async def _run_in_session(
    factory: async_sessionmaker[AsyncSession],
    job_id: int,
    token: CancellationToken,
    settings: Settings,
) -> None:
    async with factory() as session:
        job = await session.get(ImportJob, job_id)
        if job is None:
            logger.warning(f"Import job {job_id} vanished before it could run")
            return
        if job.status == ImportStatus.CANCELLED:
            logger.info(f"Import job {job_id} was cancelled while queued")
            return
        try:
            await execute_job(session, job, token, settings)
            logger.info(
                f"Import job {job_id} {job.status}: {job.processed_rows} processed, "
                f"{job.skipped_rows} skipped, {job.error_count} errors"
            )
        except ImportCancelledError as exc:
            logger.info(f"Import job {job_id} stopped: {exc}")
            await _mark_terminal(session, job, ImportStatus.CANCELLED, "Cancelled by operator")
        except Exception as exc:
            logger.exception(f"Import job {job_id} failed")
            await _mark_terminal(session, job, ImportStatus.FAILED, str(exc) or type(exc).__name__)


async def recover_interrupted_jobs(
    session: AsyncSession,
    *,
    scheduler: ImportScheduler = default_scheduler,
) -> tuple[int, int]:
    """Reconcile persisted jobs with an empty scheduler after process start.

    Jobs left downloading, extracting or running by a previous process are
    failed so they can be restarted; pending jobs are queued again in
    creation order.

    Returns:
        Tuple of (failed, requeued) counts.
    """
    result = await session.execute(
        select(ImportJob)
        .where(ImportJob.status.in_([s.value for s in (*ACTIVE_STATUSES, ImportStatus.PENDING)]))
        .order_by(ImportJob.created_at, ImportJob.id)
    )
    jobs = list(result.scalars().all())
    pending = []
    failed = 0
    for job in jobs:
        if job.status == ImportStatus.PENDING:
            pending.append(job.id)
            continue
        transition(job, ImportStatus.FAILED)
        job.error_message = "Interrupted by service restart"
        job.completed_at = datetime.now(UTC)
        failed += 1
    await session.commit()
    for job_id in pending:
        if not (scheduler.is_active(job_id) or scheduler.is_queued(job_id)):
            scheduler.submit(job_id)
    if failed or pending:
        logger.warning(f"Recovered import jobs: {failed} interrupted marked failed, {len(pending)} requeued")
    return failed, len(pending)
