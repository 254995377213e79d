"""Import service: job creation, duplicate detection and operator actions.

Operator actions (cancel, restart, select files, delete) validate the
job's state first and raise without changing anything when the action is
not allowed. Scheduling goes through the process-wide ImportScheduler.
"""

import shutil
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from election_importer.core.config import Settings
from election_importer.core.scheduler import ImportScheduler
from election_importer.core.scheduler import scheduler as default_scheduler
from election_importer.lib.acquisition import file_name_from_url, validate_source_url
from election_importer.lib.acquisition.archive import is_zip_path
from election_importer.lib.importer.errors import (
    ImportAlreadyCompletedError,
    ImportCancelledError,
    ImportInProgressError,
    InvalidOperationError,
    InvalidSourceError,
    InvalidTransitionError,
    JobNotFoundError,
)
from election_importer.lib.importer.states import (
    ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    RESTARTABLE_STATUSES,
    ImportStatus,
    ValidationStatus,
    can_transition,
    transition,
)
from election_importer.models.candidate_vote import CandidateVote
from election_importer.models.import_batch import ImportBatch
from election_importer.models.import_error import ImportRowError
from election_importer.models.import_job import ImportJob
from election_importer.services.file_service import job_directory

# Statuses that block a new job for the same source and filters
_BLOCKING_STATUSES = tuple(s.value for s in (*CANCELLABLE_STATUSES, ImportStatus.COMPLETED))


async def commit_status(
    session: AsyncSession,
    job: ImportJob,
    target: ImportStatus,
    *,
    expected: Iterable[ImportStatus] | None = None,
    **values: Any,
) -> bool:
    """Move a job to ``target`` unless another session changed its status first.

    The row is only updated while its stored status is still one of
    ``expected`` (by default the status this session last loaded), so a
    cancel committed by an operator is never overwritten by a runner
    holding a stale copy. Other pending changes on ``job`` are flushed in
    the same transaction; ``values`` are written only with the status.

    Returns:
        Whether the status was changed. ``job`` is refreshed either way.

    Raises:
        InvalidTransitionError: If ``target`` is not reachable from the loaded status.
    """
    current = ImportStatus(job.status)
    if not can_transition(current, target):
        raise InvalidTransitionError("import job", current.value, target.value)
    allowed = [s.value for s in (expected or (current,))]
    await session.flush()
    result = await session.execute(
        update(ImportJob)
        .where(ImportJob.id == job.id, ImportJob.status.in_(allowed))
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    await session.refresh(job)
    return result.rowcount == 1


async def advance_status(session: AsyncSession, job: ImportJob, target: ImportStatus, **values: Any) -> None:
    """Move a running job to its next phase, stopping if it was cancelled meanwhile.

    Raises:
        ImportCancelledError: If the job left its loaded status in another session.
    """
    if not await commit_status(session, job, target, **values):
        msg = f"Import job {job.id} became {job.status} before {target}"
        raise ImportCancelledError(msg)


def build_source_key(source_type: str, source: str, selected_file: str | None = None) -> str:
    """Build the source half of the duplicate-detection key.

    URL sources are keyed by URL, uploads by file name. A chosen archive
    member is appended so each member of a multi-file archive is its own
    source.
    """
    key = f"{source_type}:{source}"
    if selected_file:
        key = f"{key}#{selected_file}"
    return key


async def find_existing_import(
    session: AsyncSession,
    *,
    source_key: str,
    election_year: int | None,
    region: str | None,
    cargo_filter: int | None,
    exclude_job_id: int | None = None,
) -> ImportJob | None:
    """Find a completed or in-flight job for the same source and filters.

    Failed and cancelled jobs never block a new submission.
    """
    query = select(ImportJob).where(
        ImportJob.source_key == source_key,
        ImportJob.election_year.is_not_distinct_from(election_year),
        ImportJob.region.is_not_distinct_from(region),
        ImportJob.cargo_filter.is_not_distinct_from(cargo_filter),
        ImportJob.status.in_(_BLOCKING_STATUSES),
    )
    if exclude_job_id is not None:
        query = query.where(ImportJob.id != exclude_job_id)
    query = query.order_by(ImportJob.created_at.desc(), ImportJob.id.desc()).limit(1)
    return (await session.execute(query)).scalars().first()


def _raise_duplicate(existing: ImportJob) -> None:
    if existing.status == ImportStatus.COMPLETED:
        msg = f"This file was already imported with the same filters (import job {existing.id})"
        raise ImportAlreadyCompletedError(msg, existing.id)
    msg = f"An import of this file with the same filters is in progress (import job {existing.id}, {existing.status})"
    raise ImportInProgressError(msg, existing.id)


async def check_duplicate_import(
    session: AsyncSession,
    *,
    source_key: str,
    election_year: int | None,
    region: str | None,
    cargo_filter: int | None,
    exclude_job_id: int | None = None,
) -> None:
    """Reject a submission whose source and filters match an existing job.

    Raises:
        ImportAlreadyCompletedError: A completed job exists.
        ImportInProgressError: A pending or running job exists.
    """
    existing = await find_existing_import(
        session,
        source_key=source_key,
        election_year=election_year,
        region=region,
        cargo_filter=cargo_filter,
        exclude_job_id=exclude_job_id,
    )
    if existing is not None:
        _raise_duplicate(existing)


async def create_import_job(
    session: AsyncSession,
    *,
    file_name: str,
    source_type: str,
    source_key: str,
    source_url: str | None = None,
    file_size: int = 0,
    election_year: int | None = None,
    region: str | None = None,
    cargo_filter: int | None = None,
    selected_file: str | None = None,
    parent_job_id: int | None = None,
    local_archive_path: str | None = None,
) -> ImportJob:
    """Create a new pending import job after the duplicate check.

    Returns:
        The created ImportJob.
    """
    region = region.upper() if region else None
    await check_duplicate_import(
        session,
        source_key=source_key,
        election_year=election_year,
        region=region,
        cargo_filter=cargo_filter,
    )
    job = ImportJob(
        file_name=file_name,
        source_type=source_type,
        source_url=source_url,
        source_key=source_key,
        file_size=file_size,
        election_year=election_year,
        region=region,
        cargo_filter=cargo_filter,
        selected_file=selected_file,
        parent_job_id=parent_job_id,
        local_archive_path=local_archive_path,
        status=ImportStatus.PENDING.value,
    )
    session.add(job)
    await session.commit()
    await session.refresh(job)
    logger.info(f"Created import job {job.id} for {source_key}")
    return job


async def create_url_import(
    session: AsyncSession,
    url: str,
    settings: Settings,
    *,
    election_year: int | None = None,
    region: str | None = None,
    cargo_filter: int | None = None,
    selected_file: str | None = None,
) -> ImportJob:
    """Validate a source URL and create its job.

    Raises:
        InvalidSourceError: If the URL is not an allowed HTTPS ``.zip`` URL.
        DuplicateImportError: If the source was already imported or is in progress.
    """
    url = url.strip()
    validate_source_url(url, settings.import_allowed_domain_list)
    return await create_import_job(
        session,
        file_name=file_name_from_url(url),
        source_type="url",
        source_url=url,
        source_key=build_source_key("url", url, selected_file),
        election_year=election_year,
        region=region,
        cargo_filter=cargo_filter,
        selected_file=selected_file,
    )


async def create_upload_import(
    session: AsyncSession,
    stored_path: Path,
    file_name: str,
    settings: Settings,
    *,
    election_year: int | None = None,
    region: str | None = None,
    cargo_filter: int | None = None,
    selected_file: str | None = None,
) -> ImportJob:
    """Create a job for a file already written to local storage.

    The file is moved into the job's work directory once the job exists.

    Raises:
        InvalidSourceError: If the file is empty or not a CSV/TXT/ZIP file.
        DuplicateImportError: If the source was already imported or is in progress.
    """
    name = PurePosixPath(file_name).name
    if not name.lower().endswith((".csv", ".txt", ".zip")):
        msg = "Only .csv, .txt or .zip files can be imported"
        raise InvalidSourceError(msg)
    size = stored_path.stat().st_size
    if size == 0:
        msg = "Uploaded file is empty"
        raise InvalidSourceError(msg)

    job = await create_import_job(
        session,
        file_name=name,
        source_type="upload",
        source_key=build_source_key("upload", name, selected_file),
        file_size=size,
        election_year=election_year,
        region=region,
        cargo_filter=cargo_filter,
        selected_file=selected_file,
    )
    dest_dir = job_directory(settings.import_work_path, job.id)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / name
    shutil.move(str(stored_path), dest)
    if is_zip_path(dest):
        job.local_archive_path = str(dest)
    else:
        job.local_csv_path = str(dest)
    job.downloaded_bytes = size
    await session.commit()
    return job


def submit_import_job(job: ImportJob, scheduler: ImportScheduler = default_scheduler) -> int:
    """Hand a pending job to the scheduler and return its queue position."""
    return scheduler.submit(job.id)


async def get_import_job(session: AsyncSession, job_id: int) -> ImportJob | None:
    """Get an import job by ID.

    Args:
        session: Database session.
        job_id: The import job ID.

    Returns:
        The ImportJob or None if not found.
    """
    return await session.get(ImportJob, job_id)


async def require_import_job(session: AsyncSession, job_id: int) -> ImportJob:
    """Get an import job by ID or raise JobNotFoundError."""
    job = await session.get(ImportJob, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


async def list_import_jobs(
    session: AsyncSession,
    *,
    status: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[ImportJob], int]:
    """List import jobs, newest first.

    Args:
        session: Database session.
        status: Filter by status.
        page: Page number.
        page_size: Items per page.

    Returns:
        Tuple of (jobs, total count).
    """
    query = select(ImportJob)
    count_query = select(func.count(ImportJob.id))
    if status:
        status = ImportStatus(status).value
        query = query.where(ImportJob.status == status)
        count_query = count_query.where(ImportJob.status == status)

    total = (await session.execute(count_query)).scalar_one()
    offset = (page - 1) * page_size
    query = query.order_by(ImportJob.created_at.desc(), ImportJob.id.desc()).offset(offset).limit(page_size)
    result = await session.execute(query)
    return list(result.scalars().all()), total


async def list_import_errors(
    session: AsyncSession,
    job_id: int,
    *,
    error_type: str | None = None,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[ImportRowError], int]:
    """List a job's error records ordered by source row.

    Returns:
        Tuple of (errors, total count).
    """
    query = select(ImportRowError).where(ImportRowError.job_id == job_id)
    count_query = select(func.count(ImportRowError.id)).where(ImportRowError.job_id == job_id)
    if error_type:
        query = query.where(ImportRowError.error_type == error_type)
        count_query = count_query.where(ImportRowError.error_type == error_type)

    total = (await session.execute(count_query)).scalar_one()
    offset = (page - 1) * page_size
    query = query.order_by(ImportRowError.row_number, ImportRowError.id).offset(offset).limit(page_size)
    result = await session.execute(query)
    return list(result.scalars().all()), total


async def export_error_records(session: AsyncSession, job_id: int) -> list[dict[str, Any]]:
    """Return all of a job's error records as plain dicts for CSV export."""
    result = await session.execute(
        select(ImportRowError).where(ImportRowError.job_id == job_id).order_by(ImportRowError.row_number, ImportRowError.id)
    )
    return [
        {
            "row_number": e.row_number,
            "error_type": e.error_type,
            "error_message": e.error_message,
            "raw_data": e.raw_data,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in result.scalars().all()
    ]


async def cancel_import_job(
    session: AsyncSession,
    job_id: int,
    *,
    scheduler: ImportScheduler = default_scheduler,
) -> ImportJob:
    """Cancel a job that has not reached a terminal status.

    A queued job leaves the queue. An active job's runner observes the
    cancellation at its next row or chunk; rows it already stored stay.

    Raises:
        JobNotFoundError: If the job does not exist.
        InvalidOperationError: If the job is already completed, failed or cancelled.
    """
    job = await require_import_job(session, job_id)
    if ImportStatus(job.status) not in CANCELLABLE_STATUSES:
        msg = f"Import job {job_id} is {job.status} and cannot be cancelled"
        raise InvalidOperationError(msg)

    scheduler.cancel(job_id)
    cancelled = await commit_status(
        session,
        job,
        ImportStatus.CANCELLED,
        expected=CANCELLABLE_STATUSES,
        completed_at=datetime.now(UTC),
        error_message="Cancelled by operator",
    )
    if not cancelled:
        msg = f"Import job {job_id} is {job.status} and cannot be cancelled"
        raise InvalidOperationError(msg)
    logger.info(f"Cancelled import job {job_id}")
    return job


async def _clear_job_data(session: AsyncSession, job_id: int) -> None:
    await session.execute(delete(CandidateVote).where(CandidateVote.import_job_id == job_id))
    await session.execute(delete(ImportRowError).where(ImportRowError.job_id == job_id))
    await session.execute(delete(ImportBatch).where(ImportBatch.job_id == job_id))


async def restart_import_job(
    session: AsyncSession,
    job_id: int,
    *,
    scheduler: ImportScheduler = default_scheduler,
) -> ImportJob:
    """Re-run a failed or cancelled URL job from a fresh download.

    The job's imported rows, error records and batches are removed, its
    counters reset, and it re-enters the back of the queue.

    Raises:
        JobNotFoundError: If the job does not exist.
        InvalidOperationError: If the job is upload-sourced or not failed/cancelled.
        DuplicateImportError: If another job now covers the same source and filters.
    """
    job = await require_import_job(session, job_id)
    if job.source_type != "url":
        msg = "Only URL imports can be restarted; upload the file again instead"
        raise InvalidOperationError(msg)
    if ImportStatus(job.status) not in RESTARTABLE_STATUSES or scheduler.is_active(job_id):
        msg = f"Import job {job_id} is {job.status}; only failed or cancelled jobs can be restarted"
        raise InvalidOperationError(msg)
    await check_duplicate_import(
        session,
        source_key=job.source_key,
        election_year=job.election_year,
        region=job.region,
        cargo_filter=job.cargo_filter,
        exclude_job_id=job.id,
    )

    with scheduler.reserve(job_id):
        await _clear_job_data(session, job_id)
        transition(job, ImportStatus.PENDING)
        job.downloaded_bytes = 0
        job.file_size = 0
        job.total_rows = None
        job.total_file_rows = None
        job.processed_rows = 0
        job.skipped_rows = 0
        job.error_count = 0
        job.error_message = None
        job.status_message = None
        job.available_files = None
        job.local_archive_path = None
        job.local_csv_path = None
        job.started_at = None
        job.completed_at = None
        job.validation_status = ValidationStatus.NOT_RUN.value
        job.validation_message = None
        job.validated_at = None
        await session.commit()

    position = scheduler.submit(job_id)
    logger.info(f"Restarted import job {job_id} (queue position {position})")
    return job


async def select_import_files(
    session: AsyncSession,
    job_id: int,
    *,
    file_name: str | None = None,
    import_all: bool = False,
    scheduler: ImportScheduler = default_scheduler,
) -> tuple[ImportJob, list[ImportJob]]:
    """Resolve a job waiting for an archive member choice.

    With ``file_name`` the job itself is re-queued and resumes at
    extraction. With ``import_all`` one child job per member is created and
    queued, each reusing the downloaded archive; members already imported
    or in progress are skipped, and the parent completes.

    Returns:
        Tuple of (job, created child jobs).

    Raises:
        JobNotFoundError: If the job does not exist.
        InvalidOperationError: If the job is not awaiting selection or the
            file is not one of the archive members.
    """
    job = await require_import_job(session, job_id)
    if job.status != ImportStatus.AWAITING_SELECTION:
        msg = f"Import job {job_id} is {job.status}, not awaiting file selection"
        raise InvalidOperationError(msg)
    members: list[str] = list(job.available_files or [])

    if not import_all:
        if not file_name:
            msg = "Choose a file or import all files"
            raise InvalidOperationError(msg)
        match = next((m for m in members if m == file_name or PurePosixPath(m).name == file_name), None)
        if match is None:
            msg = f"File '{file_name}' is not in the archive"
            raise InvalidOperationError(msg)
        job.selected_file = match
        await session.commit()
        scheduler.submit(job_id)
        logger.info(f"Import job {job_id}: selected {match}")
        return job, []

    source = job.source_url if job.source_type == "url" else job.file_name
    children: list[ImportJob] = []
    skipped: list[str] = []
    for member in members:
        key = build_source_key(job.source_type, source or job.file_name, member)
        existing = await find_existing_import(
            session,
            source_key=key,
            election_year=job.election_year,
            region=job.region,
            cargo_filter=job.cargo_filter,
        )
        if existing is not None:
            skipped.append(PurePosixPath(member).name)
            continue
        child = ImportJob(
            file_name=PurePosixPath(member).name,
            source_type=job.source_type,
            source_url=job.source_url,
            source_key=key,
            file_size=job.file_size,
            election_year=job.election_year,
            region=job.region,
            cargo_filter=job.cargo_filter,
            selected_file=member,
            parent_job_id=job.id,
            local_archive_path=job.local_archive_path,
            status=ImportStatus.PENDING.value,
        )
        session.add(child)
        children.append(child)
    await session.flush()

    transition(job, ImportStatus.COMPLETED)
    job.completed_at = datetime.now(UTC)
    job.available_files = None
    message = f"Split into {len(children)} import jobs: {', '.join(str(c.id) for c in children)}"
    if skipped:
        message += f"; skipped already imported: {', '.join(skipped)}"
    job.status_message = message
    await session.commit()

    for child in children:
        # Load server-side defaults (created_at)
        await session.refresh(child)
        scheduler.submit(child.id)
    logger.info(f"Import job {job_id}: {message}")
    return job, children


async def delete_import_job(
    session: AsyncSession,
    job_id: int,
    *,
    scheduler: ImportScheduler = default_scheduler,
) -> None:
    """Delete a job with its batches, error records and imported rows.

    Temporary files are left to the file custodian.

    Raises:
        JobNotFoundError: If the job does not exist.
        InvalidOperationError: If the job is actively processing.
    """
    job = await require_import_job(session, job_id)
    if scheduler.is_active(job_id) or ImportStatus(job.status) in ACTIVE_STATUSES:
        msg = f"Import job {job_id} is {job.status}; cancel it before deleting"
        raise InvalidOperationError(msg)
    if scheduler.is_queued(job_id):
        scheduler.cancel(job_id)

    with scheduler.reserve(job_id):
        await _clear_job_data(session, job_id)
        await session.execute(delete(ImportJob).where(ImportJob.id == job_id))
        await session.commit()
    logger.info(f"Deleted import job {job_id}")
