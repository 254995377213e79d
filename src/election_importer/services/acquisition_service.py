"""Acquisition service: turns a job's source into a local CSV file.

URL sources are streamed to ``job-{id}/`` and extracted; uploaded ZIPs are
extracted; uploaded CSVs are used as-is. Byte counters are persisted while
the download runs so progress readers see them live.
"""

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from election_importer.core.config import Settings
from election_importer.core.scheduler import CancellationToken
from election_importer.lib.acquisition import (
    choose_member,
    extract_member,
    file_name_from_url,
    list_csv_members,
    stream_download,
)
from election_importer.lib.acquisition.archive import is_zip_path
from election_importer.lib.importer.errors import SourceUnavailableError
from election_importer.lib.importer.states import ImportStatus
from election_importer.models.import_job import ImportJob
from election_importer.services.file_service import job_directory
from election_importer.services.import_service import advance_status


@dataclass
class AcquisitionResult:
    """Where the job's rows can be read from.

    ``csv_path`` is ``None`` exactly when ``needs_selection`` is true, in
    which case ``members`` lists the archive's candidate files.
    """

    csv_path: Path | None
    needs_selection: bool = False
    members: list[str] = field(default_factory=list)


def _existing(path: str | None) -> Path | None:
    if path and Path(path).is_file():
        return Path(path)
    return None


async def download_source(
    session: AsyncSession,
    job: ImportJob,
    token: CancellationToken,
    settings: Settings,
) -> Path:
    """Stream a URL job's archive into its work directory.

    ``downloaded_bytes`` and ``file_size`` are committed at most every
    ``progress_update_interval`` seconds, and once more at the end.
    """
    assert job.source_url is not None
    await advance_status(session, job, ImportStatus.DOWNLOADING, downloaded_bytes=0, file_size=0)

    dest = job_directory(settings.import_work_path, job.id) / file_name_from_url(job.source_url)
    last_flush = time.monotonic()

    async def _on_progress(downloaded: int, total: int) -> None:
        nonlocal last_flush
        job.downloaded_bytes = downloaded
        job.file_size = total
        now = time.monotonic()
        if now - last_flush >= settings.progress_update_interval:
            last_flush = now
            await session.commit()
            logger.debug(f"Job {job.id}: downloaded {downloaded}/{total or '?'} bytes")

    result = await stream_download(
        job.source_url,
        dest,
        on_progress=_on_progress,
        should_cancel=lambda: token.cancelled,
        timeout=settings.download_timeout,
        chunk_size=settings.download_chunk_size,
        show_progress=settings.download_progress_bar,
    )
    job.downloaded_bytes = result.downloaded_bytes
    job.file_size = result.total_bytes or result.downloaded_bytes
    job.local_archive_path = str(result.local_path)
    await session.commit()
    return result.local_path


async def extract_source(
    session: AsyncSession,
    job: ImportJob,
    archive_path: Path,
    token: CancellationToken,
    settings: Settings,
) -> AcquisitionResult:
    """Pick and extract the archive member the job should import.

    Moves the job to ``extracting``. When the archive holds several
    candidate files and neither a selection nor a consolidated file
    resolves the choice, returns ``needs_selection`` without extracting.
    """
    await advance_status(session, job, ImportStatus.EXTRACTING)

    members = await asyncio.to_thread(list_csv_members, archive_path)
    member = choose_member(members, job.selected_file)
    if member is None:
        logger.info(f"Job {job.id}: archive has {len(members)} candidate files, awaiting selection")
        return AcquisitionResult(csv_path=None, needs_selection=True, members=members)

    dest_dir = job_directory(settings.import_work_path, job.id)
    csv_path = await asyncio.to_thread(
        extract_member, archive_path, member, dest_dir, should_cancel=lambda: token.cancelled
    )
    job.selected_file = member
    job.local_csv_path = str(csv_path)
    job.available_files = None
    await session.commit()
    logger.info(f"Job {job.id}: extracted {member} ({csv_path.stat().st_size} bytes)")
    return AcquisitionResult(csv_path=csv_path)


async def acquire(
    session: AsyncSession,
    job: ImportJob,
    token: CancellationToken,
    settings: Settings,
) -> AcquisitionResult:
    """Make the job's source rows available on local disk.

    A URL job reuses an archive already on disk (fan-out children,
    resumed selections) and downloads otherwise. Restarted jobs have their
    local paths cleared, so they always download from byte zero.

    Raises:
        DownloadError: On download failure.
        ArchiveError: On a corrupt archive or missing member.
        SourceUnavailableError: When an uploaded source is gone from disk.
        ImportCancelledError: When cancelled mid-download.
    """
    if job.source_type == "url":
        archive = _existing(job.local_archive_path)
        if archive is None and job.status == ImportStatus.AWAITING_SELECTION:
            msg = f"Downloaded archive for import job {job.id} is no longer available; restart the job"
            raise SourceUnavailableError(msg)
        if archive is None:
            archive = await download_source(session, job, token, settings)
        else:
            logger.info(f"Job {job.id}: reusing downloaded archive {archive}")
        token.raise_if_cancelled()
        return await extract_source(session, job, archive, token, settings)

    archive = _existing(job.local_archive_path)
    if archive is not None and is_zip_path(archive):
        return await extract_source(session, job, archive, token, settings)

    csv_path = _existing(job.local_csv_path)
    if csv_path is None:
        msg = f"Uploaded source file for import job {job.id} is no longer available"
        raise SourceUnavailableError(msg)
    return AcquisitionResult(csv_path=csv_path)
