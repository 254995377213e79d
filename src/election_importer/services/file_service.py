"""File custodian: lists and deletes temporary import artifacts.

Each job owns ``{work_dir}/job-{id}`` (downloaded archive, extracted CSV,
stored upload). In-flight uploads land in the shared ``uploads`` bucket
before their job exists. Nothing here touches database rows.
"""

import re
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from loguru import logger

from election_importer.core.scheduler import ImportScheduler
from election_importer.core.scheduler import scheduler as default_scheduler
from election_importer.lib.importer.errors import FileGroupNotFoundError, FilesInUseError, InvalidOperationError

UPLOADS_BUCKET = "uploads"

_JOB_DIR_RE = re.compile(r"^job-(\d+)$")


@dataclass
class FileInfo:
    name: str
    size: int
    modified_at: datetime


@dataclass
class FileGroup:
    """Temporary files owned by one job or by the uploads bucket."""

    directory: Path
    job_id: int | None = None
    bucket: str | None = None
    files: list[FileInfo] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)


def job_directory(work_dir: Path, job_id: int) -> Path:
    return work_dir / f"job-{job_id}"


def uploads_directory(work_dir: Path) -> Path:
    return work_dir / UPLOADS_BUCKET


def _scan(directory: Path) -> list[FileInfo]:
    files = []
    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue
        stat = path.stat()
        files.append(
            FileInfo(
                name=path.relative_to(directory).as_posix(),
                size=stat.st_size,
                modified_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            )
        )
    return files


def list_file_groups(work_dir: Path) -> list[FileGroup]:
    """List temporary file groups, job directories first (by id), uploads last.

    Args:
        work_dir: Import working directory.

    Returns:
        One FileGroup per job directory plus the uploads bucket when present.
    """
    if not work_dir.is_dir():
        return []
    groups: list[FileGroup] = []
    for path in work_dir.iterdir():
        match = _JOB_DIR_RE.match(path.name)
        if match and path.is_dir():
            groups.append(FileGroup(directory=path, job_id=int(match.group(1)), files=_scan(path)))
    groups.sort(key=lambda g: g.job_id or 0)
    uploads = uploads_directory(work_dir)
    if uploads.is_dir():
        groups.append(FileGroup(directory=uploads, bucket=UPLOADS_BUCKET, files=_scan(uploads)))
    return groups


def delete_file_group(
    work_dir: Path,
    target: str | int,
    *,
    scheduler: ImportScheduler = default_scheduler,
    keep_newer_than: float = 0,
) -> FileGroup:
    """Delete a job's temporary directory or empty the uploads bucket.

    Uploads modified within the last ``keep_newer_than`` seconds are kept,
    since a request may still be streaming into them.

    Args:
        work_dir: Import working directory.
        target: A job id, or ``"uploads"``.
        scheduler: Scheduler consulted for active jobs.
        keep_newer_than: Grace period in seconds for files in the uploads bucket.

    Returns:
        The FileGroup holding the files that were deleted.

    Raises:
        InvalidOperationError: If ``target`` is neither a job id nor ``uploads``.
        FilesInUseError: If the job is currently active.
        FileGroupNotFoundError: If the directory does not exist.
    """
    if str(target) == UPLOADS_BUCKET:
        directory = uploads_directory(work_dir)
        if not directory.is_dir():
            msg = "Uploads bucket does not exist"
            raise FileGroupNotFoundError(msg)
        cutoff = datetime.now(UTC) - timedelta(seconds=keep_newer_than)
        stale = [f for f in _scan(directory) if f.modified_at <= cutoff]
        for info in stale:
            (directory / info.name).unlink(missing_ok=True)
        group = FileGroup(directory=directory, bucket=UPLOADS_BUCKET, files=stale)
        logger.info(f"Emptied uploads bucket ({len(stale)} files, {group.total_size} bytes)")
        return group

    try:
        job_id = int(target)
    except ValueError as exc:
        msg = f"Unknown file group '{target}': expected a job id or '{UPLOADS_BUCKET}'"
        raise InvalidOperationError(msg) from exc

    if scheduler.is_active(job_id):
        msg = f"Import job {job_id} is still processing; cancel it before deleting its files"
        raise FilesInUseError(msg)

    directory = job_directory(work_dir, job_id)
    if not directory.is_dir():
        msg = f"No temporary files for import job {job_id}"
        raise FileGroupNotFoundError(msg)
    group = FileGroup(directory=directory, job_id=job_id, files=_scan(directory))
    shutil.rmtree(directory)
    logger.info(f"Deleted temporary files of import job {job_id} ({len(group.files)} files, {group.total_size} bytes)")
    return group
