"""Derived progress metrics for import jobs.

Speed, ETA and percentage are never stored; they are computed at read time
from the persisted counters and timestamps so they cannot drift.
"""

import enum
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from election_importer.lib.importer.states import ImportStatus


class ImportOutcome(enum.StrEnum):
    """How a completed job should be reported."""

    IMPORTED = "imported"
    SPLIT = "split"
    ALREADY_IMPORTED = "already_imported"
    EMPTY = "empty"


@dataclass
class ProgressSnapshot:
    """Point-in-time progress of one job."""

    status: str
    percent: float | None
    is_indeterminate: bool
    rows_done: int
    rows_per_second: float | None
    eta_seconds: float | None
    elapsed_seconds: float | None
    outcome: ImportOutcome | None = None


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def completion_outcome(processed_rows: int, skipped_rows: int, total_rows: int | None) -> ImportOutcome:
    """Distinguish a pure re-import from an empty file and a normal import.

    A completed job that never counted rows handed its archive members to
    child jobs. Rows dropped by the cargo filter are counted as skipped, so a
    file whose rows were all filtered out is also reported as
    ``already_imported``: nothing new was stored from it.
    """
    if total_rows is None:
        return ImportOutcome.SPLIT
    if not total_rows:
        return ImportOutcome.EMPTY
    if processed_rows == 0 and skipped_rows > 0:
        return ImportOutcome.ALREADY_IMPORTED
    return ImportOutcome.IMPORTED


def compute_progress(job: Any, now: datetime | None = None) -> ProgressSnapshot:
    """Compute progress for ``job`` as of ``now``.

    Args:
        job: An ImportJob (or any object with the same counter attributes).
        now: Reference time; defaults to the current UTC time.

    Returns:
        ProgressSnapshot. ``eta_seconds`` is ``None`` whenever speed is zero
        or unknown, and ``percent`` is ``None`` while progress is
        indeterminate.
    """
    now = _as_utc(now) or datetime.now(UTC)
    status = ImportStatus(job.status)
    rows_done = (job.processed_rows or 0) + (job.skipped_rows or 0)
    total_rows = job.total_rows

    started_at = _as_utc(job.started_at)
    finished_at = _as_utc(job.completed_at)
    elapsed: float | None = None
    if started_at is not None:
        elapsed = max(((finished_at or now) - started_at).total_seconds(), 0.0)

    percent: float | None = None
    indeterminate = False
    if status == ImportStatus.DOWNLOADING:
        if job.file_size and job.file_size > 0:
            percent = min(100.0, job.downloaded_bytes * 100.0 / job.file_size)
        else:
            indeterminate = True
    elif status == ImportStatus.EXTRACTING:
        indeterminate = True
    elif status == ImportStatus.RUNNING:
        if total_rows:
            percent = min(100.0, rows_done * 100.0 / total_rows)
        elif total_rows is None:
            indeterminate = True
        else:
            percent = 100.0
    elif status == ImportStatus.COMPLETED:
        percent = 100.0
    elif total_rows:
        percent = min(100.0, rows_done * 100.0 / total_rows)

    speed: float | None = None
    eta: float | None = None
    if elapsed:
        speed = rows_done / elapsed
    if status == ImportStatus.RUNNING and speed and total_rows is not None:
        eta = max(total_rows - rows_done - (job.error_count or 0), 0) / speed

    outcome = None
    if status == ImportStatus.COMPLETED:
        outcome = completion_outcome(job.processed_rows or 0, job.skipped_rows or 0, total_rows)

    return ProgressSnapshot(
        status=status.value,
        percent=round(percent, 2) if percent is not None else None,
        is_indeterminate=indeterminate,
        rows_done=rows_done,
        rows_per_second=round(speed, 2) if speed is not None else None,
        eta_seconds=round(eta, 1) if eta is not None else None,
        elapsed_seconds=round(elapsed, 1) if elapsed is not None else None,
        outcome=outcome,
    )
