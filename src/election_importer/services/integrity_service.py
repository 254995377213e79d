"""Integrity verifier: post-completion reconciliation of imported row counts.

Manual and on demand only. Three independently obtained totals are
compared:

* persisted: candidate rows in the store owned by the job;
* recorded: the sum of ``inserted_rows`` over the job's batches;
* expected: an operator-supplied reference count, or the source's data
  rows minus those skipped or rejected.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from election_importer.lib.importer.errors import InvalidOperationError, JobNotFoundError
from election_importer.lib.importer.states import BatchStatus, ImportStatus, ValidationStatus
from election_importer.models.candidate_vote import CandidateVote
from election_importer.models.import_batch import ImportBatch
from election_importer.models.import_job import ImportJob


@dataclass
class IntegrityResult:
    job_id: int
    is_valid: bool
    validation_message: str
    persisted_rows: int
    recorded_rows: int
    expected_rows: int
    failed_batches: int
    validated_at: datetime


async def verify_import(
    session: AsyncSession,
    job_id: int,
    *,
    expected_rows: int | None = None,
) -> IntegrityResult:
    """Reconcile a completed job's totals and record the verdict on the job.

    Args:
        session: Database session.
        job_id: Job to verify.
        expected_rows: Reference row count from an independent source.

    Returns:
        IntegrityResult with the three totals and a readable message.

    Raises:
        JobNotFoundError: If the job does not exist.
        InvalidOperationError: If the job is not completed.
    """
    job = await session.get(ImportJob, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    if job.status != ImportStatus.COMPLETED:
        msg = f"Import job {job_id} is {job.status}; only completed imports can be verified"
        raise InvalidOperationError(msg)

    persisted = (
        await session.execute(select(func.count(CandidateVote.id)).where(CandidateVote.import_job_id == job_id))
    ).scalar_one()
    recorded, failed_batches = (
        await session.execute(
            select(
                func.coalesce(func.sum(ImportBatch.inserted_rows), 0),
                func.count(ImportBatch.id).filter(ImportBatch.status == BatchStatus.FAILED.value),
            ).where(ImportBatch.job_id == job_id)
        )
    ).one()
    recorded = int(recorded)
    if expected_rows is None:
        expected_rows = max((job.total_file_rows or 0) - job.skipped_rows - job.error_count, 0)

    problems = []
    if persisted != recorded:
        problems.append(f"{persisted} rows stored but batches recorded {recorded}")
    if recorded != expected_rows:
        diff = expected_rows - recorded
        direction = "missing" if diff > 0 else "unexpected"
        problems.append(f"expected {expected_rows} rows, recorded {recorded} ({abs(diff)} {direction})")
    if failed_batches:
        problems.append(f"{failed_batches} batches failed; reprocess them to recover their rows")

    is_valid = not problems
    if is_valid:
        message = f"Integrity check passed: {persisted} rows imported"
    else:
        message = "Integrity check failed: " + "; ".join(problems)

    now = datetime.now(UTC)
    job.validation_status = (ValidationStatus.PASSED if is_valid else ValidationStatus.FAILED).value
    job.validation_message = message
    job.validated_at = now
    await session.commit()
    logger.info(f"Import job {job_id}: {message}")

    return IntegrityResult(
        job_id=job_id,
        is_valid=is_valid,
        validation_message=message,
        persisted_rows=persisted,
        recorded_rows=recorded,
        expected_rows=expected_rows,
        failed_batches=int(failed_batches),
        validated_at=now,
    )
